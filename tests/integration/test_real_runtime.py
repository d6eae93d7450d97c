from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"

pytestmark = pytest.mark.usefixtures("require_docker")

VALID_MANIFEST = """\
[package]
name = "hello"
version = "0.1.0"
edition = "2021"

[dependencies]
"""


def _run_wrapper(cwd: Path, *args: str, env_overrides: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    env = dict(os.environ)
    env["PYTHONPATH"] = str(SRC)
    env["CARGO_WRAP_SUDO"] = "0"
    env["CARGO_WRAP_TTY"] = "never"
    env["CARGO_WRAP_CONFIG"] = ""
    if env_overrides:
        env.update(env_overrides)
    return subprocess.run(
        [sys.executable, "-m", "cargo_wrap.cli", *args],
        cwd=str(cwd),
        env=env,
        stdin=subprocess.DEVNULL,
        text=True,
        capture_output=True,
        check=False,
        timeout=1800,
    )


def _write_crate(crate_dir: Path, manifest: str) -> None:
    (crate_dir / "Cargo.toml").write_text(manifest, encoding="utf-8")
    (crate_dir / "src").mkdir(exist_ok=True)
    (crate_dir / "src" / "main.rs").write_text('fn main() {\n    println!("hello");\n}\n', encoding="utf-8")


def test_build_valid_manifest_leaves_user_owned_target(crate_dir: Path) -> None:
    _write_crate(crate_dir, VALID_MANIFEST)

    result = _run_wrapper(crate_dir, "build")

    assert result.returncode == 0, result.stderr
    target = crate_dir / "target"
    assert target.is_dir()
    info = target.stat()
    assert (info.st_uid, info.st_gid) == (os.getuid(), os.getgid())


def test_repeated_invocations_reuse_cached_image(crate_dir: Path) -> None:
    _write_crate(crate_dir, VALID_MANIFEST)

    first = _run_wrapper(crate_dir, "run", "--quiet")
    second = _run_wrapper(crate_dir, "run", "--quiet")

    assert first.returncode == 0, first.stderr
    assert second.returncode == 0, second.stderr
    assert first.stdout == second.stdout == "hello\n"


def test_build_invalid_manifest_fails_without_target(crate_dir: Path) -> None:
    _write_crate(crate_dir, "[package\nname = \n")

    result = _run_wrapper(crate_dir, "build")

    assert result.returncode != 0
    assert "Cargo.toml" in result.stderr
    assert not (crate_dir / "target").exists()


def test_unavailable_base_image_fails_before_run(crate_dir: Path) -> None:
    _write_crate(crate_dir, VALID_MANIFEST)

    result = _run_wrapper(
        crate_dir,
        "build",
        env_overrides={"CARGO_WRAP_BASE_IMAGE": "cargo-wrap.invalid/missing/rust:none"},
    )

    assert result.returncode != 0
    assert "Image build failed" in result.stderr
    assert not (crate_dir / "target").exists()
    assert not (crate_dir / ".cargo").exists()
