from __future__ import annotations

import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Iterator

import pytest

import sys

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def _docker_daemon_available() -> bool:
    if shutil.which("docker") is None:
        return False
    result = subprocess.run(
        ["docker", "info", "--format", "{{.ServerVersion}}"],
        check=False,
        text=True,
        capture_output=True,
    )
    return result.returncode == 0 and bool(result.stdout.strip())


@pytest.fixture(scope="session")
def docker_daemon_available() -> bool:
    return _docker_daemon_available()


@pytest.fixture()
def require_docker(docker_daemon_available: bool) -> None:
    if os.environ.get("CARGO_WRAP_INTEGRATION") != "1":
        pytest.skip("set CARGO_WRAP_INTEGRATION=1 to run real container tests")
    if not docker_daemon_available:
        pytest.skip("docker daemon is not reachable")


@pytest.fixture()
def crate_dir() -> Iterator[Path]:
    tmp = tempfile.TemporaryDirectory(prefix="cargo-wrap-int-")
    try:
        yield Path(tmp.name)
    finally:
        tmp.cleanup()
