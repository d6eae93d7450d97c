from __future__ import annotations

import os
import posixpath
import re
import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Mapping

import click


CONFIG_FILE_NAME = "cargo-wrap.toml"
CONFIG_TABLE_NAME = "cargo-wrap"
CONFIG_PATH_ENV = "CARGO_WRAP_CONFIG"
ENV_PREFIX = "CARGO_WRAP_"

RUNTIME_DOCKER = "docker"
RUNTIME_PODMAN = "podman"
RUNTIME_CHOICES = (RUNTIME_DOCKER, RUNTIME_PODMAN)
TTY_AUTO = "auto"
TTY_ALWAYS = "always"
TTY_NEVER = "never"
TTY_CHOICES = (TTY_AUTO, TTY_ALWAYS, TTY_NEVER)
LOG_LEVEL_CHOICES = ("debug", "info", "warning", "error")

DEFAULT_BASE_IMAGE = "rust:latest"
DEFAULT_SETUP_INSTRUCTION = "rustup component add rustfmt clippy"
DEFAULT_TOOLCHAIN = "cargo"
DEFAULT_CONTAINER_WORKDIR = "/usr/src/app"
DEFAULT_HOME_ENV = "CARGO_HOME"
DEFAULT_CACHE_SUBDIR = ".cargo"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

# Setting name -> environment variable suffix.
_ENV_NAMES = {
    "runtime": "RUNTIME",
    "sudo": "SUDO",
    "base_image": "BASE_IMAGE",
    "setup_instruction": "SETUP",
    "toolchain": "TOOLCHAIN",
    "container_workdir": "WORKDIR",
    "home_env": "HOME_ENV",
    "cache_subdir": "CACHE_SUBDIR",
    "tty": "TTY",
    "log_level": "LOG_LEVEL",
}


@dataclass(frozen=True)
class WrapperSettings:
    runtime: str = RUNTIME_DOCKER
    sudo: bool = True
    base_image: str = DEFAULT_BASE_IMAGE
    setup_instruction: str = DEFAULT_SETUP_INSTRUCTION
    toolchain: str = DEFAULT_TOOLCHAIN
    container_workdir: str = DEFAULT_CONTAINER_WORKDIR
    home_env: str = DEFAULT_HOME_ENV
    cache_subdir: str = DEFAULT_CACHE_SUBDIR
    tty: str = TTY_AUTO
    log_level: str = "warning"
    source: str = "defaults"

    @property
    def toolchain_home(self) -> str:
        """Container path the toolchain keeps its caches under, inside the bind mount."""
        return posixpath.join(self.container_workdir, self.cache_subdir)


def _parse_bool(raw_value: object, label: str) -> bool:
    if isinstance(raw_value, bool):
        return raw_value
    normalized = str(raw_value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    raise click.UsageError(f"Invalid {label}: {raw_value!r} (expected one of 1/0, true/false, yes/no, on/off)")


def _coerce(name: str, raw_value: object, label: str) -> Any:
    if name == "sudo":
        return _parse_bool(raw_value, label)
    if isinstance(raw_value, (dict, list)):
        raise click.UsageError(f"Invalid {label}: expected a string value")
    value = str(raw_value).strip()
    if name in {"runtime", "tty", "log_level"}:
        value = value.lower()
    return value


def find_config_file(start_dir: Path, env: Mapping[str, str] | None = None) -> Path | None:
    source = os.environ if env is None else env
    explicit = str(source.get(CONFIG_PATH_ENV, "")).strip()
    if explicit:
        path = Path(explicit).expanduser()
        if not path.is_absolute():
            path = (start_dir / path).resolve()
        if not path.is_file():
            raise click.UsageError(f"{CONFIG_PATH_ENV} points to a missing file: {path}")
        return path

    for directory in (start_dir, *start_dir.parents):
        candidate = directory / CONFIG_FILE_NAME
        if candidate.is_file():
            return candidate

    user_config = Path.home() / ".config" / "cargo-wrap" / "config.toml"
    if user_config.is_file():
        return user_config
    return None


def load_config_file(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeError) as exc:
        raise click.UsageError(f"Unable to read config file {path}: {exc}") from exc
    try:
        parsed = tomllib.loads(raw)
    except tomllib.TOMLDecodeError as exc:
        raise click.UsageError(f"Unable to parse config file {path}: {exc}") from exc

    table = parsed.get(CONFIG_TABLE_NAME)
    if isinstance(table, dict):
        return dict(table)
    return parsed


def _settings_from_mapping(
    settings: WrapperSettings,
    values: Mapping[str, object],
    *,
    origin: str,
) -> tuple[WrapperSettings, list[str]]:
    known = {field.name for field in fields(WrapperSettings) if field.name != "source"}
    updates: dict[str, Any] = {}
    unknown: list[str] = []
    for key, raw_value in values.items():
        name = str(key).replace("-", "_")
        if name not in known:
            unknown.append(str(key))
            continue
        updates[name] = _coerce(name, raw_value, f"{key} in {origin}")
    if not updates:
        return settings, unknown
    return replace(settings, **updates), unknown


def _env_overrides(env: Mapping[str, str]) -> dict[str, str]:
    overrides: dict[str, str] = {}
    for name, suffix in _ENV_NAMES.items():
        value = env.get(ENV_PREFIX + suffix)
        if value is None or not value.strip():
            continue
        overrides[name] = value
    return overrides


def validate_settings(settings: WrapperSettings) -> WrapperSettings:
    if settings.runtime not in RUNTIME_CHOICES:
        raise click.UsageError(
            f"Invalid runtime: {settings.runtime!r} (expected one of {', '.join(RUNTIME_CHOICES)})"
        )
    if settings.tty not in TTY_CHOICES:
        raise click.UsageError(f"Invalid tty mode: {settings.tty!r} (expected one of {', '.join(TTY_CHOICES)})")
    if settings.log_level not in LOG_LEVEL_CHOICES:
        raise click.UsageError(
            f"Invalid log level: {settings.log_level!r} (expected one of {', '.join(LOG_LEVEL_CHOICES)})"
        )
    if not settings.base_image:
        raise click.UsageError("Base image must not be empty")
    if not settings.setup_instruction:
        raise click.UsageError("Setup instruction must not be empty")
    for label, value in (("base image", settings.base_image), ("setup instruction", settings.setup_instruction)):
        if "\n" in value or "\r" in value:
            raise click.UsageError(f"Invalid {label}: {value!r} (must be a single line)")
    if any(ch.isspace() for ch in settings.base_image):
        raise click.UsageError(f"Invalid base image: {settings.base_image!r} (must not contain whitespace)")
    if not re.fullmatch(r"[A-Za-z0-9._+-]+", settings.toolchain):
        raise click.UsageError(
            f"Invalid toolchain: {settings.toolchain!r} (allowed characters: letters, numbers, . _ + -)"
        )
    if not settings.container_workdir.startswith("/"):
        raise click.UsageError(f"Invalid container workdir: {settings.container_workdir} (must be absolute)")
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", settings.home_env):
        raise click.UsageError(f"Invalid home variable name: {settings.home_env!r}")

    cache_subdir = settings.cache_subdir
    if not cache_subdir or cache_subdir.startswith("/"):
        raise click.UsageError(f"Invalid cache subdirectory: {cache_subdir!r} (must be a relative path)")
    normalized = posixpath.normpath(cache_subdir)
    if normalized == "." or normalized == ".." or normalized.startswith("../"):
        raise click.UsageError(
            f"Invalid cache subdirectory: {cache_subdir!r} (must stay inside the mounted directory)"
        )
    return replace(settings, container_workdir=posixpath.normpath(settings.container_workdir), cache_subdir=normalized)


def resolve_settings(cwd: Path, env: Mapping[str, str] | None = None) -> WrapperSettings:
    """Resolve settings from defaults, then the config file, then ``CARGO_WRAP_*`` variables."""
    source_env = os.environ if env is None else env
    settings = WrapperSettings()
    sources: list[str] = []

    config_path = find_config_file(cwd, source_env)
    if config_path is not None:
        settings, unknown = _settings_from_mapping(
            settings,
            load_config_file(config_path),
            origin=str(config_path),
        )
        for key in unknown:
            click.echo(f"Warning: ignoring unknown key {key!r} in config file {config_path}", err=True)
        sources.append(str(config_path))

    overrides = _env_overrides(source_env)
    if overrides:
        settings, _ = _settings_from_mapping(settings, overrides, origin="environment")
        sources.append("environment")

    if sources:
        settings = replace(settings, source=", ".join(sources))
    return validate_settings(settings)
