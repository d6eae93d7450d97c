from __future__ import annotations

import logging
import os
import shlex
import shutil
import signal
import subprocess
import sys
from pathlib import Path
from typing import Iterable

import click

from cargo_wrap.runtime import ContainerRuntime, ImageDefinition, get_runtime, image_definition
from cargo_wrap.settings import TTY_ALWAYS, TTY_NEVER, WrapperSettings, resolve_settings


EXIT_COMMAND_NOT_FOUND = 127
EXIT_SIGNAL_BASE = 128

LOGGER = logging.getLogger("cargo_wrap")
LOGGER.addHandler(logging.NullHandler())


class ContainerCommandError(click.ClickException):
    """A runtime call failed; click exits with the runtime's own status."""

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.exit_code = exit_code


class PassthroughCommand(click.Command):
    """Hands every argument to the callback untouched, including ``--help`` and ``--``."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        ctx.params["toolchain_args"] = tuple(args)
        return []


def _configure_logging(level: str) -> None:
    handler = logging.StreamHandler(sys.__stderr__)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    LOGGER.handlers.clear()
    LOGGER.addHandler(handler)
    LOGGER.setLevel(getattr(logging, level.upper(), logging.WARNING))
    LOGGER.propagate = False


def _exit_status(returncode: int) -> int:
    if returncode < 0:
        return EXIT_SIGNAL_BASE - returncode
    return returncode


def _stdio_is_terminal() -> bool:
    try:
        return sys.stdin.isatty() and sys.stdout.isatty()
    except (AttributeError, ValueError):
        return False


def _should_allocate_tty(mode: str) -> bool:
    if mode == TTY_ALWAYS:
        return True
    if mode == TTY_NEVER:
        return False
    return _stdio_is_terminal()


def _ensure_executables(runtime: ContainerRuntime) -> None:
    for executable in runtime.required_executables():
        if shutil.which(executable) is None:
            raise ContainerCommandError(f"{executable} command not found in PATH", exit_code=EXIT_COMMAND_NOT_FOUND)


def _build_image(runtime: ContainerRuntime, definition: ImageDefinition) -> str:
    cmd = runtime.build_command()
    LOGGER.info("Building image from %s", definition.base_image)
    LOGGER.debug("$ %s", shlex.join(cmd))
    try:
        result = subprocess.run(
            cmd,
            input=definition.render(),
            stdout=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ContainerCommandError(f"Unable to start image build: {exc}") from exc
    except KeyboardInterrupt as exc:
        raise ContainerCommandError("Image build interrupted", exit_code=EXIT_SIGNAL_BASE + signal.SIGINT) from exc
    if result.returncode != 0:
        status = _exit_status(result.returncode)
        raise ContainerCommandError(f"Image build failed with exit code {status}: {shlex.join(cmd)}", exit_code=status)

    lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
    if not lines:
        raise ContainerCommandError(f"Image build did not report an image id: {shlex.join(cmd)}")
    image_id = lines[-1]
    LOGGER.info("Using image %s", image_id)
    return image_id


def _run_container(cmd: list[str]) -> int:
    LOGGER.debug("$ %s", shlex.join(cmd))
    try:
        process = subprocess.Popen(cmd)
    except OSError as exc:
        raise ContainerCommandError(f"Unable to start container: {exc}") from exc
    with process:
        while True:
            try:
                returncode = process.wait()
                break
            except KeyboardInterrupt:
                # The runtime shares our process group and got the same SIGINT.
                continue
    return _exit_status(returncode)


def _container_command(
    runtime: ContainerRuntime,
    settings: WrapperSettings,
    *,
    image_id: str,
    host_workdir: Path,
    toolchain_args: Iterable[str],
) -> list[str]:
    return runtime.run_command(
        image_id=image_id,
        settings=settings,
        uid=os.getuid(),
        gid=os.getgid(),
        host_workdir=host_workdir,
        tty=_should_allocate_tty(settings.tty),
        toolchain_args=toolchain_args,
    )


def _current_directory() -> Path:
    try:
        return Path.cwd()
    except OSError as exc:
        raise click.ClickException(f"Unable to resolve the current directory: {exc}") from exc


@click.command(
    cls=PassthroughCommand,
    help="Run cargo inside an ephemeral container. All arguments are passed to cargo unchanged.",
    context_settings={"help_option_names": []},
)
# Only shapes the usage text; PassthroughCommand.parse_args fills the value.
@click.argument("toolchain_args", nargs=-1, type=click.UNPROCESSED)
@click.pass_context
def main(ctx: click.Context, toolchain_args: tuple[str, ...]) -> None:
    cwd = _current_directory()
    settings = resolve_settings(cwd)
    _configure_logging(settings.log_level)
    LOGGER.debug("Settings from %s: %s", settings.source, settings)

    runtime = get_runtime(settings)
    _ensure_executables(runtime)

    image_id = _build_image(runtime, image_definition(settings))
    cmd = _container_command(
        runtime,
        settings,
        image_id=image_id,
        host_workdir=cwd,
        toolchain_args=toolchain_args,
    )
    ctx.exit(_run_container(cmd))


if __name__ == "__main__":
    main()
