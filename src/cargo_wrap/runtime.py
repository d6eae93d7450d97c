from __future__ import annotations

import abc
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from cargo_wrap.settings import RUNTIME_DOCKER, RUNTIME_PODMAN, WrapperSettings


@dataclass(frozen=True)
class ImageDefinition:
    base_image: str
    setup_instruction: str

    def render(self) -> str:
        """Inline build payload fed to the runtime on stdin."""
        return f"FROM {self.base_image}\nRUN {self.setup_instruction}\n"


class ContainerRuntime(abc.ABC):
    def __init__(self, *, sudo: bool) -> None:
        self.sudo = sudo

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Executable name of the container runtime (e.g., 'docker', 'podman')."""
        pass

    def extra_run_flags(self) -> list[str]:
        """Runtime-specific flags appended to every ``run`` invocation."""
        return []

    def required_executables(self) -> list[str]:
        executables = [self.name]
        if self.sudo:
            executables.insert(0, "sudo")
        return executables

    def _prefix(self) -> list[str]:
        # "--" keeps sudo from reading runtime flags as its own.
        if self.sudo:
            return ["sudo", "--", self.name]
        return [self.name]

    def build_command(self) -> list[str]:
        return [*self._prefix(), "build", "--quiet", "-"]

    def run_command(
        self,
        *,
        image_id: str,
        settings: WrapperSettings,
        uid: int,
        gid: int,
        host_workdir: Path,
        tty: bool,
        toolchain_args: Iterable[str],
    ) -> list[str]:
        cmd = [
            *self._prefix(),
            "run",
            "--rm",
            "--user",
            f"{uid}:{gid}",
            "--volume",
            f"{host_workdir}:{settings.container_workdir}",
            "--workdir",
            settings.container_workdir,
            "--env",
            f"{settings.home_env}={settings.toolchain_home}",
            "--interactive",
        ]
        if tty:
            cmd.append("--tty")
        cmd.extend(self.extra_run_flags())
        cmd.append(image_id)
        cmd.append(settings.toolchain)
        cmd.extend(str(arg) for arg in toolchain_args)
        return cmd


class DockerRuntime(ContainerRuntime):
    @property
    def name(self) -> str:
        return RUNTIME_DOCKER


class PodmanRuntime(ContainerRuntime):
    @property
    def name(self) -> str:
        return RUNTIME_PODMAN

    def extra_run_flags(self) -> list[str]:
        # Rootless podman maps container uid 0 to the host user unless keep-id is set.
        # Rootful podman (through sudo) rejects keep-id and honours --user as is.
        if self.sudo:
            return []
        return ["--userns", "keep-id"]


def get_runtime(settings: WrapperSettings) -> ContainerRuntime:
    if settings.runtime == RUNTIME_PODMAN:
        return PodmanRuntime(sudo=settings.sudo)
    if settings.runtime == RUNTIME_DOCKER:
        return DockerRuntime(sudo=settings.sudo)
    raise ValueError(f"Unsupported container runtime: {settings.runtime}")


def image_definition(settings: WrapperSettings) -> ImageDefinition:
    return ImageDefinition(base_image=settings.base_image, setup_instruction=settings.setup_instruction)
