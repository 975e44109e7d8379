import json
import logging
from abc import ABC, abstractmethod
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from talos_on_hcloud import settings
from talos_on_hcloud.exceptions import CommandError
from talos_on_hcloud.models import ResetOutcome
from talos_on_hcloud.utils import run_subprocess_output

logger = logging.getLogger(__name__)

# talosctl could not open a connection at all
UNREACHABLE_MARKERS = ("dial tcp", "connection refused", "no route to host")

# connection dropped after the request got through, which is what a node powering off looks like
WENT_DARK_MARKERS = (
    "Unavailable",
    "EOF",
    "connection reset",
    "DeadlineExceeded",
    "timeout",
    "context canceled",
)

# lines printed by `talosctl reset --wait` while following the node
PROGRESS_MARKERS = ("watching nodes", "waiting for", "events check", "stage:", "phase:")

ALREADY_BOOTSTRAPPED_MARKER = "AlreadyExists"


def classify_reset_failure(stdout: str, stderr: str) -> ResetOutcome:
    """Tell a reset that was never received from one that was accepted before the node went dark."""

    has_progress = bool(stdout.strip()) or any(marker in stderr for marker in PROGRESS_MARKERS)
    output = f"{stdout}\n{stderr}"

    if not has_progress and any(marker in output for marker in UNREACHABLE_MARKERS):
        return ResetOutcome.unreachable_from_start

    if has_progress or any(marker in output for marker in WENT_DARK_MARKERS):
        return ResetOutcome.acknowledged_then_unreachable

    return ResetOutcome.rejected


class TalosApi(ABC):
    """Node management operations of Talos Linux."""

    @abstractmethod
    async def gen_secrets(self, output_path: Path) -> None:
        ...

    @abstractmethod
    async def gen_config(
        self,
        cluster_name: str,
        endpoint: str,
        secrets_path: Path,
        output_dir: Path,
        kubernetes_version: str,
        talos_version: str,
        patches: Sequence[Path] = (),
        control_plane_patches: Sequence[Path] = (),
    ) -> None:
        """Write `controlplane.yaml`, `worker.yaml` and `talosconfig` into `output_dir`."""

    @abstractmethod
    async def configure_endpoints(self, endpoints: Sequence[str]) -> None:
        ...

    @abstractmethod
    async def version(self, address: str, timeout: Optional[timedelta] = None) -> str:
        ...

    @abstractmethod
    async def health(self, address: str, timeout: timedelta) -> bool:
        ...

    @abstractmethod
    async def bootstrap(self, address: str) -> bool:
        """Bootstrap etcd on given node.

        Return `False` when the node reports etcd being already bootstrapped.
        """

    @abstractmethod
    async def reset(self, address: str, timeout: timedelta) -> ResetOutcome:
        """Gracefully reset given node and wait for it, without reboot."""

    @abstractmethod
    async def kubeconfig(self, address: str, output_path: Path) -> None:
        ...

    @abstractmethod
    async def patch_machine_config(self, address: str, patch: List[Dict[str, Any]]) -> None:
        ...

    @abstractmethod
    async def logs(self, address: str, service: str, tail: int = 50) -> str:
        ...


class TalosCtl(TalosApi):
    """`TalosApi` backed by the `talosctl` binary."""

    def __init__(self, talosconfig_path: Path, talosctl_path: Path = settings.TALOSCTL_PATH):
        self._talosconfig_path = talosconfig_path
        self._talosctl_path = talosctl_path

    async def gen_secrets(self, output_path: Path) -> None:
        await self._run("gen", "secrets", "--output-file", output_path, with_talosconfig=False)

    async def gen_config(
        self,
        cluster_name: str,
        endpoint: str,
        secrets_path: Path,
        output_dir: Path,
        kubernetes_version: str,
        talos_version: str,
        patches: Sequence[Path] = (),
        control_plane_patches: Sequence[Path] = (),
    ) -> None:
        args = [
            "gen",
            "config",
            cluster_name,
            endpoint,
            "--with-secrets",
            secrets_path,
            "--output-dir",
            output_dir,
            "--kubernetes-version",
            kubernetes_version,
            "--talos-version",
            _minor_version(talos_version),
            "--with-docs=false",
            "--with-examples=false",
            "--force",
        ]

        for patch in patches:
            args.extend(["--config-patch", f"@{patch}"])

        for patch in control_plane_patches:
            args.extend(["--config-patch-control-plane", f"@{patch}"])

        await self._run(*args, with_talosconfig=False)

    async def configure_endpoints(self, endpoints: Sequence[str]) -> None:
        await self._run("config", "endpoint", *endpoints)

    async def version(self, address: str, timeout: Optional[timedelta] = None) -> str:
        output = await self._run(*self._target(address), "version", "--short", timeout=timeout)
        return output.strip()

    async def health(self, address: str, timeout: timedelta) -> bool:
        try:
            await self._run(
                *self._target(address),
                "health",
                "--wait-timeout",
                f"{int(timeout.total_seconds())}s",
                timeout=timeout + timedelta(seconds=30),
            )
        except CommandError as e:
            logger.debug("Health check of `%s` failed: %s", address, e)
            return False

        return True

    async def bootstrap(self, address: str) -> bool:
        try:
            await self._run(*self._target(address), "bootstrap")
        except CommandError as e:
            if ALREADY_BOOTSTRAPPED_MARKER in e.stderr:
                return False

            raise

        return True

    async def reset(self, address: str, timeout: timedelta) -> ResetOutcome:
        try:
            await self._run(
                *self._target(address),
                "reset",
                "--graceful=true",
                "--reboot=false",
                "--wait=true",
                "--timeout",
                f"{int(timeout.total_seconds())}s",
                timeout=timeout + timedelta(seconds=30),
            )
        except CommandError as e:
            outcome = classify_reset_failure(e.stdout, e.stderr)
            logger.debug("Reset of `%s` returned error classified as `%s`", address, outcome.value)
            return outcome

        return ResetOutcome.completed

    async def kubeconfig(self, address: str, output_path: Path) -> None:
        await self._run(*self._target(address), "kubeconfig", output_path, "--force")

    async def patch_machine_config(self, address: str, patch: List[Dict[str, Any]]) -> None:
        await self._run(
            *self._target(address), "patch", "machineconfig", "--patch", json.dumps(patch)
        )

    async def logs(self, address: str, service: str, tail: int = 50) -> str:
        return await self._run(*self._target(address), "logs", service, "--tail", str(tail))

    @staticmethod
    def _target(address: str) -> List[str]:
        return ["--nodes", address, "--endpoints", address]

    async def _run(
        self,
        *args,
        with_talosconfig: bool = True,
        timeout: Optional[timedelta] = None,
    ) -> str:
        command = [self._talosctl_path]
        if with_talosconfig:
            command.extend(["--talosconfig", self._talosconfig_path])

        return await run_subprocess_output(*command, *args, timeout=timeout)


def _minor_version(version: str) -> str:
    """`talosctl gen config --talos-version` accepts only `vX.Y`."""

    parts = version.lstrip("v").split(".")
    return "v" + ".".join(parts[:2])
