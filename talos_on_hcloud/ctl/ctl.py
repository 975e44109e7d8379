from pathlib import Path
from typing import TYPE_CHECKING, Optional

from prettytable import PrettyTable

from talos_on_hcloud.exceptions import PartialScaleFailure, TalosOnHcloudError, ValidationError
from talos_on_hcloud.models import (
    ClusterStatusData,
    CreateClusterResult,
    DestroyClusterResult,
    NodeResult,
    ScaleResult,
)

if TYPE_CHECKING:
    from talos_on_hcloud.ctl.log import TalosOnHcloudCtlLogger


def _format_optional_bool(value: Optional[bool]) -> str:
    if value is None:
        return "-"

    return "yes" if value else "no"


class TalosOnHcloudCtl:
    """Renders command results and failures for a human operator."""

    def __init__(self, output_logger: "TalosOnHcloudCtlLogger"):
        self._output_logger = output_logger

    def report_create(self, result: CreateClusterResult) -> None:
        for step in result.completed_steps:
            self._output_logger.verbose(f"Step done: {step}")

        for warning in result.warnings:
            self._output_logger.warning(warning)

        if not result.bootstrapped_now:
            self._output_logger.info("etcd bootstrap was skipped, as it was issued before")

        self._output_logger.success(f"Cluster `{result.cluster_name}` is ready")
        self._output_logger.info(f"talosconfig: {result.talosconfig_path}")
        self._output_logger.info(f"kubeconfig: {result.kubeconfig_path}")

    def report_scale(self, result: ScaleResult) -> None:
        for warning in result.warnings:
            self._output_logger.warning(warning)

        if result.current == result.target:
            self._output_logger.info(
                f"Pool `{result.pool}` already has {result.target} node(s), nothing to do"
            )
            return

        for node_result in result.results:
            self._report_node(node_result)

        self._output_logger.success(
            f"Pool `{result.pool}` scaled from {result.current} to {result.target} node(s)"
        )

    def report_destroy(self, result: DestroyClusterResult) -> None:
        if result.deleted_servers:
            self._output_logger.info("Deleted servers: " + ", ".join(result.deleted_servers))

        for deleted, name in (
            (result.deleted_firewall, "firewall"),
            (result.deleted_ssh_key, "ssh key"),
            (result.deleted_network, "network"),
        ):
            self._output_logger.verbose(f"{name}: {'deleted' if deleted else 'not found'}")

        if result.purged:
            self._output_logger.info("Local configuration bundle removed")
        else:
            self._output_logger.info(
                "Local configuration bundle kept, use `--purge` to remove it"
            )

        self._output_logger.success(f"Cluster `{result.cluster_name}` destroyed")

    def report_status(self, status: ClusterStatusData) -> None:
        table = PrettyTable(
            ["Node", "Pool", "Server ID", "Server status", "Public IP", "Private IP", "Ready"]
        )
        table.align = "l"

        for node in status.nodes:
            table.add_row(
                [
                    node.name,
                    node.pool or "-",
                    node.server_id,
                    node.provider_status,
                    node.public_ip or "-",
                    node.private_ip or "-",
                    _format_optional_bool(node.kubernetes_ready),
                ]
            )

        self._output_logger.info(f"Cluster `{status.cluster_name}`")
        self._output_logger.info(f"Bootstrapped: {_format_optional_bool(status.bootstrapped)}")
        self._output_logger.info(f"Talos healthy: {_format_optional_bool(status.talos_healthy)}")
        self._output_logger.info(str(table))

    def report_init(self, path: Path) -> None:
        self._output_logger.success(f"Example cluster file written to `{path}`")
        self._output_logger.info(
            "Set `talos.image` to your Talos snapshot id and export HCLOUD_TOKEN before `create`"
        )

    def report_error(self, error: TalosOnHcloudError) -> None:
        if isinstance(error, PartialScaleFailure):
            for result in error.results:
                self._report_node(result)

            for warning in error.warnings:
                self._output_logger.warning(warning)

        if isinstance(error, ValidationError):
            self._output_logger.verbose(f"{len(error.violations)} problem(s) found")

        self._output_logger.error(str(error))

    def _report_node(self, result: NodeResult) -> None:
        for entry in result.state_log:
            self._output_logger.verbose(f"{result.node_name}: {entry}")

        if result.succeeded:
            self._output_logger.info(f"{result.node_name}: {result.state.value}")
            return

        message = f"{result.node_name}: {result.state.value}"
        if result.timed_out:
            message += " (timed out)"
        if result.error:
            message += f", {result.error}"

        self._output_logger.warning(message)
