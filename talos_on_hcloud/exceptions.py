from datetime import timedelta
from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from talos_on_hcloud.models import NodeResult


class TalosOnHcloudError(Exception):
    """Base error of the package.

    Every error may carry the identifier of the affected node or resource and a remediation hint.
    """

    message = "Talos on Hetzner Cloud error"

    def __init__(
        self,
        additional_message: Optional[str] = None,
        *,
        resource: Optional[str] = None,
        hint: Optional[str] = None,
    ) -> None:
        self.resource = resource
        self.hint = hint

        message = self.message
        if additional_message:
            message = f"{message}: {additional_message}"

        super().__init__(message)

    def get_message(self) -> str:
        """Return the message without resource identifier and hint."""

        return super().__str__()

    def __str__(self) -> str:
        text = self.get_message()

        if self.resource:
            text = f"[{self.resource}] {text}"

        if self.hint:
            text = f"{text}\nHint: {self.hint}"

        return text


class ValidationError(TalosOnHcloudError):
    message = "Invalid cluster specification"

    def __init__(self, violations: Sequence[str]) -> None:
        self.violations = list(violations)

        super().__init__(
            "\n".join(f"  - {violation}" for violation in self.violations),
            hint="Fix every listed problem in the cluster file, no resources were touched",
        )


class CommandError(TalosOnHcloudError):
    message = "External command failed"

    def __init__(
        self,
        additional_message: Optional[str] = None,
        *,
        returncode: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        **kwargs,
    ) -> None:
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

        super().__init__(additional_message, **kwargs)


class ProviderError(TalosOnHcloudError):
    message = "Hetzner Cloud API request failed"

    def __init__(
        self,
        additional_message: Optional[str] = None,
        *,
        status: Optional[int] = None,
        code: Optional[str] = None,
        body: Optional[str] = None,
        **kwargs,
    ) -> None:
        self.status = status
        self.code = code
        self.body = body

        details = additional_message or ""
        if status is not None:
            details = f"{details} (status `{status}`, code `{code}`)".strip()
        if body:
            details = f"{details}\n{body}"

        super().__init__(details or None, **kwargs)


class ManagementApiUnreachable(TalosOnHcloudError):
    message = "Talos API is not reachable"

    def __init__(self, node_name: str, address: Optional[str], reason: str, **kwargs) -> None:
        self.node_name = node_name
        self.address = address

        kwargs.setdefault(
            "hint",
            "Check the firewall allow-list for your current address"
            " and that the node is powered on",
        )

        super().__init__(f"{address}: {reason}", resource=node_name, **kwargs)


class ReadinessTimeout(TalosOnHcloudError):
    message = "Timed out waiting"

    def __init__(self, description: str, timeout: timedelta, **kwargs) -> None:
        self.description = description
        self.timeout = timeout

        super().__init__(f"{description} (timeout of `{timeout}` reached)", **kwargs)


class BootstrapTimeout(ReadinessTimeout):
    message = "Kubernetes API did not become available after bootstrap"


class BootstrapError(TalosOnHcloudError):
    message = "Cluster creation halted"

    def __init__(self, completed_step: str, cause: Exception) -> None:
        self.completed_step = completed_step
        self.cause = cause

        super().__init__(
            f"furthest completed step: {completed_step}; cause: {cause}",
            hint="Re-run `create`, completed steps are detected and skipped",
        )


class ClusterNotFound(TalosOnHcloudError):
    message = "Cluster does not exist"

    def __init__(self, additional_message: Optional[str] = None, **kwargs) -> None:
        kwargs.setdefault("hint", "Create the cluster with `talos-on-hcloud create` first")

        super().__init__(additional_message, **kwargs)


class NodeRemovalBlocked(TalosOnHcloudError):
    message = "Node removal blocked"


class PartialScaleFailure(TalosOnHcloudError):
    message = "Scaling finished with failed nodes"

    def __init__(
        self,
        results: Sequence["NodeResult"],
        abandoned: Sequence[str] = (),
        warnings: Sequence[str] = (),
    ) -> None:
        self.results = list(results)
        self.abandoned = list(abandoned)
        self.warnings = list(warnings)

        failed = [result for result in self.results if not result.succeeded]

        details = "{} of {} node(s) failed: {}".format(
            len(failed),
            len(self.results),
            ", ".join(f"{result.node_name} ({result.state.value})" for result in failed),
        )
        for result in failed:
            if result.error:
                details += f"\n  {result.node_name}: {result.error}"
        if self.abandoned:
            details += "\nnot attempted: " + ", ".join(self.abandoned)

        super().__init__(
            details,
            resource=failed[0].node_name if failed else None,
            hint=next((result.hint for result in failed if result.hint), None),
        )
