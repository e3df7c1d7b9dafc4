"""Error taxonomy for fleet provisioning and remote execution.

Per-node errors (CreateError, TimedOutError) stay inside the task that
raised them; the orchestrator folds them into one aggregate outcome.
Remote-shell errors split into terminal (AuthenticationError,
RemoteCommandError) and transient (RemoteConnectionError) for the retry
policy.
"""

from typing import Optional


class FleetError(Exception):
    """Base exception for fleet errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ConfigurationError(FleetError):
    """Missing or invalid configuration (identifiers, counts, backend)."""


class BackendError(FleetError):
    """Backend API or CLI call failed."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class CreateError(FleetError):
    """Backend rejected or failed a node creation request."""

    def __init__(self, name: str, message: str):
        self.name = name
        super().__init__(f"{name}: {message}")


class TimedOutError(FleetError, TimeoutError):
    """A status or endpoint poll exceeded its deadline."""


class CancelledError(FleetError):
    """The caller cancelled the operation."""


class ProvisioningError(FleetError):
    """No node could be created.

    Attributes:
        result: The (empty) ProvisioningResult
    """

    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)


class PartialProvisioningError(FleetError):
    """Some nodes were not created; the rest are usable."""

    def __init__(self, failed: int, total: int):
        self.failed = failed
        self.total = total
        super().__init__(f"{failed}/{total} nodes were not created")


class AuthenticationError(FleetError):
    """Remote shell rejected our credentials."""

    def __init__(self, host: str, detail: str = ''):
        self.host = host
        super().__init__(f"{host}: unable to authenticate{': ' + detail if detail else ''}")


class RemoteCommandError(FleetError):
    """Remote command exited with a nonzero status."""

    def __init__(self, host: str, command: str, exit_status: int, stderr: str = ''):
        self.host = host
        self.command = command
        self.exit_status = exit_status
        self.stderr = stderr
        detail = f": {stderr.strip()}" if stderr.strip() else ''
        super().__init__(f"{host}: '{command}' exited with status {exit_status}{detail}")


class RemoteConnectionError(FleetError):
    """Remote shell could not be reached (refused, unreachable, timeout)."""

    def __init__(self, host: str, detail: str = ''):
        self.host = host
        super().__init__(f"{host}: connection failed{': ' + detail if detail else ''}")


class AmbiguousTargetError(FleetError):
    """More than one match where exactly one was required."""

    def __init__(self, what: str, matches: list[str]):
        self.matches = matches
        super().__init__(f"{what}: expected exactly one match, found {len(matches)} ({', '.join(matches)})")


class UnsupportedOperationError(FleetError):
    """Operation refused (e.g. deleting a shared namespace)."""
