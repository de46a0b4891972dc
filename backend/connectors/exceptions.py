"""Custom exceptions for the connector synchronization layer."""

from __future__ import annotations


class ConnectorError(Exception):
    """Base exception for connector errors."""

    def __init__(self, message: str, code: str = "CONNECTOR_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class ConnectorNotFoundError(ConnectorError):
    """Raised when a connector id does not resolve."""

    def __init__(self, connector_id: str):
        self.connector_id = connector_id
        super().__init__(f"Connector {connector_id} not found", "CONNECTOR_NOT_FOUND")


class UpstreamUnavailableError(ConnectorError):
    """Raised when the remote provider API call fails.

    Surfaced to the caller unmodified; retry policy belongs to the caller.
    """

    def __init__(self, message: str, code: str = "UPSTREAM_UNAVAILABLE"):
        super().__init__(message, code)


class InvalidPermissionError(ConnectorError):
    """Raised for a permission value other than "read" or "none"."""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_PERMISSION")


class InvalidConfigError(ConnectorError):
    """Raised for an unknown config key or an invalid config value."""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_CONFIG")


class ConnectorUpdateError(ConnectorError):
    """Raised when a connector update is refused."""

    def __init__(self, message: str, code: str = "CONNECTOR_UPDATE_ERROR"):
        super().__init__(message, code)


class RegistrationFailedError(ConnectorError):
    """Raised when a push-notification channel could not be registered."""

    def __init__(self, message: str):
        super().__init__(message, "REGISTRATION_FAILED")


class UnresolvedChannelError(ConnectorError):
    """Raised when a notification maps to neither a channel nor a connector."""

    def __init__(self, channel_id: str):
        self.channel_id = channel_id
        super().__init__(
            f"Could not determine connector for channel {channel_id}",
            "UNRESOLVED_CHANNEL",
        )


class RateLimitedError(ConnectorError):
    """Raised when a workflow launch is rejected by rate limiting.

    Expected under load; callers acknowledge rather than fail.
    """

    def __init__(self, message: str = "Workflow launch rate limited", retry_after: int | None = None):
        super().__init__(message, "RATE_LIMITED")
        self.retry_after = retry_after


class WorkflowLaunchError(ConnectorError):
    """Raised when the workflow engine refuses a launch for another reason."""

    def __init__(self, message: str):
        super().__init__(message, "WORKFLOW_LAUNCH_ERROR")


class CycleDetectedError(ConnectorError):
    """Raised when a parent chain in the local mirror revisits a node."""

    def __init__(self, node_id: str, chain: list[str]):
        self.node_id = node_id
        self.chain = chain
        super().__init__(
            f"Cycle detected at {node_id} while walking parents: {' -> '.join(chain)}",
            "CYCLE_DETECTED",
        )
