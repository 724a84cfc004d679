"""Custom exceptions for the obsbroker library.

All exceptions inherit from BrokerError to allow catching any broker error.
Secrets (passwords, stored credential values) are never included in
exception messages.
"""

from __future__ import annotations

from typing import Optional


class BrokerError(Exception):
    """Base exception for all obsbroker errors."""


class ConfigError(BrokerError):
    """Raised when cluster client configuration cannot be loaded."""


class TargetNotFound(BrokerError):
    """Raised when no running workload instance matches a target."""

    def __init__(self, message: str, *, namespace: str, selector: Optional[dict[str, str]] = None) -> None:
        super().__init__(message)
        self.namespace = namespace
        self.selector = dict(selector or {})


class TunnelSetupFailed(BrokerError):
    """Raised when a forwarding session into a pod cannot be established."""


class ResourceNotFound(BrokerError):
    """Raised when a secret record does not exist."""

    def __init__(self, namespace: str, name: str) -> None:
        super().__init__(f"Secret {namespace}/{name} not found")
        self.namespace = namespace
        self.name = name


class CredentialNotFound(BrokerError):
    """Raised when a credential key is absent from a secret record."""

    def __init__(self, namespace: str, name: str, key: str) -> None:
        super().__init__(f"Key {key!r} not found in secret {namespace}/{name}")
        self.namespace = namespace
        self.name = name
        self.key = key


class ClusterError(BrokerError):
    """Raised when a cluster API call fails."""


class SecretStoreError(ClusterError):
    """Raised when reading or writing a secret record fails."""


class ResolutionError(BrokerError):
    """Raised when stored connection details are malformed."""


class CommandFailed(BrokerError):
    """Raised when a command executed inside a container fails."""


class ApplyFailed(BrokerError):
    """Raised when a new credential could not be applied to the live service.

    The stored secret has been restored to its previous value.
    """

    def __init__(self, message: str, *, namespace: str, name: str, key: str) -> None:
        super().__init__(message)
        self.namespace = namespace
        self.name = name
        self.key = key


class CompensationFailed(BrokerError):
    """Raised when restoring the previous credential after an apply failure fails.

    The stored and live credentials are now out of sync; no further automated
    recovery is attempted.  Both the triggering :class:`ApplyFailed` and the
    error from the compensating write are attached.
    """

    def __init__(self, apply_error: ApplyFailed, compensation_error: BaseException) -> None:
        super().__init__(
            f"Credential {apply_error.key!r} in secret {apply_error.namespace}/{apply_error.name} "
            f"is out of sync with the live service: apply failed ({apply_error}) and "
            f"restoring the previous value failed ({compensation_error})"
        )
        self.apply_error = apply_error
        self.compensation_error = compensation_error

    @property
    def errors(self) -> tuple[BaseException, ...]:
        return (self.apply_error, self.compensation_error)


class ConnectionError(BrokerError):  # noqa: A001
    """Raised when the native database connection fails."""
