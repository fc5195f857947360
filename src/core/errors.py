"""
Error taxonomy for the device panel coordinator.

- ValidationError: bad user input (credentials, firmware selection). Shown to
  the user right away and never retried.
- TransportError: a single exchange with the device failed. Raised by the
  endpoint client; callers decide whether a failure matters.
"""

from typing import Any


class DevicePanelError(Exception):
    """Base class for coordinator errors."""

    pass


class ValidationError(DevicePanelError):
    """User input rejected before any network call.

    Attributes:
        reason: Machine-readable reason (see class constants)
        messages: Every violated constraint, in display order
    """

    NO_FILE_SELECTED = "NoFileSelected"
    EMPTY_CREDENTIALS = "EmptyCredentials"

    def __init__(self, reason: str, messages: list[str] | None = None) -> None:
        self.reason = reason
        self.messages = list(messages or [reason])
        super().__init__("; ".join(self.messages))


class TransportError(DevicePanelError):
    """A request/response exchange with the device failed.

    Covers connection refused, timeouts, non-2xx statuses and malformed
    response bodies.
    """

    def __init__(self, endpoint: Any, message: str, status_code: int | None = None) -> None:
        self.endpoint = endpoint
        self.status_code = status_code
        name = getattr(endpoint, "name", endpoint)
        super().__init__(f"{name}: {message}")
