"""
Worker gateway failure classes.

The orchestrator stores `str(error)` as the phase's error message, so each
message should read well on its own in the UI.
"""

from typing import Optional


class GatewayError(Exception):
    """Base class for every worker call failure."""

    def __init__(self, phase: int, message: str) -> None:
        super().__init__(message)
        self.phase = phase


class GatewayConfigError(GatewayError):
    """The phase's endpoint is not configured."""


class GatewayTimeout(GatewayError):
    """The worker did not answer within the phase's timeout budget."""


class GatewayNoResponse(GatewayError):
    """Connection-level failure: refused, reset, DNS, TLS."""


class GatewayHttpError(GatewayError):
    """The worker answered with a non-2xx status or an unreadable body."""

    def __init__(self, phase: int, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(phase, message)
        self.status_code = status_code
