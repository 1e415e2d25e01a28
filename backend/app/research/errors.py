"""
Exception taxonomy for research sessions.

Synchronous errors (validation, preconditions, lookups) are raised to the
caller and mapped to 4xx responses by the routers. Worker failures never
surface here: they are captured into the phase record by the orchestrator.
"""


class ResearchError(Exception):
    """Base class for research session errors."""


class ValidationError(ResearchError):
    """Bad client input, e.g. a problem statement under the word minimum."""


class PhasePreconditionError(ResearchError):
    """A phase transition was requested out of order or from the wrong state."""


class SessionNotFoundError(ResearchError):
    def __init__(self, chat_id: str) -> None:
        super().__init__(f"Research session {chat_id} not found")
        self.chat_id = chat_id


class ConcurrentModificationError(ResearchError):
    """The stored session changed since it was loaded (version mismatch)."""

    def __init__(self, chat_id: str, expected_version: int) -> None:
        super().__init__(
            f"Research session {chat_id} was modified concurrently "
            f"(expected version {expected_version})"
        )
        self.chat_id = chat_id
        self.expected_version = expected_version


class MalformedResponseError(ResearchError):
    """A worker reply that normalizes to nothing usable for its phase."""
