"""
Exceptions raised by the standup orchestrator.

Only TransportError and StateStoreError ever change the course of a run.
The reference/member/terminal errors are expected with at-least-once event
delivery and are turned into no-ops by the orchestrator.
"""


class StandupError(Exception):
    """Base class for all standup bot errors."""


class ConfigError(StandupError):
    """The standup configuration file is missing or invalid."""


class TransportError(StandupError):
    """A MessagingGateway call failed (network, permissions, rate limit)."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class StaleReferenceError(StandupError):
    """An event refers to a superseded or unknown message."""


class UnknownMemberError(StandupError):
    """An event or lookup references a member outside the run."""


class AlreadyTerminalError(StandupError):
    """A transition was attempted on a finished conversation."""


class InvalidTransitionError(StandupError):
    """A state machine was asked for a transition it does not allow."""


class MalformedEventError(StandupError):
    """An inbound interaction payload is missing required fields."""


class StateStoreError(StandupError):
    """The conversation state store could not be initialized."""


class CorruptSnapshotError(StateStoreError):
    """A recovered snapshot could not be decoded."""
