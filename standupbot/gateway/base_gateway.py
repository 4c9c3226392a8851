import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Tuple, TypeVar

from ..errors import TransportError
from ..models import MessageReference

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Action:
    """A clickable element of a message. action_id is echoed back in the interaction."""
    label: str
    action_id: str
    style: str = "primary"


@dataclass(frozen=True)
class MessageContent:
    text: str
    actions: Tuple[Action, ...] = ()

    @property
    def interactive(self) -> bool:
        return len(self.actions) > 0


class MessagingGateway:
    """
    Narrow interface to the chat platform.

    Implementations raise TransportError for every failure; the orchestrator
    never sees platform exceptions.
    """

    async def open_conversation(self, member_id: str) -> str:
        """Return the private conversation target for a member. Repeated calls return the same target."""
        raise NotImplementedError

    async def post_message(self, target: str, content: MessageContent) -> MessageReference:
        raise NotImplementedError

    async def update_message(self, target: str, reference: MessageReference, content: MessageContent) -> None:
        raise NotImplementedError


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded retries with exponential backoff: base_delay, 2*base_delay, ... capped at max_delay."""
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    async def call(self, description: str, func: Callable[[], Awaitable[T]]) -> T:
        """Run func until it succeeds or the attempts are used up.

        :raises TransportError: the last error once all attempts failed, or
            immediately for errors marked as not retryable.
        """
        for attempt in range(1, self.attempts + 1):
            try:
                return await func()
            except TransportError as e:
                if not e.retryable or attempt == self.attempts:
                    logger.warning(f"{description} failed after {attempt} attempt(s): {e}")
                    raise
                backoff = self.delay(attempt)
                logger.info(f"{description} failed ({e}), retrying in {backoff:.1f}s")
                await asyncio.sleep(backoff)
        raise AssertionError("unreachable")
