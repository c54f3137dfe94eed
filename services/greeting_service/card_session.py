import asyncio
import logging
from enum import Enum
from typing import Optional

from .card_compositor import CardCompositor, RenderResult

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    ERROR = "error"
    SUCCESS = "success"


class CardSession:
    """Caller-side view of card rendering for one viewer.

    Tracks the most recently requested name. A render that finishes after a
    newer request was made is stale: it is returned with ``stale=True`` and
    leaves `status`, `message` and `result` untouched.
    """

    def __init__(self, compositor: CardCompositor):
        self.compositor = compositor
        self.status = SessionStatus.IDLE
        self.message: Optional[str] = None
        self.result: Optional[RenderResult] = None
        self.name: Optional[str] = None
        self._ticket = 0

    @property
    def payload(self) -> Optional[str]:
        if self.status is SessionStatus.SUCCESS and self.result is not None:
            return self.result.data_url
        return None

    async def request(self, name: str) -> RenderResult:
        self._ticket += 1
        ticket = self._ticket
        self.name = name
        self.status = SessionStatus.LOADING
        self.message = None

        try:
            result = await self.compositor.render(name)
        except asyncio.CancelledError:
            if ticket == self._ticket:
                self.status = SessionStatus.IDLE
            raise

        if ticket != self._ticket:
            logger.info(f"session: discarding stale render for name={name!r} (ticket {ticket}, latest {self._ticket})")
            return result.model_copy(update={"stale": True})

        self.result = result
        if result.ok:
            self.status = SessionStatus.SUCCESS
        else:
            self.status = SessionStatus.ERROR
            self.message = result.message
        return result

    async def retry(self) -> RenderResult:
        """Render the last requested name again."""
        if self.name is None:
            raise ValueError("no name has been requested yet")
        return await self.request(self.name)
