"""
Request lifetime tracking

Every store round-trip is tagged with the generation it started in. When the
session closes (or the document is reloaded) the generation moves on, and any
response still in flight from an older generation is dropped instead of being
applied to the trees.
"""

from typing import Awaitable, Optional, Tuple, TypeVar

from bizplan.utils.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")


class SessionLifetime:
    def __init__(self):
        self._generation = 0
        self._closed = False

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def closed(self) -> bool:
        return self._closed

    def token(self) -> int:
        """Generation to stamp on a request that is about to start"""
        return self._generation

    def is_current(self, token: int) -> bool:
        return not self._closed and token == self._generation

    def advance(self) -> int:
        """Invalidate every request started so far (used on reload)"""
        self._generation += 1
        return self._generation

    def close(self):
        self._closed = True
        self._generation += 1

    def reopen(self):
        self._closed = False
        self._generation += 1

    async def guard(self, request: Awaitable[T], what: str = "request") -> Tuple[bool, Optional[T]]:
        """
        Await request and report whether its response may still be applied

        Returns:
            (True, result) if the generation is still current,
            (False, None) if the response is stale and must be discarded.
            Errors from request propagate only while the generation is current.
        """
        token = self.token()
        try:
            result = await request
        except Exception:
            if not self.is_current(token):
                logger.debug(f"Discarding failed {what} from stale generation {token}")
                return False, None
            raise
        if not self.is_current(token):
            logger.debug(f"Discarding {what} response from stale generation {token}")
            return False, None
        return True, result
