"""
Cooperative cancellation for a run.

The token is checked by the supervisor before each probe and by the pipeline
before each stage. Backoff waits go through CancellationToken.sleep() so a
cancel request wakes them immediately; in-flight probes are left to finish or
time out.
"""

import asyncio
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class CancellationToken:
    """One-shot cancellation signal shared by everything in a run."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation. Later calls keep the first reason."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()
        logger.warning(
            f"Cancellation requested: {reason}",
            extra={"event": "cancel_requested", "metadata": {"reason": reason}},
        )

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, delay: float) -> bool:
        """
        Sleep for `delay` seconds unless cancelled first.

        Returns:
            True if the sleep was interrupted by cancellation
        """
        if self.cancelled:
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self.cancelled})"
