"""
Cooperative cancellation shared by every pipeline stage.
"""

import asyncio
from typing import Optional

from core.exceptions import ImportCancelledError


class CancellationToken:
    """
    A cancellation signal checked at row and batch boundaries.

    Work that is already inside a transaction is not interrupted; the
    next boundary check raises ImportCancelledError and the surrounding
    transaction context manager commits or rolls back as usual.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None):
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, stage: Optional[str] = None):
        if self._event.is_set():
            raise ImportCancelledError(
                "Import cancelled",
                context={"stage": stage, "reason": self.reason}
            )


def check_cancelled(token: Optional[CancellationToken], stage: Optional[str] = None):
    """Boundary check that tolerates a missing token."""
    if token is not None:
        token.raise_if_cancelled(stage)
