from __future__ import annotations

import threading
from typing import Iterator

# polling granularity for row scans and point walks
CHECK_ROWS = 16
CHECK_POINTS = 65536


class OperationCancelled(Exception):
    """Raised from inside a long-running loop once its CancelToken is set."""


class CancelToken:
    """Caller-owned cancellation flag shared with a worker thread."""

    __slots__ = ("_event",)

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, where: str = "operation") -> None:
        if self._event.is_set():
            raise OperationCancelled(f"{where} interrupted")


def check(cancel: CancelToken | None, where: str = "operation") -> None:
    if cancel is not None:
        cancel.check(where)


def row_blocks(height: int, cancel: CancelToken | None = None,
               where: str = "operation") -> Iterator[tuple[int, int]]:
    """Yield [r0, r1) row blocks of CHECK_ROWS rows.

    The token is polled after each block has been consumed, so a cancelled
    scan never runs more than one block past the request.
    """
    for r0 in range(0, height, CHECK_ROWS):
        yield r0, min(r0 + CHECK_ROWS, height)
        check(cancel, where)


class PointCounter:
    """Poll a token every CHECK_POINTS calls to tick()."""

    __slots__ = ("cancel", "where", "count")

    def __init__(self, cancel: CancelToken | None, where: str = "operation"):
        self.cancel = cancel
        self.where = where
        self.count = 0

    def tick(self) -> None:
        self.count += 1
        if self.count % CHECK_POINTS == 0:
            check(self.cancel, self.where)
