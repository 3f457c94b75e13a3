import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger("autoui_runtime")


class AuthoringQueue:
    """
    Single FIFO chain of "write VFS + regenerate registry + rebuild"
    operations shared by every unit.

    enqueue() chains the new op behind the current tail whether that tail
    succeeded or failed, so ops run one at a time in submission order and a
    failing op never blocks the ones after it. The returned task carries the
    op's own result or exception.
    """

    def __init__(self) -> None:
        self._tail: Optional[asyncio.Future] = None
        self._submitted = 0
        self._completed = 0

    def enqueue(self, op: Callable[[], Awaitable[Any]], label: str = "") -> "asyncio.Task":
        previous = self._tail
        self._submitted += 1
        seq = self._submitted
        task = asyncio.get_running_loop().create_task(self._run_after(previous, op, seq, label))
        self._tail = task
        return task

    async def _run_after(self, previous, op, seq: int, label: str):
        if previous is not None:
            try:
                await asyncio.shield(previous)
            except asyncio.CancelledError:
                if not previous.cancelled():
                    raise
            except Exception:
                # the previous op's failure belongs to its own caller
                pass
        logger.debug(f"[queue] running op #{seq} {label}".rstrip())
        try:
            return await op()
        finally:
            self._completed += 1

    async def drain(self) -> None:
        while self._tail is not None and not self._tail.done():
            tail = self._tail
            try:
                await asyncio.shield(tail)
            except asyncio.CancelledError:
                if not tail.cancelled():
                    raise
            except Exception:
                pass

    @property
    def pending(self) -> int:
        return self._submitted - self._completed
