"""Per-SKU pessimistic locks with bounded waits."""

import threading
import time
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from .exceptions import LockAcquisitionException
from .logger import logger


class LockHandle:
    """Token proving ownership of one SKU lock.

    Attributes:
        sku: The locked SKU.
        owner: Ident of the thread that acquired the lock.
        acquired_at: Monotonic time of acquisition.
    """

    __slots__ = ("sku", "owner", "acquired_at", "_released")

    def __init__(self, sku: str, owner: int):
        self.sku = sku
        self.owner = owner
        self.acquired_at = time.monotonic()
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def __repr__(self) -> str:
        state = "released" if self._released else "held"
        return f"LockHandle(sku={self.sku!r}, {state})"


class _SkuLock:
    __slots__ = ("lock", "owner")

    def __init__(self):
        self.lock = threading.Lock()
        self.owner: Optional[int] = None


class LockCoordinator:
    """Hands out per-SKU locks.

    Multi-SKU callers go through :meth:`hold`, which acquires in sorted SKU
    order so that two operations over overlapping SKU sets can never wait on
    each other in a cycle.
    """

    def __init__(self, default_timeout: float = 3.0):
        """Initialize the coordinator.

        Args:
            default_timeout: Seconds to wait for a lock when no timeout is given.
        """
        self.default_timeout = default_timeout
        self._locks: dict[str, _SkuLock] = {}
        self._registry_lock = threading.Lock()

    def _lock_for(self, sku: str) -> _SkuLock:
        with self._registry_lock:
            entry = self._locks.get(sku)
            if entry is None:
                entry = self._locks[sku] = _SkuLock()
            return entry

    def acquire(self, sku: str, timeout: Optional[float] = None) -> LockHandle:
        """Acquire the lock of a SKU.

        Args:
            sku: SKU to lock.
            timeout: Maximum seconds to wait, defaults to ``default_timeout``.

        Returns:
            LockHandle: Handle to pass to :meth:`release`.

        Raises:
            LockAcquisitionException: If the lock is still held elsewhere after ``timeout``.
        """
        wait = self.default_timeout if timeout is None else timeout
        entry = self._lock_for(sku)
        if not entry.lock.acquire(timeout=wait):
            logger.warning(f"Lock wait timed out | sku={sku} | timeout={wait}s")
            raise LockAcquisitionException(sku, wait)
        owner = threading.get_ident()
        entry.owner = owner
        return LockHandle(sku, owner)

    def release(self, handle: LockHandle) -> None:
        """Release a lock; releasing an already released handle is a no-op.

        Args:
            handle: Handle returned by :meth:`acquire`.
        """
        if handle._released:
            return
        handle._released = True
        entry = self._lock_for(handle.sku)
        entry.owner = None
        entry.lock.release()

    def is_held(self, sku: str) -> bool:
        """Check whether the calling thread holds the lock of a SKU."""
        with self._registry_lock:
            entry = self._locks.get(sku)
        return entry is not None and entry.owner == threading.get_ident()

    @contextmanager
    def hold(self, skus: Iterable[str], timeout: Optional[float] = None) -> Iterator[list[LockHandle]]:
        """Hold the locks of several SKUs for the duration of a block.

        Locks are taken in sorted order and released in reverse order on every
        exit path. A timeout on any SKU releases the locks already taken by this
        call before the exception propagates.

        Args:
            skus: SKUs to lock; duplicates are ignored.
            timeout: Per-lock wait, defaults to ``default_timeout``.

        Yields:
            list[LockHandle]: The acquired handles in acquisition order.
        """
        handles: list[LockHandle] = []
        try:
            for sku in sorted(set(skus)):
                handles.append(self.acquire(sku, timeout))
            yield handles
        finally:
            for handle in reversed(handles):
                self.release(handle)
