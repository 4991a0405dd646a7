from __future__ import annotations

import asyncio
import os
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from functools import partial
from typing import Any

from ...core.errors import ReentrantCall

__all__ = ["SessionGuard", "run_blocking"]

_MAX_WORKERS = max(1, min(32, os.cpu_count() or 1))
_EXECUTOR = ThreadPoolExecutor(max_workers=_MAX_WORKERS, thread_name_prefix="cipherpot-session")


async def run_blocking(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    loop = asyncio.get_running_loop()
    bound = partial(func, *args, **kwargs)
    return await loop.run_in_executor(_EXECUTOR, bound)


class SessionGuard:
    """Single-writer exclusion for one session.

    Other threads wait their turn.  A nested call from the thread already
    inside the session is rejected with :class:`ReentrantCall` instead of
    being queued, since it would observe a half-applied operation.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._owner: int | None = None

    @property
    def held(self) -> bool:
        return self._owner is not None

    @contextmanager
    def hold(self) -> Iterator[None]:
        me = threading.get_ident()
        if self._owner == me:
            raise ReentrantCall(f"re-entrant call into {self.name} rejected")
        with self._lock:
            self._owner = me
            try:
                yield
            finally:
                self._owner = None
