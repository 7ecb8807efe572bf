from __future__ import annotations

import asyncio
from typing import Any, Callable, TypeVar

from portalauth.storage.errors import StoreUnavailable

T = TypeVar("T")


async def call_store(func: Callable[..., T], *args: Any, timeout: float, **kwargs: Any) -> T:
    """Run a blocking store call off the event loop, bounded by ``timeout``.

    A call that does not answer in time is reported as ``StoreUnavailable``;
    callers on the authorization path turn that into a denial.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args, **kwargs), timeout)
    except asyncio.TimeoutError as exc:
        name = getattr(func, "__name__", "store_call")
        raise StoreUnavailable("credential store timed out", operation=name) from exc
