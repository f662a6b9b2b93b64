"""Async helpers for calling the blocking transport client from the event loop."""

import asyncio
from typing import Any, Callable, TypeVar

T = TypeVar("T")


async def run_sync(
    func: Callable[..., T], *args: Any, **kwargs: Any
) -> T:
    """Run a synchronous function in a worker thread without blocking the loop.

    Network calls made through ``SyncClient`` are the only suspension points
    of a sync attempt; everything else runs on the loop thread.

    Example:
        client = SyncClient(config)
        status = await run_sync(client.status, identity.owner_id)
    """
    return await asyncio.to_thread(func, *args, **kwargs)
