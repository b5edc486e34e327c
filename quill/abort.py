"""Cooperative cancellation shared by the stream reader and tool tasks."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from typing import TypeVar

T = TypeVar("T")


class AbortSignal:
    """One-shot abort flag that can also be awaited.

    A signal is created per user turn. Once aborted it stays aborted;
    the engine creates a fresh one for the next turn.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def aborted(self) -> bool:
        return self._event.is_set()

    def abort(self, reason: str = "aborted") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


async def iterate_until_aborted(
    source: AsyncIterator[T],
    signal: AbortSignal | None,
) -> AsyncIterator[T]:
    """Yield from source until it ends or the signal fires.

    A pending read is cancelled as soon as the signal fires, so a stalled
    network stream never blocks an abort.
    """
    if signal is None:
        async for item in source:
            yield item
        return

    iterator = source.__aiter__()
    abort_waiter = asyncio.ensure_future(signal.wait())
    try:
        while not signal.aborted:
            next_item = asyncio.ensure_future(iterator.__anext__())
            done, _ = await asyncio.wait(
                {next_item, abort_waiter},
                return_when=asyncio.FIRST_COMPLETED,
            )
            if next_item not in done:
                next_item.cancel()
                try:
                    await next_item
                except (asyncio.CancelledError, StopAsyncIteration):
                    pass
                return
            try:
                item = next_item.result()
            except StopAsyncIteration:
                return
            yield item
    finally:
        abort_waiter.cancel()
