"""Singleflight — coalesce concurrent identical async calls."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable

from .exceptions import ProviderError


class Singleflight:
    """Runs at most one call per key at a time.

    Callers arriving while a call for the same key is in flight await
    its result instead of starting their own.  ``do`` reports whether
    the result was shared so only the executing caller pays for it.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future] = {}

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    async def do(self, key: str, fn: Callable[[], Awaitable[Any]]) -> tuple[Any, bool]:
        """Run *fn* for *key*, or join the call already running.

        Returns:
            ``(result, shared)``; ``shared`` is True for callers that
            joined another caller's execution.
        """
        existing = self._inflight.get(key)
        if existing is not None:
            try:
                return await asyncio.shield(existing), True
            except asyncio.CancelledError:
                if existing.cancelled():
                    raise ProviderError(f"coalesced call {key[:12]} was cancelled") from None
                raise

        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await fn()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as exc:
            future.set_exception(exc)
            future.exception()  # mark retrieved; joined callers still re-raise it
            raise
        else:
            future.set_result(result)
            return result, False
        finally:
            self._inflight.pop(key, None)
