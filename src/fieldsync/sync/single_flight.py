"""Single-flight coordination for coroutines."""

import asyncio
from typing import Awaitable, Callable, Generic, TypeVar

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Run at most one instance of an operation at a time.

    The first caller starts the operation; callers arriving while it is in
    flight await the same result (or exception) instead of starting their own.

    Example:
        refresh = SingleFlight[str]()
        token = await refresh.run(fetch_new_token)
    """

    def __init__(self) -> None:
        self._inflight: asyncio.Future[T] | None = None

    @property
    def in_flight(self) -> bool:
        """Whether an operation is currently running."""
        return self._inflight is not None

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` or join the run already in progress."""
        if self._inflight is not None:
            return await asyncio.shield(self._inflight)

        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._inflight = future
        try:
            result = await operation()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except BaseException as e:
            future.set_exception(e)
            # Mark retrieved so an unobserved failure does not warn at GC
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight = None
