import asyncio
import contextlib
from typing import AsyncIterator, Iterable, Iterator, TypeVar

T = TypeVar("T")

_DONE = object()


def iter_as_async(it: Iterable[T]) -> AsyncIterator[T]:
    """Expose a blocking iterator as an async one, pulling each item in a worker thread."""

    async def gen() -> AsyncIterator[T]:
        iterator: Iterator[T] = iter(it)
        try:
            while True:
                item = await asyncio.to_thread(next, iterator, _DONE)
                if item is _DONE:
                    break
                yield item  # type: ignore[misc]
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                # A cancelled pull may still be running in its thread
                with contextlib.suppress(ValueError):
                    close()

    return gen()


async def collect_text(stream: AsyncIterator[str]) -> str:
    parts = []
    async for chunk in stream:
        if chunk:
            parts.append(chunk)
    return "".join(parts)
