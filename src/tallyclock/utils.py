from loguru import logger
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

@dataclass
class NamedItem:
    """An entry in a :class:`NamedQueue`
    """
    key: Any
    item: Any


class NamedQueue(asyncio.Queue):
    """An :class:`asyncio.Queue` holding only the most recent item per key

    Putting an item whose :attr:`~NamedItem.key` is already waiting replaces
    the waiting item in place. Keys are served in the order they were first
    put, so a slow consumer sees the current value of each key rather than a
    backlog of intermediate ones.
    """

    @staticmethod
    def create_item(key: Any, item: Any) -> NamedItem:
        return NamedItem(key=key, item=item)

    # asyncio.Queue sizes itself with len(self._queue)
    def _init(self, maxsize):
        self._queue: Dict[Any, NamedItem] = {}

    def _put(self, item: NamedItem):
        self._queue[item.key] = item

    def _get(self) -> NamedItem:
        key = next(iter(self._queue))
        return self._queue.pop(key)


async def cancel_task(task: Optional[asyncio.Task]):
    """Cancel the given task (if running) and wait for it to finish
    """
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        logger.exception(exc)
