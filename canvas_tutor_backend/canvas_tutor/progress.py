import asyncio, logging
from typing import AsyncIterator, List, Optional

from .models import ModuleEvent, ModuleStatus

logger = logging.getLogger(__name__)


class ProgressChannel:
    """
    Single-run stream of module status events.

    The pipeline publishes, one subscriber iterates. The channel closes
    itself after the first terminal event (completed or failed); publishing
    after that is a programming error.
    """

    def __init__(self):
        self._queue: "asyncio.Queue[Optional[ModuleEvent]]" = asyncio.Queue()
        self.events: List[ModuleEvent] = []
        self.closed = False

    def publish(self, event: ModuleEvent) -> None:
        if self.closed:
            raise RuntimeError(f"Progress channel for module {event.module_id} is already closed")
        logger.info(f"Module {event.module_id} status={event.status.value}: {event.message}")
        self.events.append(event)
        self._queue.put_nowait(event)
        if event.is_terminal:
            self.closed = True
            self._queue.put_nowait(None)

    def generating(self, module_id: str, message: str) -> None:
        self.publish(ModuleEvent(status=ModuleStatus.GENERATING, module_id=module_id, message=message))

    async def __aiter__(self) -> AsyncIterator[ModuleEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
