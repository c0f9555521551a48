import logging
import queue
import threading

logger = logging.getLogger(__name__)


class ChangeFeed:
    """
    Inbound channel of change events

    Store subscriptions push events in from whatever thread commits the write;
    a single consumer drains them in receipt order. No reordering and no
    deduplication happen here.
    """

    def __init__(self):
        self._events = queue.SimpleQueue()
        self._drain_lock = threading.Lock()
        self._closed = False

    def put(self, event):
        if self._closed:
            logger.debug(f"Feed closed, dropping {event.kind} on {event.table}")
            return
        self._events.put(event)

    def drain(self, handler) -> int:
        """
        Hand every queued event to handler, oldest first

        Returns:
            Number of events consumed
        """
        consumed = 0
        with self._drain_lock:
            while True:
                try:
                    event = self._events.get_nowait()
                except queue.Empty:
                    break

                consumed += 1
                try:
                    handler(event)
                except Exception:
                    logger.exception(f"Failed to apply {event.kind} on {event.table} for row {event.row_id}")

        if consumed:
            logger.debug(f"Drained {consumed} change events")
        return consumed

    def clear(self) -> int:
        return self.drain(lambda event: None)

    def close(self):
        self._closed = True
        self.clear()

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self):
        return self._events.qsize()
