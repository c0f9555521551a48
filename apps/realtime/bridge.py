"""
Redis Pub/Sub bridge for change events

Each process publishes the change events its own ORM writes produce and
feeds the events published by the other processes into its change feed, so
every mirror sees every committed write.

Message format:
    {"origin": "<process id>", "kind": "update", "table": "operations", "row": {...}, "timestamp": "ISO8601"}
"""

import json
import logging
import uuid

import redis
from django.core.serializers.json import DjangoJSONEncoder
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .events import ChangeEvent, EventKind

logger = logging.getLogger(__name__)

DEFAULT_CHANNEL = "field-ops:changes"


def encode_event(event: ChangeEvent, origin: str) -> str:
    return json.dumps(
        {
            "origin": origin,
            "kind": event.kind.value,
            "table": event.table,
            "row": event.row,
            "timestamp": timezone.now().isoformat(),
        },
        cls=DjangoJSONEncoder,
    )


def decode_event(payload) -> tuple:
    """Returns (origin, event); timestamp columns come back as datetimes"""
    message = json.loads(payload)
    row = dict(message["row"])
    for key, value in row.items():
        if key.endswith("_at") and isinstance(value, str):
            row[key] = parse_datetime(value)

    event = ChangeEvent(kind=EventKind(message["kind"]), table=message["table"], row=row, remote=True)
    return message["origin"], event


class RedisChangeBridge:
    def __init__(self, url: str = None, channel: str = DEFAULT_CHANNEL, client=None):
        self.url = url
        self.channel = channel
        self.origin = uuid.uuid4().hex
        self._client = client
        self._pubsub = None
        self._thread = None
        self._callback = None

    @property
    def client(self):
        """Lazily created Redis connection"""
        if self._client is None:
            self._client = redis.Redis.from_url(self.url, decode_responses=True)
        return self._client

    def publish(self, event: ChangeEvent):
        try:
            self.client.publish(self.channel, encode_event(event, self.origin))
        except redis.RedisError:
            # the other processes catch up on their next refresh
            logger.warning(f"Failed to publish {event.kind.value} on {event.table}", exc_info=True)

    def listen(self, callback):
        """Start a daemon thread handing remote events to callback"""
        self._callback = callback
        try:
            self._pubsub = self.client.pubsub(ignore_subscribe_messages=True)
            self._pubsub.subscribe(**{self.channel: self._handle_message})
            self._thread = self._pubsub.run_in_thread(sleep_time=0.5, daemon=True)
        except redis.RedisError:
            logger.error(f"Could not subscribe to {self.channel}, changes from other processes will be missed", exc_info=True)
            return

        logger.info(f"Listening for changes on {self.channel}")

    def _handle_message(self, message):
        try:
            origin, event = decode_event(message["data"])
        except (ValueError, KeyError, TypeError):
            logger.warning(f"Dropping malformed change message on {self.channel}", exc_info=True)
            return

        if origin == self.origin:
            return

        if self._callback is not None:
            self._callback(event)

    def close(self):
        if self._thread is not None:
            self._thread.stop()
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None
        self._callback = None
