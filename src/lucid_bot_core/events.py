"""
Event dispatcher: routes inbound workspace events to handlers.

Handlers are kept in a table keyed by event category. Each category gets one
route callable built at construction, and attach/detach go through the same
category -> topic filter table, so detaching removes exactly what was attached.

Routing runs on the session network thread and only hands the event to a
worker pool; handlers never run on the network thread.
"""

from __future__ import annotations

import functools
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Protocol

from lucid_bot_core.mqtt_topics import TopicSchema, TopicSchemaError, validate_category

logger = logging.getLogger(__name__)


class HandlerError(RuntimeError):
    """Raised by handlers for a failed event; caught and logged at the dispatch boundary."""


@dataclass(frozen=True, slots=True)
class InboundEvent:
    category: str
    workspace_id: str
    topic: str
    payload: str

    def json(self) -> dict[str, Any]:
        if not self.payload:
            return {}
        try:
            data = json.loads(self.payload)
        except json.JSONDecodeError as exc:
            raise HandlerError(f"malformed {self.category} payload: {exc}") from exc
        if not isinstance(data, dict):
            raise HandlerError(f"{self.category} payload must be a JSON object")
        return data


EventHandler = Callable[[InboundEvent], None]


class EventSource(Protocol):
    topics: TopicSchema

    def subscribe(self, topic_filter: str, callback: Callable[[str, str], None]) -> None: ...

    def unsubscribe(self, topic_filter: str) -> bool: ...


class EventDispatcher:
    def __init__(self, handlers: Mapping[str, EventHandler], *, max_workers: int = 8) -> None:
        for category in handlers:
            validate_category(category)
        self._handlers: dict[str, EventHandler] = dict(handlers)
        self._routes: dict[str, Callable[[str, str], None]] = {
            category: functools.partial(self._route, category) for category in self._handlers
        }
        self._attached: dict[str, str] = {}
        self._topics: Optional[TopicSchema] = None
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="event-handler")

    @property
    def categories(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    @property
    def attached(self) -> dict[str, str]:
        return dict(self._attached)

    def attach(self, session: EventSource) -> None:
        self._topics = session.topics
        for category, route in self._routes.items():
            if category in self._attached:
                continue
            topic_filter = session.topics.event_filter(category)
            session.subscribe(topic_filter, route)
            self._attached[category] = topic_filter
            logger.debug("Attached %s -> %s", category, topic_filter)
        logger.info("Event handlers attached: %s", ", ".join(self._attached) or "none")

    def detach(self, session: EventSource) -> None:
        for category, topic_filter in list(self._attached.items()):
            if not session.unsubscribe(topic_filter):
                logger.warning("Subscription for %s was already gone: %s", category, topic_filter)
            del self._attached[category]
        logger.info("Event handlers detached")

    def close(self) -> None:
        """Stop accepting events. In-flight and queued handlers run to completion."""
        self._executor.shutdown(wait=False)

    def _route(self, category: str, topic: str, payload: str) -> None:
        topics = self._topics
        if topics is None:
            logger.warning("Dropping %s event; dispatcher not attached", category)
            return
        try:
            workspace_id, _ = topics.parse_event_topic(topic)
        except TopicSchemaError as exc:
            logger.warning("Dropping %s event: %s", category, exc)
            return
        event = InboundEvent(category=category, workspace_id=workspace_id, topic=topic, payload=payload)
        try:
            self._executor.submit(self._run, event)
        except RuntimeError:
            logger.warning("Dropping %s event from %s; dispatcher closed", category, workspace_id)

    def _run(self, event: InboundEvent) -> None:
        handler = self._handlers[event.category]
        try:
            handler(event)
        except HandlerError as exc:
            logger.error(
                "Handler failed category=%s workspace=%s topic=%s: %s",
                event.category,
                event.workspace_id,
                event.topic,
                exc,
            )
        except Exception:
            logger.exception(
                "Handler crashed category=%s workspace=%s topic=%s",
                event.category,
                event.workspace_id,
                event.topic,
            )
