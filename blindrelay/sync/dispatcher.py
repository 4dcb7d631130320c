"""
Sync Event Dispatcher

Every frame from the relay goes through validate -> gate -> handle. The relay
is transport, not an authority: nothing it sends reaches application state
without passing the model for its tag.
"""

import json
import logging
from typing import Any, AsyncIterable, Callable, Dict, List, Optional

from .context import SyncContext
from .events import SyncEvent
from .handlers import SyncHandler, _call
from .validation import UnknownEventType, ValidationRejected, validate_sync_event


logger = logging.getLogger(__name__)


class SyncManager:
    """
    Routes sync events to registered handlers and subscribers.
    """

    def __init__(self, context_provider: Callable[[], SyncContext]):
        """
        Initialize the dispatcher.

        Args:
            context_provider: Returns the current SyncContext; called once
                per event so key rotations and logouts take effect at once
        """
        self.context_provider = context_provider
        self.handlers: Dict[str, SyncHandler] = {}
        self.subscribers: Dict[str, List[Callable]] = {}

    def register_handler(self, handler: SyncHandler):
        """Register a handler for each of its event types"""
        for event_type in handler.event_types:
            if event_type in self.handlers:
                logger.debug("Replacing handler for %s", event_type)
            self.handlers[event_type] = handler

    def subscribe(self, event_type: str, callback: Callable[[SyncEvent], Any]) -> Callable[[], None]:
        """
        Observe events of one type after their handler ran.

        Returns:
            Function removing the subscription
        """
        self.subscribers.setdefault(event_type, []).append(callback)

        def unsubscribe():
            callbacks = self.subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    async def dispatch(self, event_type: str, payload: Any) -> Optional[SyncEvent]:
        """
        Validate, gate and apply one event.

        Returns:
            The typed event if it was applied, None if it was dropped
        """
        handler = self.handlers.get(event_type) if isinstance(event_type, str) else None
        if handler is None:
            logger.debug("Ignoring unhandled sync event %r", event_type)
            return None

        try:
            event = validate_sync_event(event_type, payload)
        except UnknownEventType:
            logger.debug("Ignoring unknown sync event %r", event_type)
            return None
        except ValidationRejected as e:
            logger.warning("Rejected sync event %s", e)
            return None

        context = self.context_provider()
        if event.origin_session_id is not None and event.origin_session_id == context.session_id:
            logger.debug("Skipping self-originated %s", event_type)
            return None
        if not handler.should_process(event, context):
            logger.debug("Gate closed for %s", event_type)
            return None

        try:
            await handler.handle(event, context)
        except Exception:
            logger.exception("Sync handler for %s failed", event_type)
            return None

        for callback in list(self.subscribers.get(event_type, [])):
            try:
                await _call(callback, event)
            except Exception:
                logger.exception("Sync subscriber for %s failed", event_type)
        return event

    async def consume(self, frames: AsyncIterable[Any]):
        """
        Dispatch every frame of a channel until it closes.

        Frames are {"event": tag, "payload": {...}} objects, either decoded or
        as JSON text. Anything else is dropped.
        """
        async for frame in frames:
            if isinstance(frame, (str, bytes)):
                try:
                    frame = json.loads(frame)
                except ValueError:
                    logger.warning("Dropping non-JSON sync frame")
                    continue
            if not isinstance(frame, dict) or "event" not in frame:
                logger.debug("Dropping frame without an event tag")
                continue
            await self.dispatch(frame["event"], frame.get("payload"))
