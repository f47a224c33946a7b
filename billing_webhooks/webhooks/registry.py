import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from billing_webhooks.webhooks.envelope import WebhookEnvelope
from billing_webhooks.webhooks.results import HandlerResult, Skipped, UNHANDLED_EVENT_TYPE

logger = logging.getLogger(__name__)


@dataclass
class WebhookContext:
    """
    What a handler gets: the verified event plus the coordinator's open
    transaction. Handlers must write only through this session.
    """
    envelope: WebhookEnvelope
    session: AsyncSession

    @property
    def event_id(self) -> str:
        return self.envelope.external_event_id

    @property
    def event_type(self) -> str:
        return self.envelope.event_type


class WebhookHandler:
    event_types: Tuple[str, ...] = ()

    async def handle(self, context: WebhookContext) -> HandlerResult:
        raise NotImplementedError


class HandlerRegistry:
    def __init__(self, handlers: Iterable[WebhookHandler] = ()):
        self._handlers: Dict[str, WebhookHandler] = {}
        for handler in handlers:
            self.register(handler)

    def register(self, handler: WebhookHandler) -> None:
        for event_type in handler.event_types:
            if event_type in self._handlers:
                raise ValueError(f"Handler already registered for {event_type}")
            self._handlers[event_type] = handler

    def get_handler(self, event_type: str) -> Optional[WebhookHandler]:
        return self._handlers.get(event_type)

    @property
    def event_types(self) -> Tuple[str, ...]:
        return tuple(sorted(self._handlers))

    async def dispatch(self, context: WebhookContext) -> HandlerResult:
        handler = self.get_handler(context.event_type)
        if handler is None:
            # the provider sends many event types we don't care about, they still get acknowledged
            logger.info(f"No handler for {context.event_type} (id: {context.event_id})")
            return Skipped(UNHANDLED_EVENT_TYPE)
        return await handler.handle(context)
