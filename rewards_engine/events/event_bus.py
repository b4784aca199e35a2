# rewards_engine/events/event_bus.py
"""
Event bus for notifying collaborators (notifications, reporting) after
engine writes have committed. Subscriber failures never affect the write.
"""
from typing import Dict, List, Callable, Any
import logging
import asyncio

logger = logging.getLogger(__name__)


class EventBus:
    """
    Simple in-process event bus.
    Each engine can get its own instance; `eventBus` is the shared default.
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {}

    def subscribe(self, eventName: str, handler: Callable):
        """Subscribe handler to event."""
        if eventName not in self._handlers:
            self._handlers[eventName] = []

        self._handlers[eventName].append(handler)
        logger.debug(f"Handler {handler.__name__} subscribed to {eventName}")

    def unsubscribe(self, eventName: str, handler: Callable):
        """Unsubscribe handler from event."""
        if eventName in self._handlers and handler in self._handlers[eventName]:
            self._handlers[eventName].remove(handler)
            logger.debug(f"Handler {handler.__name__} unsubscribed from {eventName}")

    async def emit(self, eventName: str, data: Dict[str, Any]):
        """Emit event to all subscribers."""
        if eventName not in self._handlers:
            return

        logger.debug(f"Emitting event {eventName} with data: {data}")

        for handler in list(self._handlers[eventName]):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(data)
                else:
                    handler(data)
            except Exception as e:
                logger.error(
                    f"Error in handler {handler.__name__} for event {eventName}: {e}",
                    exc_info=True
                )

    def clear(self):
        """Clear all event handlers."""
        self._handlers.clear()


# Shared default instance
eventBus = EventBus()


class RewardsEvents:
    """Events published by the engine."""

    REBATES_DISBURSED = "rebates.disbursed"
    RANK_ACHIEVED = "rank.achieved"
    MEMBER_PLACED = "member.placed"
    MATCHING_SETTLED = "matching.settled"
    WALLET_RESET = "wallet.reset"
