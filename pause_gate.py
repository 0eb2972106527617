"""
Cooperative pause for persistence around critical operations such as export.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from data_models import PersistenceState

logger = logging.getLogger(__name__)

EXPORT_STARTED = "export-start"
STATUS_UPDATED = "story-status-updated"


class SignalBus:
    """Minimal publish/subscribe channel for critical-operation signals"""

    def __init__(self):
        self._subscribers: Dict[str, List[Callable]] = {}

    def subscribe(self, event: str, callback: Callable) -> None:
        self._subscribers.setdefault(event, []).append(callback)

    def unsubscribe(self, event: str, callback: Callable) -> None:
        callbacks = self._subscribers.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def publish(self, event: str, **payload: Any) -> int:
        """Deliver an event to every subscriber; returns the number notified"""
        callbacks = list(self._subscribers.get(event, []))
        for callback in callbacks:
            try:
                callback(event, **payload)
            except Exception as e:
                logger.warning(f"Subscriber for '{event}' failed: {e}")
        return len(callbacks)


class PauseGate:
    """Tracks a 'do not persist until' deadline with lazy expiry"""

    def __init__(self,
                 state: Optional[PersistenceState] = None,
                 signal_bus: Optional[SignalBus] = None,
                 cooldown: float = 8.0,
                 clock: Callable[[], float] = time.monotonic):
        self.state = state if state is not None else PersistenceState()
        self.cooldown = cooldown
        self._clock = clock
        self._signal_bus = signal_bus

        if signal_bus is not None:
            signal_bus.subscribe(EXPORT_STARTED, self._on_critical_signal)
            signal_bus.subscribe(STATUS_UPDATED, self._on_critical_signal)

    def _on_critical_signal(self, event: str, **payload: Any) -> None:
        logger.debug(f"Critical signal '{event}' received - pausing persistence for {self.cooldown}s")
        self.pause(self.cooldown)

    def pause(self, duration: float) -> None:
        """Block persistence for `duration` seconds from now"""
        self.state.paused_until = self._clock() + duration
        self.state.is_blocked = True
        logger.debug(f"Persistence paused for {duration}s")

    def resume_now(self) -> None:
        self.state.paused_until = None
        self.state.is_blocked = False
        logger.debug("Persistence resumed manually")

    def can_persist_now(self) -> bool:
        """Check the deadline, clearing it once it has passed"""
        paused_until = self.state.paused_until
        if paused_until is not None:
            if self._clock() < paused_until:
                return False
            self.state.paused_until = None
            self.state.is_blocked = False
            logger.debug("Pause expired - persistence resumed")

        return self.state.can_save and not self.state.is_blocked

    def is_paused(self) -> bool:
        return not self.can_persist_now()

    def detach(self) -> None:
        """Stop listening to the signal bus"""
        if self._signal_bus is not None:
            self._signal_bus.unsubscribe(EXPORT_STARTED, self._on_critical_signal)
            self._signal_bus.unsubscribe(STATUS_UPDATED, self._on_critical_signal)
            self._signal_bus = None
