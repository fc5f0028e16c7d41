"""
Debounce Ledger

MV cameras publish counts several times a second while an object stays in
frame. The ledger remembers, per (camera, event class), the time of the last
event that was let through and suppresses anything closer than the window.

Entries are never evicted; the key space is bounded by the camera fleet.
"""
import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple

from mvwatch.schemas.camera_event import EventClass

logger = logging.getLogger(__name__)

# Minimum spacing between two accepted events for the same camera and class
DEFAULT_WINDOW_MS = 500

LedgerKey = Tuple[str, EventClass]


class DebounceLedger:
    """
    Per-camera, per-class last-accepted timestamp store.

    accept() is an atomic check-and-set: the lock makes the comparison and
    the update one step, so two overlapping messages for the same key cannot
    both pass even if called from different threads.
    """

    def __init__(self, window_ms: int = DEFAULT_WINDOW_MS):
        if window_ms <= 0:
            raise ValueError("window_ms must be positive")
        self._window = timedelta(milliseconds=window_ms)
        self._entries: Dict[LedgerKey, datetime] = {}
        self._lock = threading.Lock()

    @property
    def window(self) -> timedelta:
        return self._window

    def accept(self, camera_id: str, event_class: EventClass, occurred_at: datetime) -> bool:
        """
        Decide whether an event passes the debounce window.

        Args:
            camera_id: Camera serial
            event_class: person or vehicle
            occurred_at: Event time reported by the camera

        Returns:
            True if accepted (and recorded), False if suppressed (nothing changes)
        """
        key = (camera_id, event_class)
        with self._lock:
            last = self._entries.get(key)
            if last is not None and occurred_at - last < self._window:
                logger.debug(
                    f"Debounced {event_class.value} event for camera {camera_id}",
                    extra={
                        "event_type": "debounce_suppressed",
                        "camera_id": camera_id,
                        "event_class": event_class.value,
                        "since_last_ms": (occurred_at - last) // timedelta(milliseconds=1),
                    }
                )
                return False
            self._entries[key] = occurred_at
            return True

    def last_accepted(self, camera_id: str, event_class: EventClass) -> Optional[datetime]:
        with self._lock:
            return self._entries.get((camera_id, event_class))

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
