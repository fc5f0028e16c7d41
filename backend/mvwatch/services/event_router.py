"""
Event Router

Turns raw broker messages into snapshot acquisitions:

    topic + payload
        ↓ parse topic   /{prefix}/{cameraId}/0   (anything else is discarded)
        ↓ parse payload {"ts": <millis>, "counts": {"person": n, "vehicle": n}}
        ↓ for each class with count > 0
    DebounceLedger.accept()  → suppressed? stop
        ↓
    SnapshotAcquirer.start(camera_id, ISO(ts), handler for the class)

Parse failures are discards, logged at debug level; they never raise.
"""
import json
import logging
from typing import List, Mapping, Optional

from pydantic import ValidationError

from mvwatch.core.metrics import record_camera_message, record_debounce_decision
from mvwatch.schemas.camera_event import (
    CameraEvent,
    EventClass,
    MVCountsMessage,
    millis_to_datetime,
)
from mvwatch.services.debounce_ledger import DebounceLedger
from mvwatch.services.snapshot_service import ImageHandler, SnapshotAcquirer

logger = logging.getLogger(__name__)

DEFAULT_TOPIC_PREFIX = "merakimv"

# Only zone 0 (the whole frame) carries the counts we act on
WHOLE_FRAME_ZONE = "0"


def parse_camera_topic(topic: str, prefix: str = DEFAULT_TOPIC_PREFIX) -> Optional[str]:
    """
    Extract the camera serial from a counts topic.

    Args:
        topic: e.g. "/merakimv/Q2GV-xxxx-xxxx/0"
        prefix: Expected marker segment

    Returns:
        Camera serial, or None if the topic is not a whole-frame counts topic
    """
    segments = topic.split("/")
    if len(segments) != 4:
        return None
    _, marker, camera_id, zone = segments
    if marker != prefix or zone != WHOLE_FRAME_ZONE or not camera_id:
        return None
    return camera_id


class EventRouter:
    """
    Classifies, debounces and routes camera count messages.

    Attributes:
        ledger: Debounce state, owned by the router
        acquirer: Starts one acquisition per accepted event
    """

    def __init__(
        self,
        ledger: DebounceLedger,
        acquirer: SnapshotAcquirer,
        handlers: Mapping[EventClass, ImageHandler],
        topic_prefix: str = DEFAULT_TOPIC_PREFIX,
    ):
        missing = [c.value for c in EventClass if c not in handlers]
        if missing:
            raise ValueError(f"No image handler for event class(es): {', '.join(missing)}")
        self.ledger = ledger
        self.acquirer = acquirer
        self._handlers = dict(handlers)
        self._topic_prefix = topic_prefix

    def handle(self, topic: str, payload: bytes) -> List[CameraEvent]:
        """
        Route one broker message. Must be called on the event loop thread.

        Returns:
            The events that passed debouncing and had an acquisition started
        """
        camera_id = parse_camera_topic(topic, self._topic_prefix)
        if camera_id is None:
            record_camera_message("ignored_topic")
            logger.debug(f"Ignoring message on topic {topic}", extra={"event_type": "topic_ignored"})
            return []

        try:
            message = MVCountsMessage.model_validate(json.loads(payload))
            occurred_at = millis_to_datetime(message.ts)
        except (ValueError, ValidationError, OverflowError, OSError) as e:
            # json.JSONDecodeError and UnicodeDecodeError are ValueErrors
            record_camera_message("malformed")
            logger.debug(
                f"Discarding malformed payload from camera {camera_id}: {e}",
                extra={"event_type": "payload_malformed", "camera_id": camera_id}
            )
            return []

        started: List[CameraEvent] = []
        for event_class in EventClass:
            if message.counts.count_for(event_class) <= 0:
                continue

            event = CameraEvent(camera_id=camera_id, event_class=event_class, occurred_at=occurred_at)
            accepted = self.ledger.accept(camera_id, event_class, occurred_at)
            record_debounce_decision(event_class.value, accepted)
            if not accepted:
                continue

            logger.debug(
                f"{event_class.value} detected on camera {camera_id} at {event.occurred_at_iso}",
                extra={
                    "event_type": "camera_event_accepted",
                    "camera_id": camera_id,
                    "event_class": event_class.value,
                    "occurred_at": event.occurred_at_iso,
                }
            )
            self.acquirer.start(
                camera_id,
                event.occurred_at_iso,
                self._handlers[event_class],
                event_class.value,
            )
            started.append(event)

        record_camera_message("routed" if started else "no_action")
        return started
