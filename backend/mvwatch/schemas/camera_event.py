"""
Camera Event Schemas

Defines the inbound MV sense payload published by the cameras and the
parsed, immutable CameraEvent handed through the pipeline.

Sample topic and message:
    /merakimv/Q2GV-xxxx-xxxx/0 {"ts":1572567835359, "counts":{"person":1}}
"""
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# 9999-12-31T23:59:59.999Z, the last instant datetime can represent
MAX_TIMESTAMP_MS = 253402300799999


class EventClass(str, Enum):
    """Detection category of a notification."""
    PERSON = "person"
    VEHICLE = "vehicle"


class MVCounts(BaseModel):
    """Per-class object counts; a class is absent when the camera does not detect it."""
    model_config = ConfigDict(extra="ignore")

    person: Optional[int] = None
    vehicle: Optional[int] = None

    def count_for(self, event_class: EventClass) -> int:
        value = getattr(self, event_class.value)
        return value or 0


class MVCountsMessage(BaseModel):
    """
    Raw zone-0 counts message from an MV camera.

    Attributes:
        ts: Event time in milliseconds since the epoch
        counts: Object counts keyed by class
    """
    model_config = ConfigDict(extra="ignore")

    ts: int = Field(ge=0, le=MAX_TIMESTAMP_MS, description="Milliseconds since the epoch")
    counts: MVCounts


def millis_to_datetime(ts: int) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime without float rounding."""
    seconds, millis = divmod(ts, 1000)
    return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(microsecond=millis * 1000)


def to_iso_instant(value: datetime) -> str:
    """Format as an ISO-8601 UTC instant with millisecond precision, e.g. 2019-11-01T00:23:55.359Z"""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class CameraEvent(BaseModel):
    """
    A parsed detection event. Immutable once created.

    Attributes:
        camera_id: Camera serial number taken from the topic
        event_class: person or vehicle
        occurred_at: When the camera saw the object (UTC)
    """
    model_config = ConfigDict(frozen=True)

    camera_id: str
    event_class: EventClass
    occurred_at: datetime

    @property
    def occurred_at_ms(self) -> int:
        """Event time in epoch milliseconds."""
        return (self.occurred_at - _EPOCH) // timedelta(milliseconds=1)

    @property
    def occurred_at_iso(self) -> str:
        return to_iso_instant(self.occurred_at)
