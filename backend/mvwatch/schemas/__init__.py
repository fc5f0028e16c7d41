"""Pydantic schemas for inbound messages and API responses"""
from mvwatch.schemas.camera_event import (
    EventClass,
    MVCounts,
    MVCountsMessage,
    CameraEvent,
    millis_to_datetime,
    to_iso_instant,
)
from mvwatch.schemas.status import (
    BrokerStatus,
    PipelineStatusResponse,
)

__all__ = [
    "EventClass",
    "MVCounts",
    "MVCountsMessage",
    "CameraEvent",
    "millis_to_datetime",
    "to_iso_instant",
    "BrokerStatus",
    "PipelineStatusResponse",
]
