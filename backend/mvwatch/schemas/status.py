"""Status API response schema"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class BrokerStatus(BaseModel):
    """MQTT subscriber state"""
    connected: bool
    broker: str = Field(..., description="host:port of the broker")
    messages_received: int = Field(default=0, ge=0)
    reconnect_attempt: int = Field(default=0, ge=0, description="Attempts since the last successful connect")
    last_error: Optional[str] = None
    last_connected_at: Optional[datetime] = None


class PipelineStatusResponse(BaseModel):
    """
    Snapshot of the ingestion pipeline for GET /api/v1/status.

    Attributes:
        mqtt_connected: Whether the broker connection is up
        broker: Subscriber details, None before the subscriber starts
        network_id: Resolved Meraki network id (None until startup completes)
        subscribed_topics: Camera topics subscribed to
        debounce_entries: Number of (camera, class) pairs seen so far
        acquisitions_in_flight: Snapshot acquisitions not yet terminal
        enabled_providers: Analysis providers switched on
        stolen_vehicle_lookup: Whether plate lookups are enabled
        stolen_vehicles_loaded: Plates currently in the stolen vehicle index
    """
    mqtt_connected: bool
    broker: Optional[BrokerStatus] = None
    network_id: Optional[str] = None
    subscribed_topics: List[str] = Field(default_factory=list)
    debounce_entries: int = Field(ge=0)
    acquisitions_in_flight: int = Field(ge=0)
    enabled_providers: List[str] = Field(default_factory=list)
    stolen_vehicle_lookup: bool = False
    stolen_vehicles_loaded: int = Field(default=0, ge=0)
