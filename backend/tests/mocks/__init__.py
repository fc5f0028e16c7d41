"""
Mock Factories Package

Realistic response payloads and scripted HTTP transports for tests.
"""
from tests.mocks.provider_mocks import (
    SAMPLE_JPEG,
    ScriptedTransport,
    create_meraki_networks,
    create_meraki_organizations,
    create_openalpr_response,
    create_plate_recognizer_response,
    create_rekognition_face,
    create_rekognition_response,
    create_snapshot_response,
)

__all__ = [
    "SAMPLE_JPEG",
    "ScriptedTransport",
    # Meraki dashboard
    "create_meraki_networks",
    "create_meraki_organizations",
    "create_snapshot_response",
    # Providers
    "create_openalpr_response",
    "create_plate_recognizer_response",
    "create_rekognition_face",
    "create_rekognition_response",
]
