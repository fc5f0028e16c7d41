"""Analysis Providers Package

Pluggable image analysis backends used by the analysis dispatcher.

Available providers:
- PlateRecognizerProvider: platerecognizer.com plate reader (vehicle)
- OpenALPRProvider: openalpr.com cloud API (vehicle)
- RekognitionProvider: AWS Rekognition DetectFaces (person)
"""

from mvwatch.services.providers.base import (
    AgeRange,
    Emotion,
    FaceDetail,
    GenderEstimate,
    PersonProvider,
    PlateResult,
    ProviderError,
    VehicleProvider,
)
from mvwatch.services.providers.openalpr import OpenALPRProvider
from mvwatch.services.providers.plate_recognizer import PlateRecognizerProvider
from mvwatch.services.providers.rekognition import RekognitionProvider

__all__ = [
    "AgeRange",
    "Emotion",
    "FaceDetail",
    "GenderEstimate",
    "PersonProvider",
    "PlateResult",
    "ProviderError",
    "VehicleProvider",
    "OpenALPRProvider",
    "PlateRecognizerProvider",
    "RekognitionProvider",
]
