"""Base Analysis Provider Interfaces

Defines the contracts that keep analysis backends interchangeable:

- VehicleProvider: JPEG + camera id + ISO timestamp -> best-guess plate (or none)
- PersonProvider: JPEG -> one FaceDetail per detected face

Providers raise ProviderError for any failure; the dispatcher catches it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional


class ProviderError(Exception):
    """Raised when an analysis provider call fails."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


@dataclass
class PlateResult:
    """
    Best plate reading from a vehicle provider.

    Attributes:
        provider: Provider name
        plate: Plate as returned by the provider, None when nothing was read
        confidence: Provider score (0.0 to 1.0) when reported
    """
    provider: str
    plate: Optional[str] = None
    confidence: Optional[float] = None

    @property
    def is_empty(self) -> bool:
        return not self.plate

    @property
    def normalized_plate(self) -> Optional[str]:
        """Uppercased plate with surrounding whitespace removed."""
        if self.is_empty:
            return None
        return self.plate.strip().upper()


@dataclass
class GenderEstimate:
    value: str
    confidence: float


@dataclass
class AgeRange:
    low: int
    high: int


@dataclass
class Emotion:
    type: str
    confidence: float


@dataclass
class FaceDetail:
    """
    Attributes of one detected face.

    Attributes:
        gender: Predicted gender with confidence (0-100)
        age_range: Estimated age bounds in years
        emotions: All emotions reported, confidence 0-100
    """
    gender: GenderEstimate
    age_range: AgeRange
    emotions: List[Emotion] = field(default_factory=list)

    def confident_emotions(self, threshold: float = 50.0) -> List[Emotion]:
        """Emotions with confidence strictly above the threshold."""
        return [emotion for emotion in self.emotions if emotion.confidence > threshold]


class VehicleProvider(ABC):
    """
    Abstract base class for licence plate recognition services.

    Example usage:
        provider = PlateRecognizerProvider(api_token="...")
        result = await provider.recognize("Q2JV-XXXX-XXXX", "2019-11-01T00:23:55.359Z", jpeg)
        if not result.is_empty:
            print(result.normalized_plate)
    """

    name: str = "vehicle"

    @abstractmethod
    async def recognize(self, camera_id: str, occurred_at: str, image: bytes) -> PlateResult:
        """
        Read the plate in a vehicle snapshot.

        Args:
            camera_id: Camera serial
            occurred_at: ISO-8601 event time
            image: JPEG bytes

        Returns:
            PlateResult, empty when no plate could be read

        Raises:
            ProviderError: On any provider failure
        """
        pass

    async def close(self) -> None:
        """Release provider resources. Default: nothing to release."""
        return None


class PersonProvider(ABC):
    """Abstract base class for face attribute analysis services."""

    name: str = "person"

    @abstractmethod
    async def analyze(self, image: bytes) -> List[FaceDetail]:
        """
        Detect faces and their attributes.

        Args:
            image: JPEG bytes

        Returns:
            One FaceDetail per detected face; empty list when none

        Raises:
            ProviderError: On any provider failure
        """
        pass

    async def close(self) -> None:
        return None
