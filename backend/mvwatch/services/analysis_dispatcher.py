"""
Analysis Dispatcher

Fans an acquired snapshot out to every enabled analysis provider for the
event class:

    dispatch_vehicle → each VehicleProvider.recognize()  → plate log (+ stolen check)
    dispatch_person  → each PersonProvider.analyze()     → face/emotion log

Providers run concurrently and independently; a failing provider is logged
and never affects the others or the caller. Results are gathered only to be
logged and returned for inspection, never to drive control flow.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from mvwatch.core.metrics import record_provider_call, record_stolen_vehicle_match
from mvwatch.schemas.camera_event import EventClass
from mvwatch.services.image_store import ImageStore
from mvwatch.services.providers.base import (
    FaceDetail,
    PersonProvider,
    ProviderError,
    VehicleProvider,
)
from mvwatch.services.snapshot_service import ImageHandler
from mvwatch.services.stolen_vehicles import StolenVehicleIndex

logger = logging.getLogger(__name__)

# Emotions at or below this confidence (0-100) are not reported
EMOTION_CONFIDENCE_THRESHOLD = 50.0


@dataclass
class AnalysisResult:
    """
    Outcome of one provider call.

    Attributes:
        provider: Provider name
        event_class: person or vehicle
        plate: Uppercased plate (vehicle providers, None when nothing read)
        stolen: Plate matched the stolen vehicle index
        faces: Detected faces (person providers)
        error: Failure reason, None on success
    """
    provider: str
    event_class: EventClass
    plate: Optional[str] = None
    stolen: bool = False
    faces: List[FaceDetail] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class AnalysisDispatcher:
    """
    Routes snapshots to analysis providers.

    Attributes:
        vehicle_providers: Enabled plate readers (zero or more)
        person_providers: Enabled face analyzers (zero or more)
    """

    def __init__(
        self,
        vehicle_providers: Sequence[VehicleProvider] = (),
        person_providers: Sequence[PersonProvider] = (),
        stolen_index: Optional[StolenVehicleIndex] = None,
        image_store: Optional[ImageStore] = None,
    ):
        """
        Args:
            vehicle_providers: Providers called for vehicle events
            person_providers: Providers called for person events
            stolen_index: Plate lookup; None disables the stolen check
            image_store: Saves every snapshot when set
        """
        self.vehicle_providers = list(vehicle_providers)
        self.person_providers = list(person_providers)
        self._stolen_index = stolen_index
        self._image_store = image_store

    @property
    def provider_names(self) -> List[str]:
        return [p.name for p in self.vehicle_providers] + [p.name for p in self.person_providers]

    def handler_for(self, event_class: EventClass) -> ImageHandler:
        """Image handler to register with the snapshot acquirer for a class."""
        if event_class == EventClass.PERSON:
            return self.dispatch_person
        return self.dispatch_vehicle

    async def _save(self, event_class: EventClass, camera_id: str, image: bytes) -> None:
        if self._image_store is not None:
            await self._image_store.save(event_class, camera_id, image)

    async def dispatch_vehicle(self, camera_id: str, occurred_at: str, image: bytes) -> List[AnalysisResult]:
        """
        Send a vehicle snapshot to every vehicle provider.

        Returns:
            One AnalysisResult per provider, in provider order
        """
        logger.debug(
            f"processVehicle: cameraSerial={camera_id}, ts={occurred_at}",
            extra={"event_type": "dispatch_vehicle", "camera_id": camera_id, "providers": len(self.vehicle_providers)}
        )
        calls = [self._recognize(provider, camera_id, occurred_at, image) for provider in self.vehicle_providers]
        results = await asyncio.gather(self._save(EventClass.VEHICLE, camera_id, image), *calls)
        return list(results[1:])

    async def dispatch_person(self, camera_id: str, occurred_at: str, image: bytes) -> List[AnalysisResult]:
        """
        Send a person snapshot to every person provider.

        Returns:
            One AnalysisResult per provider, in provider order
        """
        logger.debug(
            f"processPerson: cameraSerial={camera_id}, ts={occurred_at}",
            extra={"event_type": "dispatch_person", "camera_id": camera_id, "providers": len(self.person_providers)}
        )
        calls = [self._analyze(provider, camera_id, occurred_at, image) for provider in self.person_providers]
        results = await asyncio.gather(self._save(EventClass.PERSON, camera_id, image), *calls)
        return list(results[1:])

    async def _recognize(
        self,
        provider: VehicleProvider,
        camera_id: str,
        occurred_at: str,
        image: bytes,
    ) -> AnalysisResult:
        start = time.perf_counter()
        try:
            result = await provider.recognize(camera_id, occurred_at, image)
        except ProviderError as e:
            record_provider_call(provider.name, "error", time.perf_counter() - start)
            logger.error(
                f"{provider.name}: {e}",
                extra={"event_type": "provider_error", "provider": provider.name, "camera_id": camera_id}
            )
            return AnalysisResult(provider=provider.name, event_class=EventClass.VEHICLE, error=str(e))
        except Exception as e:
            record_provider_call(provider.name, "error", time.perf_counter() - start)
            logger.error(
                f"{provider.name}: unexpected error: {e}",
                extra={"event_type": "provider_unexpected_error", "provider": provider.name, "camera_id": camera_id},
                exc_info=True
            )
            return AnalysisResult(provider=provider.name, event_class=EventClass.VEHICLE, error=str(e))

        duration = time.perf_counter() - start
        plate = result.normalized_plate
        if plate is None:
            record_provider_call(provider.name, "empty", duration)
            logger.debug(
                f"{provider.name}: no plate read",
                extra={"event_type": "plate_not_read", "provider": provider.name, "camera_id": camera_id}
            )
            return AnalysisResult(provider=provider.name, event_class=EventClass.VEHICLE)

        record_provider_call(provider.name, "success", duration)
        logger.info(
            f"{provider.name}: plate={plate}, GMT timestamp={occurred_at}",
            extra={
                "event_type": "plate_recognized",
                "provider": provider.name,
                "camera_id": camera_id,
                "plate": plate,
                "confidence": result.confidence,
            }
        )

        stolen = self._stolen_index is not None and self._stolen_index.is_stolen(plate)
        if stolen:
            record_stolen_vehicle_match()
            logger.critical(
                f"*** STOLEN VEHICLE DETECTED *** : {plate}, GMT timestamp={occurred_at}",
                extra={
                    "event_type": "stolen_vehicle_detected",
                    "provider": provider.name,
                    "camera_id": camera_id,
                    "plate": plate,
                }
            )

        return AnalysisResult(provider=provider.name, event_class=EventClass.VEHICLE, plate=plate, stolen=stolen)

    async def _analyze(
        self,
        provider: PersonProvider,
        camera_id: str,
        occurred_at: str,
        image: bytes,
    ) -> AnalysisResult:
        start = time.perf_counter()
        try:
            faces = await provider.analyze(image)
        except ProviderError as e:
            record_provider_call(provider.name, "error", time.perf_counter() - start)
            logger.error(
                f"{provider.name}: {e}",
                extra={"event_type": "provider_error", "provider": provider.name, "camera_id": camera_id}
            )
            return AnalysisResult(provider=provider.name, event_class=EventClass.PERSON, error=str(e))
        except Exception as e:
            record_provider_call(provider.name, "error", time.perf_counter() - start)
            logger.error(
                f"{provider.name}: unexpected error: {e}",
                extra={"event_type": "provider_unexpected_error", "provider": provider.name, "camera_id": camera_id},
                exc_info=True
            )
            return AnalysisResult(provider=provider.name, event_class=EventClass.PERSON, error=str(e))

        record_provider_call(provider.name, "success" if faces else "empty", time.perf_counter() - start)

        for face in faces:
            logger.info(
                f"{provider.name}: I'm {round(face.gender.confidence)}% confident I just saw a "
                f"{face.gender.value} between {face.age_range.low} and {face.age_range.high} years old.",
                extra={
                    "event_type": "face_detected",
                    "provider": provider.name,
                    "camera_id": camera_id,
                    "occurred_at": occurred_at,
                }
            )
            emotions = face.confident_emotions(EMOTION_CONFIDENCE_THRESHOLD)
            if emotions:
                described = ", ".join(f"{e.type} ({round(e.confidence)}% confident)" for e in emotions)
                logger.info(
                    f"{provider.name}: They seemed to display these emotions: {described}",
                    extra={
                        "event_type": "face_emotions",
                        "provider": provider.name,
                        "emotions": [e.type for e in emotions],
                    }
                )

        return AnalysisResult(provider=provider.name, event_class=EventClass.PERSON, faces=faces)

    async def close(self) -> None:
        for provider in [*self.vehicle_providers, *self.person_providers]:
            await provider.close()
