"""
Pipeline assembly

Builds and owns every long-lived component of the ingestion pipeline and
starts them in dependency order:

    validate settings (ConfigurationError is fatal)
        ↓
    resolve Meraki organization/network → network id (StartupResolutionError is fatal)
        ↓
    stolen vehicle index (loads in the background)
        ↓
    providers → AnalysisDispatcher → SnapshotAcquirer → DebounceLedger → EventRouter
        ↓
    MQTT subscriber (messages start flowing)

stop() tears down in reverse order.
"""
import asyncio
import logging
from typing import List, Optional

import httpx

from mvwatch.core.config import Settings, settings as default_settings
from mvwatch.schemas.camera_event import EventClass
from mvwatch.schemas.status import PipelineStatusResponse
from mvwatch.services.analysis_dispatcher import AnalysisDispatcher
from mvwatch.services.debounce_ledger import DebounceLedger
from mvwatch.services.event_router import EventRouter
from mvwatch.services.image_store import ImageStore
from mvwatch.services.meraki_client import USER_AGENT, MerakiClient, StartupResolutionError
from mvwatch.services.mqtt_service import MQTTService
from mvwatch.services.providers import (
    OpenALPRProvider,
    PersonProvider,
    PlateRecognizerProvider,
    RekognitionProvider,
    VehicleProvider,
)
from mvwatch.services.snapshot_service import SnapshotAcquirer
from mvwatch.services.stolen_vehicles import StolenVehicleIndex

logger = logging.getLogger(__name__)


def build_vehicle_providers(config: Settings, http_client: Optional[httpx.AsyncClient] = None) -> List[VehicleProvider]:
    """Instantiate the enabled plate readers."""
    providers: List[VehicleProvider] = []
    if config.USE_PLATE_RECOGNIZER:
        regions = [r.strip() for r in config.PLATE_RECOGNIZER_REGIONS.split(",") if r.strip()]
        providers.append(PlateRecognizerProvider(
            config.PLATE_RECOGNIZER_API_TOKEN,
            url=config.PLATE_RECOGNIZER_URL,
            regions=regions,
            http_client=http_client,
        ))
    if config.USE_OPENALPR:
        providers.append(OpenALPRProvider(
            config.OPENALPR_SECRET_KEY,
            country=config.OPENALPR_COUNTRY,
            url=config.OPENALPR_URL,
            http_client=http_client,
        ))
    return providers


def build_person_providers(config: Settings) -> List[PersonProvider]:
    """Instantiate the enabled face analyzers."""
    providers: List[PersonProvider] = []
    if config.USE_AWS_REKOGNITION:
        providers.append(RekognitionProvider(region_name=config.AWS_REGION or None))
    return providers


class Pipeline:
    """
    Owner of the running pipeline.

    Attributes:
        network_id: Resolved Meraki network id, None until start() succeeds
    """

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.network_id: Optional[str] = None
        self.http_client: Optional[httpx.AsyncClient] = None
        self.meraki: Optional[MerakiClient] = None
        self.stolen_index: Optional[StolenVehicleIndex] = None
        self.dispatcher: Optional[AnalysisDispatcher] = None
        self.acquirer: Optional[SnapshotAcquirer] = None
        self.ledger: Optional[DebounceLedger] = None
        self.router: Optional[EventRouter] = None
        self.mqtt: Optional[MQTTService] = None
        self._stolen_load_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self.router is not None

    async def start(self) -> None:
        """
        Start the pipeline.

        Raises:
            ConfigurationError: Required settings are missing
            StartupResolutionError: The organization or network cannot be resolved
        """
        self.config.validate_required()

        self.http_client = httpx.AsyncClient(
            timeout=self.config.HTTP_TIMEOUT_SECONDS,
            follow_redirects=True,
            headers={"User-Agent": USER_AGENT},
        )
        try:
            await self._start_components()
        except BaseException:
            await self.stop()
            raise

    async def _start_components(self) -> None:
        self.meraki = MerakiClient(self.config.MERAKI_API_KEY, self.config.MERAKI_BASE_URL, http_client=self.http_client)
        try:
            self.network_id = await self.meraki.resolve_network_id(
                self.config.MERAKI_ORG_NAME,
                self.config.MERAKI_NETWORK_NAME,
            )
        except httpx.HTTPError as e:
            raise StartupResolutionError(f"Could not query the Meraki dashboard: {e}") from e

        logger.info(
            f"Resolved network '{self.config.MERAKI_NETWORK_NAME}' to {self.network_id}",
            extra={"event_type": "network_resolved", "network_id": self.network_id}
        )

        if self.config.USE_STOLEN_VEHICLE_LOOKUP:
            self.stolen_index = StolenVehicleIndex()
            self._stolen_load_task = asyncio.create_task(
                self.stolen_index.load_in_background(self.config.STOLEN_VEHICLES_SOURCE, self.http_client),
                name="stolen-vehicles-load",
            )

        image_store = ImageStore(self.config.IMAGE_SAVE_DIR) if self.config.USE_SAVE_IMAGES else None
        self.dispatcher = AnalysisDispatcher(
            vehicle_providers=build_vehicle_providers(self.config, self.http_client),
            person_providers=build_person_providers(self.config),
            stolen_index=self.stolen_index,
            image_store=image_store,
        )
        if not self.dispatcher.provider_names:
            logger.warning(
                "No analysis providers enabled; snapshots will be acquired but not analyzed",
                extra={"event_type": "no_providers_enabled"}
            )

        self.acquirer = SnapshotAcquirer.from_settings(self.meraki, self.network_id, self.config)
        self.ledger = DebounceLedger(self.config.DEBOUNCE_WINDOW_MS)
        self.router = EventRouter(
            self.ledger,
            self.acquirer,
            {event_class: self.dispatcher.handler_for(event_class) for event_class in EventClass},
            topic_prefix=self.config.MQTT_TOPIC_PREFIX,
        )

        self.mqtt = MQTTService(self.config, message_handler=self.router.handle)
        await self.mqtt.start()

        logger.info(
            "Pipeline started",
            extra={
                "event_type": "pipeline_started",
                "providers": self.dispatcher.provider_names,
                "topics": self.mqtt.topics,
            }
        )

    async def stop(self) -> None:
        """Stop every component that was started, in reverse order."""
        if self.mqtt is not None:
            await self.mqtt.disconnect()
            self.mqtt = None
        self.router = None

        if self.acquirer is not None:
            await self.acquirer.shutdown()

        if self._stolen_load_task is not None and not self._stolen_load_task.done():
            self._stolen_load_task.cancel()
            try:
                await self._stolen_load_task
            except asyncio.CancelledError:
                pass
        self._stolen_load_task = None

        if self.dispatcher is not None:
            await self.dispatcher.close()

        if self.meraki is not None:
            await self.meraki.close()

        if self.http_client is not None:
            await self.http_client.aclose()
            self.http_client = None

        logger.info("Pipeline stopped", extra={"event_type": "pipeline_stopped"})

    def status(self) -> PipelineStatusResponse:
        """Current pipeline state for the status API."""
        return PipelineStatusResponse(
            mqtt_connected=self.mqtt.is_connected if self.mqtt else False,
            broker=self.mqtt.get_status() if self.mqtt else None,
            network_id=self.network_id,
            subscribed_topics=self.config.mqtt_camera_topics,
            debounce_entries=len(self.ledger) if self.ledger else 0,
            acquisitions_in_flight=self.acquirer.in_flight if self.acquirer else 0,
            enabled_providers=self.config.enabled_providers(),
            stolen_vehicle_lookup=self.config.USE_STOLEN_VEHICLE_LOOKUP,
            stolen_vehicles_loaded=len(self.stolen_index) if self.stolen_index else 0,
        )


# Global singleton instance
_pipeline: Optional[Pipeline] = None


def get_pipeline() -> Pipeline:
    """
    Get the global pipeline instance.

    Returns:
        Pipeline singleton
    """
    global _pipeline
    if _pipeline is None:
        _pipeline = Pipeline()
    return _pipeline
