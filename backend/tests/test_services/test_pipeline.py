"""Tests for pipeline assembly and startup failures."""
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from mvwatch.core.config import ConfigurationError
from mvwatch.services.meraki_client import StartupResolutionError
from mvwatch.services.pipeline import Pipeline, build_person_providers, build_vehicle_providers
from mvwatch.services.providers import OpenALPRProvider, PlateRecognizerProvider, RekognitionProvider
from tests.conftest import make_settings


@pytest.fixture
def patched_startup():
    with patch("mvwatch.services.pipeline.MerakiClient.resolve_network_id", AsyncMock(return_value="N_1")) as resolve, \
            patch("mvwatch.services.pipeline.MQTTService.start", AsyncMock(return_value=True)) as mqtt_start, \
            patch("mvwatch.services.pipeline.MQTTService.disconnect", AsyncMock()):
        yield resolve, mqtt_start


class TestBuildProviders:
    """Provider selection from settings."""

    def test_none_enabled(self, test_settings):
        assert build_vehicle_providers(test_settings) == []
        assert build_person_providers(test_settings) == []

    def test_enabled_providers(self):
        config = make_settings(
            USE_PLATE_RECOGNIZER=True,
            PLATE_RECOGNIZER_API_TOKEN="tok",
            PLATE_RECOGNIZER_REGIONS="nz, au",
            USE_OPENALPR=True,
            OPENALPR_SECRET_KEY="sk",
            USE_AWS_REKOGNITION=True,
            AWS_REGION="us-west-2",
        )
        vehicle = build_vehicle_providers(config)
        person = build_person_providers(config)

        assert [type(p) for p in vehicle] == [PlateRecognizerProvider, OpenALPRProvider]
        assert vehicle[0]._regions == ["nz", "au"]
        assert [type(p) for p in person] == [RekognitionProvider]


class TestStart:
    """Startup sequence."""

    @pytest.mark.asyncio
    async def test_start_wires_components(self, patched_startup):
        resolve, mqtt_start = patched_startup
        pipeline = Pipeline(make_settings(DEBOUNCE_WINDOW_MS=750))

        await pipeline.start()
        try:
            resolve.assert_awaited_once_with("Test Org", "Test Network")
            mqtt_start.assert_awaited_once()
            assert pipeline.running
            assert pipeline.network_id == "N_1"
            assert pipeline.acquirer.network_id == "N_1"
            assert pipeline.ledger.window.total_seconds() == 0.75
            assert pipeline.mqtt._message_handler == pipeline.router.handle
            assert pipeline.stolen_index is None
        finally:
            await pipeline.stop()

        assert not pipeline.running
        assert pipeline.http_client is None

    @pytest.mark.asyncio
    async def test_stolen_lookup_loads_in_background(self, patched_startup, tmp_path):
        source = tmp_path / "stolen.csv"
        source.write_text("plate\nABC123\n")
        pipeline = Pipeline(make_settings(USE_STOLEN_VEHICLE_LOOKUP=True, STOLEN_VEHICLES_SOURCE=str(source)))

        await pipeline.start()
        try:
            await pipeline._stolen_load_task
            assert pipeline.stolen_index.is_stolen("abc123")
            assert pipeline.status().stolen_vehicles_loaded == 1
        finally:
            await pipeline.stop()

    @pytest.mark.asyncio
    async def test_missing_configuration_is_fatal(self):
        pipeline = Pipeline(make_settings(MERAKI_API_KEY=""))
        with pytest.raises(ConfigurationError):
            await pipeline.start()
        assert pipeline.http_client is None

    @pytest.mark.asyncio
    async def test_unknown_network_is_fatal(self):
        with patch(
            "mvwatch.services.pipeline.MerakiClient.resolve_network_id",
            AsyncMock(side_effect=StartupResolutionError("Could not find network 'HQ'")),
        ):
            pipeline = Pipeline(make_settings())
            with pytest.raises(StartupResolutionError):
                await pipeline.start()

        assert pipeline.http_client is None
        assert not pipeline.running

    @pytest.mark.asyncio
    async def test_dashboard_unreachable_is_startup_error(self):
        with patch(
            "mvwatch.services.pipeline.MerakiClient.resolve_network_id",
            AsyncMock(side_effect=httpx.ConnectError("refused")),
        ):
            with pytest.raises(StartupResolutionError, match="Could not query"):
                await Pipeline(make_settings()).start()


class TestStatus:
    """Status snapshot."""

    def test_status_before_start(self, test_settings):
        status = Pipeline(test_settings).status()
        assert status.mqtt_connected is False
        assert status.network_id is None
        assert status.debounce_entries == 0
        assert status.subscribed_topics == ["/merakimv/ABC123/0", "/merakimv/XYZ789/0"]
        assert status.broker is None

    @pytest.mark.asyncio
    async def test_status_includes_broker_state(self, patched_startup):
        pipeline = Pipeline(make_settings())

        await pipeline.start()
        try:
            pipeline.mqtt._messages_received = 3
            pipeline.mqtt._last_error = "Disconnected: Keep alive timeout"

            broker = pipeline.status().broker

            assert broker.connected is False
            assert broker.broker == "127.0.0.1:1883"
            assert broker.messages_received == 3
            assert broker.last_error == "Disconnected: Keep alive timeout"
        finally:
            await pipeline.stop()
