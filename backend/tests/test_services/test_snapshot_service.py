"""
Tests for the two-stage snapshot acquisition state machine.

Stage A (URL resolution) and Stage B (image fetch) are driven against a
mocked MerakiClient; asyncio.sleep is replaced so retry delays are recorded
instead of waited for.
"""
import asyncio
from unittest.mock import AsyncMock, MagicMock, call

import pytest

from mvwatch.core.logging_config import get_event_id
from mvwatch.core.retry import RetryPolicy, fixed_backoff
from mvwatch.services.meraki_client import (
    ImageFetchError,
    ImageNotReadyError,
    SnapshotNotReadyError,
    SnapshotServerError,
)
from mvwatch.services.snapshot_service import (
    AcquisitionState,
    ImageFetchRequest,
    SnapshotAcquirer,
    SnapshotAcquisition,
    SnapshotRequest,
)
from tests.conftest import make_settings

CAMERA = "ABC123"
OCCURRED_AT = "2019-11-01T00:23:55.359Z"
SNAPSHOT_URL = "https://spn1.meraki.com/stream/jpeg/snapshot/abc"
NETWORK = "N_1"


@pytest.fixture
def client():
    mock = MagicMock()
    mock.generate_snapshot = AsyncMock(return_value=SNAPSHOT_URL)
    mock.fetch_image = AsyncMock(return_value=b"jpeg-bytes")
    return mock


def make_acquisition(client, handler, sleep, **kwargs) -> SnapshotAcquisition:
    kwargs.setdefault("url_policy", RetryPolicy(10, fixed_backoff(3.0), name="snapshot_url"))
    return SnapshotAcquisition(client, NETWORK, CAMERA, OCCURRED_AT, handler, sleep=sleep, **kwargs)


class TestRequests:
    """Retry requests are re-created, not mutated."""

    def test_snapshot_request_next(self):
        first = SnapshotRequest(CAMERA, OCCURRED_AT, attempt=1)
        second = first.next()
        assert second.attempt == 2
        assert first.attempt == 1
        assert second.camera_id == CAMERA

    def test_image_fetch_request_next(self):
        first = ImageFetchRequest(SNAPSHOT_URL, attempt=1)
        assert first.next() == ImageFetchRequest(SNAPSHOT_URL, attempt=2)


class TestHappyPath:
    """Successful acquisitions."""

    @pytest.mark.asyncio
    async def test_delivers_image_to_handler(self, client, image_handler, fake_sleep):
        acquisition = make_acquisition(client, image_handler, fake_sleep)

        result = await acquisition.run()

        assert result.delivered
        assert result.state == AcquisitionState.DELIVERED
        client.generate_snapshot.assert_awaited_once_with(NETWORK, CAMERA, OCCURRED_AT)
        client.fetch_image.assert_awaited_once_with(SNAPSHOT_URL)
        image_handler.assert_awaited_once_with(CAMERA, OCCURRED_AT, b"jpeg-bytes")

    @pytest.mark.asyncio
    async def test_state_history(self, client, image_handler, fake_sleep):
        result = await make_acquisition(client, image_handler, fake_sleep).run()

        assert result.history == [
            AcquisitionState.IDLE,
            AcquisitionState.RESOLVING_URL,
            AcquisitionState.URL_RESOLVED,
            AcquisitionState.WAITING,
            AcquisitionState.FETCHING_IMAGE,
            AcquisitionState.DELIVERED,
        ]

    @pytest.mark.asyncio
    async def test_waits_ready_delay_before_fetching(self, client, image_handler, fake_sleep):
        order = []
        client.fetch_image.side_effect = lambda url: order.append("fetch") or b"jpeg-bytes"
        fake_sleep.side_effect = lambda delay: order.append(("sleep", delay))

        await make_acquisition(client, image_handler, fake_sleep, ready_delay=5.0).run()

        assert order == [("sleep", 5.0), "fetch"]

    @pytest.mark.asyncio
    async def test_ready_delay_is_configurable(self, client, image_handler, fake_sleep):
        await make_acquisition(client, image_handler, fake_sleep, ready_delay=0.5).run()
        fake_sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_handler_failure_does_not_fail_acquisition(self, client, fake_sleep):
        handler = AsyncMock(side_effect=RuntimeError("provider blew up"))

        result = await make_acquisition(client, handler, fake_sleep).run()

        assert result.delivered
        handler.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_run_is_single_use(self, client, image_handler, fake_sleep):
        acquisition = make_acquisition(client, image_handler, fake_sleep)
        await acquisition.run()
        with pytest.raises(RuntimeError):
            await acquisition.run()


class TestStageA:
    """Snapshot URL resolution retries."""

    @pytest.mark.asyncio
    async def test_retries_until_url_granted(self, client, image_handler, fake_sleep):
        client.generate_snapshot.side_effect = [
            SnapshotNotReadyError("HTTP 400"),
            SnapshotNotReadyError("HTTP 400"),
            SNAPSHOT_URL,
        ]

        result = await make_acquisition(client, image_handler, fake_sleep, ready_delay=5.0).run()

        assert result.delivered
        assert result.url_attempts == 3
        assert fake_sleep.await_args_list == [call(3.0), call(3.0), call(5.0)]

    @pytest.mark.asyncio
    async def test_fails_after_exactly_ten_attempts(self, client, image_handler, fake_sleep):
        client.generate_snapshot.side_effect = SnapshotNotReadyError("not ready")

        result = await make_acquisition(client, image_handler, fake_sleep).run()

        assert result.state == AcquisitionState.FAILED
        assert client.generate_snapshot.await_count == 10
        assert result.url_attempts == 10
        # Delays only between attempts
        assert fake_sleep.await_count == 9
        client.fetch_image.assert_not_awaited()
        image_handler.assert_not_awaited()
        assert "10 attempts" in result.failure_reason

    @pytest.mark.asyncio
    async def test_uses_jittered_delay_from_policy(self, client, image_handler, fake_sleep):
        client.generate_snapshot.side_effect = [SnapshotNotReadyError("x"), SNAPSHOT_URL]
        delays = iter([17.25])
        policy = RetryPolicy(10, lambda attempt: next(delays), name="snapshot_url")

        await make_acquisition(client, image_handler, fake_sleep, url_policy=policy).run()

        assert fake_sleep.await_args_list[0] == call(17.25)


class TestStageB:
    """Image download retries."""

    @pytest.mark.asyncio
    async def test_404_retried_once_after_two_seconds(self, client, image_handler, fake_sleep):
        client.fetch_image.side_effect = [ImageNotReadyError("404"), b"jpeg-bytes"]

        result = await make_acquisition(client, image_handler, fake_sleep, ready_delay=5.0).run()

        assert result.delivered
        assert client.fetch_image.await_count == 2
        assert fake_sleep.await_args_list == [call(5.0), call(2.0)]

    @pytest.mark.asyncio
    async def test_fails_after_thirty_404s(self, client, image_handler, fake_sleep):
        client.fetch_image.side_effect = ImageNotReadyError("404")

        result = await make_acquisition(client, image_handler, fake_sleep).run()

        assert result.state == AcquisitionState.FAILED
        assert client.fetch_image.await_count == 30
        assert result.fetch_attempts == 30
        image_handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_server_error_stops_without_retry(self, client, image_handler, fake_sleep):
        client.fetch_image.side_effect = SnapshotServerError(500, "Internal Server Error", SNAPSHOT_URL)

        result = await make_acquisition(client, image_handler, fake_sleep).run()

        assert result.state == AcquisitionState.FAILED
        assert client.fetch_image.await_count == 1
        assert result.failure_reason == "server error 500"
        image_handler.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_error_stops_without_retry(self, client, image_handler, fake_sleep):
        client.fetch_image.side_effect = ImageFetchError("HTTP 403 Forbidden")

        result = await make_acquisition(client, image_handler, fake_sleep).run()

        assert result.state == AcquisitionState.FAILED
        assert client.fetch_image.await_count == 1
        assert result.history[-2:] == [AcquisitionState.FETCHING_IMAGE, AcquisitionState.FAILED]


class TestSnapshotAcquirer:
    """Task management around acquisitions."""

    def test_from_settings_builds_policies(self, client):
        config = make_settings(
            SNAPSHOT_URL_MAX_ATTEMPTS=4,
            IMAGE_FETCH_MAX_ATTEMPTS=6,
            IMAGE_FETCH_RETRY_SECONDS=1.5,
            SNAPSHOT_READY_DELAY_SECONDS=2.0,
        )
        acquirer = SnapshotAcquirer.from_settings(client, NETWORK, config)

        assert acquirer.network_id == NETWORK
        assert acquirer._url_policy.max_attempts == 4
        assert acquirer._fetch_policy.max_attempts == 6
        assert acquirer._fetch_policy.delay_for(1) == 1.5
        assert acquirer._ready_delay == 2.0

    @pytest.mark.asyncio
    async def test_acquire_counts_outcomes(self, client, image_handler, fake_sleep):
        acquirer = SnapshotAcquirer(client, NETWORK, sleep=fake_sleep)

        await acquirer.acquire(CAMERA, OCCURRED_AT, image_handler, "person")
        client.fetch_image.side_effect = SnapshotServerError(502, "Bad Gateway", SNAPSHOT_URL)
        await acquirer.acquire(CAMERA, OCCURRED_AT, image_handler, "person")

        assert acquirer.delivered_total == 1
        assert acquirer.failed_total == 1

    @pytest.mark.asyncio
    async def test_event_id_set_during_acquisition(self, client, fake_sleep):
        seen = []

        async def handler(camera_id, occurred_at, image):
            seen.append(get_event_id())

        result = await SnapshotAcquirer(client, NETWORK, sleep=fake_sleep).acquire(CAMERA, OCCURRED_AT, handler)

        assert seen == [result.event_id]
        assert get_event_id() is None

    @pytest.mark.asyncio
    async def test_start_runs_independent_tasks(self, client, image_handler, fake_sleep):
        acquirer = SnapshotAcquirer(client, NETWORK, sleep=fake_sleep)

        first = acquirer.start("CAM1", OCCURRED_AT, image_handler, "person")
        second = acquirer.start("CAM2", OCCURRED_AT, image_handler, "vehicle")
        assert acquirer.in_flight == 2

        await asyncio.gather(first, second)

        assert acquirer.in_flight == 0
        assert image_handler.await_count == 2
        cameras = {c.args[0] for c in image_handler.await_args_list}
        assert cameras == {"CAM1", "CAM2"}

    @pytest.mark.asyncio
    async def test_one_failure_does_not_affect_another(self, client, image_handler, fake_sleep):
        async def fetch(url):
            if url.endswith("bad"):
                raise SnapshotServerError(500, "Internal Server Error", url)
            return b"jpeg-bytes"

        client.generate_snapshot.side_effect = lambda network, serial, ts: (
            f"{SNAPSHOT_URL}/{'bad' if serial == 'CAM1' else 'good'}"
        )
        client.fetch_image.side_effect = fetch
        acquirer = SnapshotAcquirer(client, NETWORK, sleep=fake_sleep)

        results = await asyncio.gather(
            acquirer.start("CAM1", OCCURRED_AT, image_handler),
            acquirer.start("CAM2", OCCURRED_AT, image_handler),
        )

        assert [r.state for r in results] == [AcquisitionState.FAILED, AcquisitionState.DELIVERED]
        image_handler.assert_awaited_once_with("CAM2", OCCURRED_AT, b"jpeg-bytes")

    @pytest.mark.asyncio
    async def test_shutdown_cancels_in_flight(self, client, image_handler):
        acquirer = SnapshotAcquirer(client, NETWORK, ready_delay=3600)

        task = acquirer.start(CAMERA, OCCURRED_AT, image_handler)
        await asyncio.sleep(0)
        await acquirer.shutdown()

        assert task.cancelled()
        image_handler.assert_not_awaited()
