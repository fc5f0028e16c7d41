"""
Meraki MV Snapshot Acquisition Service

Retrieves the still image for a detection event. At notification time the
image does not exist yet, so acquisition is a two-stage retry protocol:

Acquisition Flow:
    SnapshotAcquirer.start(camera_id, occurred_at, handler)
            ↓
    Stage A - Resolve URL
        POST /networks/{networkId}/cameras/{serial}/snapshot
            ↓ (retry on failure, uniform [1s, 31s) delay, 10 attempts max)
    Wait SNAPSHOT_READY_DELAY_SECONDS (default 5s)
            ↓
    Stage B - Fetch Image
        GET <signed url>
            ↓ (retry on 404 only, fixed 2s delay, 30 attempts max)
    handler(camera_id, occurred_at, image_bytes)

States:
    Idle → ResolvingURL → URLResolved → Waiting → FetchingImage → Delivered | Failed

Every acquisition runs to Delivered or Failed; there is no cancellation.
A failure ends processing of that one event only.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Set

from mvwatch.core.config import Settings
from mvwatch.core.logging_config import set_event_id, clear_event_id
from mvwatch.core.metrics import (
    record_acquisition_started,
    record_acquisition_finished,
    record_snapshot_url_attempt,
    record_image_fetch_attempt,
)
from mvwatch.core.retry import (
    RetryPolicy,
    SNAPSHOT_URL_RETRY,
    IMAGE_FETCH_RETRY,
    fixed_backoff,
    uniform_backoff,
)
from mvwatch.services.meraki_client import (
    MerakiClient,
    SnapshotNotReadyError,
    ImageNotReadyError,
    SnapshotServerError,
    ImageFetchError,
)

logger = logging.getLogger(__name__)

# Empirical minimum time the dashboard needs to materialize the image
DEFAULT_READY_DELAY_SECONDS = 5.0

# (camera_id, occurred_at ISO, image bytes)
ImageHandler = Callable[[str, str, bytes], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class AcquisitionState(str, Enum):
    """Snapshot acquisition states."""
    IDLE = "idle"
    RESOLVING_URL = "resolving_url"
    URL_RESOLVED = "url_resolved"
    WAITING = "waiting"
    FETCHING_IMAGE = "fetching_image"
    DELIVERED = "delivered"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (AcquisitionState.DELIVERED, AcquisitionState.FAILED)


@dataclass(frozen=True)
class SnapshotRequest:
    """One Stage A attempt; a new request is created for every retry."""
    camera_id: str
    occurred_at: str
    attempt: int

    def next(self) -> "SnapshotRequest":
        return SnapshotRequest(self.camera_id, self.occurred_at, self.attempt + 1)


@dataclass(frozen=True)
class ImageFetchRequest:
    """One Stage B attempt; a new request is created for every retry."""
    url: str
    attempt: int

    def next(self) -> "ImageFetchRequest":
        return ImageFetchRequest(self.url, self.attempt + 1)


@dataclass
class AcquisitionResult:
    """
    Outcome of one acquisition.

    Attributes:
        event_id: Correlation id also attached to every log line of the acquisition
        camera_id: Camera serial
        occurred_at: ISO-8601 event time
        state: DELIVERED or FAILED
        url_attempts: Stage A attempts made
        fetch_attempts: Stage B attempts made
        failure_reason: Why the acquisition failed, None when delivered
        history: States visited, in order
    """
    event_id: str
    camera_id: str
    occurred_at: str
    state: AcquisitionState
    url_attempts: int = 0
    fetch_attempts: int = 0
    failure_reason: Optional[str] = None
    history: List[AcquisitionState] = field(default_factory=list)

    @property
    def delivered(self) -> bool:
        return self.state == AcquisitionState.DELIVERED


class SnapshotAcquisition:
    """
    State machine for a single (camera, timestamp) acquisition.

    Instances are single use: call run() once.
    """

    def __init__(
        self,
        client: MerakiClient,
        network_id: str,
        camera_id: str,
        occurred_at: str,
        handler: ImageHandler,
        url_policy: RetryPolicy = SNAPSHOT_URL_RETRY,
        fetch_policy: RetryPolicy = IMAGE_FETCH_RETRY,
        ready_delay: float = DEFAULT_READY_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
        event_id: Optional[str] = None,
    ):
        self._client = client
        self._network_id = network_id
        self.camera_id = camera_id
        self.occurred_at = occurred_at
        self._handler = handler
        self._url_policy = url_policy
        self._fetch_policy = fetch_policy
        self._ready_delay = ready_delay
        self._sleep = sleep
        self.event_id = event_id or uuid.uuid4().hex[:12]
        self._state = AcquisitionState.IDLE
        self._history: List[AcquisitionState] = [AcquisitionState.IDLE]
        self._url_attempts = 0
        self._fetch_attempts = 0
        self._failure_reason: Optional[str] = None

    @property
    def state(self) -> AcquisitionState:
        return self._state

    def _transition(self, state: AcquisitionState) -> None:
        if self._state.is_terminal:
            raise RuntimeError(f"Acquisition {self.event_id} already finished in state {self._state.value}")
        self._state = state
        self._history.append(state)

    def _result(self) -> AcquisitionResult:
        return AcquisitionResult(
            event_id=self.event_id,
            camera_id=self.camera_id,
            occurred_at=self.occurred_at,
            state=self._state,
            url_attempts=self._url_attempts,
            fetch_attempts=self._fetch_attempts,
            failure_reason=self._failure_reason,
            history=list(self._history),
        )

    def _fail(self, reason: str) -> AcquisitionResult:
        self._failure_reason = reason
        self._transition(AcquisitionState.FAILED)
        return self._result()

    async def run(self) -> AcquisitionResult:
        """
        Drive the acquisition to a terminal state.

        Returns:
            AcquisitionResult; never raises for acquisition failures
        """
        if self._state != AcquisitionState.IDLE:
            raise RuntimeError(f"Acquisition {self.event_id} has already been started")

        self._transition(AcquisitionState.RESOLVING_URL)
        url = await self._resolve_url()
        if url is None:
            return self._fail(f"could not process snapshot after {self._url_policy.max_attempts} attempts")

        self._transition(AcquisitionState.URL_RESOLVED)
        self._transition(AcquisitionState.WAITING)
        await self._sleep(self._ready_delay)

        self._transition(AcquisitionState.FETCHING_IMAGE)
        image, reason = await self._fetch_image(url)
        if image is None:
            return self._fail(reason)

        self._transition(AcquisitionState.DELIVERED)
        logger.debug(
            f"Snapshot delivered for camera {self.camera_id}",
            extra={
                "event_type": "snapshot_delivered",
                "camera_id": self.camera_id,
                "occurred_at": self.occurred_at,
                "size_bytes": len(image),
                "url_attempts": self._url_attempts,
                "fetch_attempts": self._fetch_attempts,
            }
        )
        try:
            await self._handler(self.camera_id, self.occurred_at, image)
        except Exception as e:
            logger.error(
                f"Image handler failed for camera {self.camera_id}: {e}",
                extra={
                    "event_type": "snapshot_handler_error",
                    "camera_id": self.camera_id,
                    "error_type": type(e).__name__,
                },
                exc_info=True
            )
        return self._result()

    async def _resolve_url(self) -> Optional[str]:
        """Stage A: request the snapshot URL until it is granted or attempts run out."""
        request = SnapshotRequest(self.camera_id, self.occurred_at, attempt=1)
        while True:
            self._url_attempts = request.attempt
            logger.debug(
                f"processSnapshot: camera serial={request.camera_id}, ts={request.occurred_at}, attempt={request.attempt}",
                extra={"event_type": "snapshot_url_request", "attempt": request.attempt}
            )
            try:
                url = await self._client.generate_snapshot(self._network_id, request.camera_id, request.occurred_at)
                record_snapshot_url_attempt("success")
                return url
            except SnapshotNotReadyError as e:
                record_snapshot_url_attempt("not_ready")
                if not self._url_policy.can_retry(request.attempt):
                    logger.error(
                        f"Could not process snapshot after {request.attempt} attempts for camera {request.camera_id}: {e}",
                        extra={
                            "event_type": "snapshot_url_exhausted",
                            "camera_id": request.camera_id,
                            "attempts": request.attempt,
                        }
                    )
                    return None

                delay = self._url_policy.delay_for(request.attempt)
                logger.debug(
                    f"Snapshot URL not ready (attempt {request.attempt}/{self._url_policy.max_attempts}), "
                    f"retrying in {delay:.1f}s: {e}",
                    extra={
                        "event_type": "snapshot_url_retry",
                        "attempt": request.attempt,
                        "delay_seconds": delay,
                    }
                )
                await self._sleep(delay)
                request = request.next()

    async def _fetch_image(self, url: str) -> tuple[Optional[bytes], Optional[str]]:
        """Stage B: download the image, retrying only while it answers 404."""
        request = ImageFetchRequest(url, attempt=1)
        while True:
            self._fetch_attempts = request.attempt
            logger.debug(
                f"processSnapshotImage: attempt={request.attempt}",
                extra={"event_type": "image_fetch_request", "attempt": request.attempt}
            )
            try:
                image = await self._client.fetch_image(request.url)
                record_image_fetch_attempt("success")
                return image, None
            except ImageNotReadyError:
                record_image_fetch_attempt("not_found")
                if not self._fetch_policy.can_retry(request.attempt):
                    reason = f"could not retrieve image after {request.attempt} attempts"
                    logger.error(
                        f"Could not retrieve image after {request.attempt} attempts: {request.url}",
                        extra={
                            "event_type": "image_fetch_exhausted",
                            "camera_id": self.camera_id,
                            "attempts": request.attempt,
                        }
                    )
                    return None, reason
                await self._sleep(self._fetch_policy.delay_for(request.attempt))
                request = request.next()
            except SnapshotServerError as e:
                record_image_fetch_attempt("server_error")
                logger.error(
                    f"Snapshot image {e}",
                    extra={
                        "event_type": "image_fetch_server_error",
                        "camera_id": self.camera_id,
                        "status_code": e.status_code,
                    }
                )
                return None, f"server error {e.status_code}"
            except ImageFetchError as e:
                record_image_fetch_attempt("error")
                logger.error(
                    f"Snapshot image download failed: {e}",
                    extra={
                        "event_type": "image_fetch_error",
                        "camera_id": self.camera_id,
                    }
                )
                return None, str(e)


class SnapshotAcquirer:
    """
    Starts and tracks snapshot acquisitions (one asyncio task each).

    Acquisitions for different cameras or classes run fully independently.

    Attributes:
        network_id: Meraki network containing the cameras
    """

    def __init__(
        self,
        client: MerakiClient,
        network_id: str,
        url_policy: RetryPolicy = SNAPSHOT_URL_RETRY,
        fetch_policy: RetryPolicy = IMAGE_FETCH_RETRY,
        ready_delay: float = DEFAULT_READY_DELAY_SECONDS,
        sleep: Sleep = asyncio.sleep,
    ):
        self._client = client
        self.network_id = network_id
        self._url_policy = url_policy
        self._fetch_policy = fetch_policy
        self._ready_delay = ready_delay
        self._sleep = sleep
        self._tasks: Set[asyncio.Task] = set()
        self._delivered_total = 0
        self._failed_total = 0

    @classmethod
    def from_settings(cls, client: MerakiClient, network_id: str, settings: Settings) -> "SnapshotAcquirer":
        """Build an acquirer with retry policies taken from settings."""
        return cls(
            client,
            network_id,
            url_policy=RetryPolicy(
                max_attempts=settings.SNAPSHOT_URL_MAX_ATTEMPTS,
                backoff=uniform_backoff(
                    settings.SNAPSHOT_URL_BACKOFF_MIN_SECONDS,
                    settings.SNAPSHOT_URL_BACKOFF_MAX_SECONDS,
                ),
                name="snapshot_url",
            ),
            fetch_policy=RetryPolicy(
                max_attempts=settings.IMAGE_FETCH_MAX_ATTEMPTS,
                backoff=fixed_backoff(settings.IMAGE_FETCH_RETRY_SECONDS),
                name="image_fetch",
            ),
            ready_delay=settings.SNAPSHOT_READY_DELAY_SECONDS,
        )

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    @property
    def delivered_total(self) -> int:
        return self._delivered_total

    @property
    def failed_total(self) -> int:
        return self._failed_total

    async def acquire(
        self,
        camera_id: str,
        occurred_at: str,
        handler: ImageHandler,
        event_class: str = "unknown",
    ) -> AcquisitionResult:
        """
        Run one acquisition to completion in the current task.

        Args:
            camera_id: Camera serial
            occurred_at: ISO-8601 event time
            handler: Called with (camera_id, occurred_at, image) on success
            event_class: Label for metrics
        """
        acquisition = SnapshotAcquisition(
            self._client,
            self.network_id,
            camera_id,
            occurred_at,
            handler,
            url_policy=self._url_policy,
            fetch_policy=self._fetch_policy,
            ready_delay=self._ready_delay,
            sleep=self._sleep,
        )
        token = set_event_id(acquisition.event_id)
        record_acquisition_started()
        result: Optional[AcquisitionResult] = None
        try:
            logger.info(
                f"Acquiring {event_class} snapshot for camera {camera_id} at {occurred_at}",
                extra={
                    "event_type": "acquisition_start",
                    "camera_id": camera_id,
                    "event_class": event_class,
                    "occurred_at": occurred_at,
                }
            )
            result = await acquisition.run()
            return result
        finally:
            outcome = "delivered" if result is not None and result.delivered else "failed"
            if outcome == "delivered":
                self._delivered_total += 1
            else:
                self._failed_total += 1
            record_acquisition_finished(event_class, outcome)
            clear_event_id(token)

    def start(
        self,
        camera_id: str,
        occurred_at: str,
        handler: ImageHandler,
        event_class: str = "unknown",
    ) -> asyncio.Task:
        """
        Schedule an acquisition as an independent task on the running loop.

        Returns:
            The task; it is also tracked until it finishes.
        """
        task = asyncio.get_running_loop().create_task(
            self._run_logged(camera_id, occurred_at, handler, event_class),
            name=f"acquire-{event_class}-{camera_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run_logged(self, camera_id, occurred_at, handler, event_class) -> Optional[AcquisitionResult]:
        try:
            return await self.acquire(camera_id, occurred_at, handler, event_class)
        except Exception as e:
            logger.error(
                f"Unexpected error acquiring snapshot for camera {camera_id}: {e}",
                extra={
                    "event_type": "acquisition_unexpected_error",
                    "camera_id": camera_id,
                    "error_type": type(e).__name__,
                },
                exc_info=True
            )
            return None

    async def shutdown(self) -> None:
        """Cancel outstanding acquisitions when the process stops."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info(
                f"Cancelled {len(tasks)} in-flight snapshot acquisitions at shutdown",
                extra={"event_type": "acquisitions_cancelled", "count": len(tasks)}
            )
