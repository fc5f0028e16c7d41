"""
Snapshot Image Store

Optionally keeps a copy of every acquired snapshot under
{base_dir}/people/ or {base_dir}/vehicles/, named by camera and the UTC time
of saving. Nothing prunes these directories; schedule a cleanup job if enabled.
"""
import asyncio
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from mvwatch.schemas.camera_event import EventClass

logger = logging.getLogger(__name__)

SUBDIRECTORIES = {
    EventClass.PERSON: "people",
    EventClass.VEHICLE: "vehicles",
}


def image_filename(camera_id: str, now: datetime) -> str:
    """Camera serial plus ISO time, with ':' and anything unsafe replaced."""
    camera = re.sub(r"[^A-Za-z0-9-]", "_", camera_id) or "unknown"
    stamp = now.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return f"{camera}_{stamp.replace(':', '-')}.jpg"


class ImageStore:
    """Writes snapshot images to disk."""

    def __init__(self, base_dir: str, clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self._base_dir = Path(base_dir)
        self._clock = clock

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def _write(self, path: Path, image: bytes) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(image)

    async def save(self, event_class: EventClass, camera_id: str, image: bytes) -> Optional[Path]:
        """
        Save an image from a camera for an event class.

        Returns:
            Path written, or None if the write failed (logged)
        """
        path = self._base_dir / SUBDIRECTORIES[event_class] / image_filename(camera_id, self._clock())
        try:
            await asyncio.to_thread(self._write, path, image)
        except OSError as e:
            logger.error(
                f"Failed to save {event_class.value} image to {path}: {e}",
                extra={"event_type": "image_save_failed", "path": str(path)}
            )
            return None

        logger.debug(
            f"Saved {event_class.value} image to {path}",
            extra={"event_type": "image_saved", "path": str(path), "size_bytes": len(image)}
        )
        return path
