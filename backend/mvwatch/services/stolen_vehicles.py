"""
Stolen Vehicle Lookup

In-memory index of stolen vehicle plates, loaded once at startup from a CSV
export (local file or http(s) URL) and queried synchronously for every
recognized plate.

The plate column is the first header containing "plate" (case-insensitive);
when no header matches, the first column is used.
"""
import asyncio
import csv
import io
import logging
import re
from pathlib import Path
from typing import FrozenSet, Iterable, Optional

import httpx

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT_SECONDS = 60.0


def normalize_plate(plate: str) -> str:
    """Uppercase and drop everything but letters and digits."""
    return re.sub(r"[^A-Z0-9]", "", plate.upper())


def parse_plates_csv(text: str) -> FrozenSet[str]:
    """
    Extract normalized plates from CSV text.

    Args:
        text: CSV content with a header row

    Returns:
        Set of normalized plates (blank cells skipped)
    """
    rows = list(csv.reader(io.StringIO(text)))
    if not rows:
        return frozenset()

    header = [cell.strip().lower() for cell in rows[0]]
    column = next((i for i, name in enumerate(header) if "plate" in name), 0)

    plates = set()
    for row in rows[1:]:
        if len(row) <= column:
            continue
        plate = normalize_plate(row[column])
        if plate:
            plates.add(plate)
    return frozenset(plates)


class StolenVehicleIndex:
    """
    Set-backed plate lookup.

    Lookups before loading completes return False.
    """

    def __init__(self, plates: Optional[Iterable[str]] = None):
        self._plates: FrozenSet[str] = frozenset(normalize_plate(p) for p in plates or [] if p)
        self._loaded = plates is not None

    @property
    def loaded(self) -> bool:
        return self._loaded

    def __len__(self) -> int:
        return len(self._plates)

    def is_stolen(self, plate: str) -> bool:
        """True if the plate is in the index."""
        if not plate:
            return False
        return normalize_plate(plate) in self._plates

    def load_from_text(self, text: str) -> int:
        """Replace the index with the plates found in CSV text. Returns the count."""
        self._plates = parse_plates_csv(text)
        self._loaded = True
        return len(self._plates)

    async def load(self, source: str, http_client: Optional[httpx.AsyncClient] = None) -> int:
        """
        Load the index from a CSV file path or http(s) URL.

        Returns:
            Number of plates loaded

        Raises:
            httpx.HTTPError: Download failed
            OSError: File could not be read
        """
        if source.startswith(("http://", "https://")):
            client = http_client or httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True)
            try:
                response = await client.get(source)
                response.raise_for_status()
                text = response.text
            finally:
                if http_client is None:
                    await client.aclose()
        else:
            text = await asyncio.to_thread(Path(source).read_text, encoding="utf-8-sig")

        count = self.load_from_text(text)
        logger.info(
            f"Stolen vehicle index loaded: {count} plates",
            extra={"event_type": "stolen_vehicles_loaded", "count": count}
        )
        return count

    async def load_in_background(self, source: str, http_client: Optional[httpx.AsyncClient] = None) -> None:
        """Load without raising; failures leave the index empty and are logged."""
        try:
            await self.load(source, http_client)
        except (httpx.HTTPError, OSError, csv.Error, UnicodeDecodeError) as e:
            logger.error(
                f"Failed to load stolen vehicle index from {source}: {e}",
                extra={"event_type": "stolen_vehicles_load_failed", "error_type": type(e).__name__}
            )
        except Exception as e:
            logger.error(
                f"Unexpected error loading stolen vehicle index from {source}: {e}",
                extra={"event_type": "stolen_vehicles_load_failed", "error_type": type(e).__name__},
                exc_info=True
            )
