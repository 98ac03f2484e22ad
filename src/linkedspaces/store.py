"""Append-only metadata store for analyzed photos.

Each record is one JSON line. The analysis pipeline never reads or writes the
store itself; the API layer records successful analyses here.
"""

from __future__ import annotations

import logging
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)


class PhotoMetadata(BaseModel):
    """A stored record of the tags found for one photo."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    photo_identifier: str
    tags: list[str]
    analyzed_date: datetime = Field(default_factory=lambda: datetime.now(UTC))


class MetadataStore:
    """JSON-lines file of PhotoMetadata records, keyed by photo identifier."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def append(self, photo_identifier: str, tags: list[str]) -> PhotoMetadata:
        record = PhotoMetadata(photo_identifier=photo_identifier, tags=tags)
        line = record.model_dump_json() + "\n"
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(line)
        logger.info("Stored metadata %s for %s", record.id, photo_identifier)
        return record

    def load(self) -> list[PhotoMetadata]:
        """Return every stored record in insertion order.

        Lines that do not parse are skipped with a warning so one corrupt
        write does not hide the rest of the history.
        """
        if not self._path.exists():
            return []

        with self._lock:
            lines = self._path.read_text(encoding="utf-8").splitlines()

        records: list[PhotoMetadata] = []
        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(PhotoMetadata.model_validate_json(line))
            except ValidationError:
                logger.warning("Skipping unreadable record on line %d of %s", lineno, self._path)
        return records

    def for_photo(self, photo_identifier: str) -> list[PhotoMetadata]:
        return [record for record in self.load() if record.photo_identifier == photo_identifier]
