"""Manifest-backed image source over the on-disk media library."""

import json
import logging
import mimetypes
from pathlib import Path
from typing import Protocol

from iris.exceptions import ImageNotFoundError
from iris.schemas.vision import ImageData

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"


class ImageSource(Protocol):
    def load(self, image_id: str) -> ImageData: ...


class ManifestImageSource:
    """Resolves image ids through ``manifest.json`` in ``library_dir``.

    The manifest is a list of ``{"id", "kind", "filename"}`` entries; only
    ``kind == "image"`` entries are served. It is re-read on every lookup so
    files added by other processes are picked up.

    Synchronous file IO -- call via ``asyncio.to_thread``.
    """

    def __init__(self, library_dir: Path) -> None:
        self._library_dir = library_dir

    @property
    def library_dir(self) -> Path:
        return self._library_dir

    def load(self, image_id: str) -> ImageData:
        entry = self._entries().get(image_id)
        if entry is None or entry.get("kind", "image") != "image":
            raise ImageNotFoundError(image_id)

        path = self._library_dir / entry["filename"]
        # manifest entries must not escape the library directory
        if self._library_dir.resolve() not in path.resolve().parents:
            logger.warning("Manifest entry %s points outside library: %s", image_id, path)
            raise ImageNotFoundError(image_id)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning("Failed to read image %s at %s: %s", image_id, path, e)
            raise ImageNotFoundError(image_id) from e

        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return ImageData(id=image_id, data=data, mime_type=mime_type)

    def _entries(self) -> dict[str, dict]:
        manifest = self._library_dir / MANIFEST_FILENAME
        if not manifest.exists():
            return {}
        try:
            items = json.loads(manifest.read_text("utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("Failed to load media manifest %s: %s", manifest, e)
            return {}
        return {
            str(item["id"]): item
            for item in items
            if isinstance(item, dict) and "id" in item and "filename" in item
        }
