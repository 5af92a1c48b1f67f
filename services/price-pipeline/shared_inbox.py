"""Cross-process handoff through the shared storage area.

The import process (which cannot run the worker) appends jobs to a JSON list
in the shared area via ``SharedOutbox``. The host process drains that list
with ``SharedInbox`` and adopts the jobs into its own queue store.

This is a single-writer/single-reader mailbox without locking: the import
process only writes, the host process only reads and deletes. A concurrent
write racing a drain can lose the written entries; swap ``SharedInbox`` for a
locking or rename-based implementation where that matters.
"""

import logging
from pathlib import Path
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError

from config import settings
from models import SharedPendingExtraction
from queue_store import IMAGE_EXTENSION, ExtractionQueueStore
from storage import atomic_write_bytes

logger = logging.getLogger(__name__)

_SHARED_LIST = TypeAdapter(list[SharedPendingExtraction])


class SharedInbox:
    """Reading side of the shared area, used by the host process."""

    def __init__(self, shared_dir: str | Path | None = None):
        self._shared_dir = Path(shared_dir or settings.SHARED_DIR)
        self._list_path = self._shared_dir / settings.QUEUE_FILE_NAME
        self._images_dir = self._shared_dir / settings.IMAGES_DIR_NAME

    @property
    def shared_dir(self) -> Path:
        return self._shared_dir

    @property
    def images_dir(self) -> Path:
        return self._images_dir

    def drain(self) -> list[SharedPendingExtraction]:
        """Read and delete the shared job list.

        The file is deleted even if it could not be parsed so a broken list is
        not re-imported on every start.
        """
        if not self._list_path.exists():
            return []

        try:
            return _SHARED_LIST.validate_json(self._list_path.read_bytes())
        except (OSError, ValidationError) as e:
            logger.error("Failed to read shared extractions: %s", e)
            return []
        finally:
            try:
                self._list_path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not delete shared extraction list: %s", e)


class SharedOutbox:
    """Writing side of the shared area, used by the import process."""

    def __init__(self, shared_dir: str | Path | None = None):
        self._shared_dir = Path(shared_dir or settings.SHARED_DIR)
        self._list_path = self._shared_dir / settings.QUEUE_FILE_NAME
        self._images_dir = self._shared_dir / settings.IMAGES_DIR_NAME

    def queue_extraction(
        self,
        cafe_id: str,
        cafe_name: str,
        cafe_address: str,
        cafe_latitude: float,
        cafe_longitude: float,
        image_bytes: bytes,
    ) -> bool:
        """Store the image and append a job for the host process."""
        image_file_name = f"{uuid4()}{IMAGE_EXTENSION}"
        try:
            atomic_write_bytes(self._images_dir / image_file_name, image_bytes)
        except OSError as e:
            logger.error("Failed to save shared image: %s", e)
            return False

        extractions = self._load()
        extractions.append(
            SharedPendingExtraction(
                cafe_id=cafe_id,
                cafe_name=cafe_name,
                cafe_address=cafe_address,
                cafe_latitude=cafe_latitude,
                cafe_longitude=cafe_longitude,
                image_file_name=image_file_name,
            )
        )

        try:
            atomic_write_bytes(self._list_path, _SHARED_LIST.dump_json(extractions, by_alias=True, indent=2))
        except OSError as e:
            logger.error("Failed to save shared extractions: %s", e)
            return False
        return True

    def _load(self) -> list[SharedPendingExtraction]:
        if not self._list_path.exists():
            return []
        try:
            return _SHARED_LIST.validate_json(self._list_path.read_bytes())
        except (OSError, ValidationError):
            return []


def import_shared_extractions(store: ExtractionQueueStore, inbox: SharedInbox) -> int:
    """Move jobs from the shared area into the host queue.

    Jobs already in the queue (same id) are skipped. Image copies are
    best-effort; ``ExtractionQueueStore.load_image`` falls back to the shared
    images directory for any image left behind.
    """
    shared = inbox.drain()
    if not shared:
        return 0

    candidates = []
    for entry in shared:
        if store.get(entry.id) is not None:
            continue
        if not store.import_image(entry.image_file_name, inbox.images_dir):
            logger.info("Image %s left in shared area", entry.image_file_name)
        candidates.append(entry.to_pending())

    imported = store.adopt(candidates)
    logger.info("Imported %d extraction(s) from shared area", imported)
    return imported
