"""
Hybrid persistence for generation jobs.

Job state is split across two tiers:
- a versioned structured record (no image payloads) in the synchronous,
  capacity-limited RecordStore
- one blob per image in the asynchronous BlobStore, keyed ``char-{name}``,
  ``panel-{panelNumber}`` and ``upload-{id}``

Image write failures never fail a save, and a missing image on load yields
the item with an empty image rather than dropping it.
"""

import hashlib
import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Set, Union

from panelforge.core.constants import (
    CHARACTER_BLOB_PREFIX,
    DEFAULT_RECORD_CAPACITY,
    PANEL_BLOB_PREFIX,
    RECORD_KEY,
    STORAGE_VERSION,
    UPLOAD_BLOB_PREFIX,
)
from panelforge.core.exceptions import (
    BlobStoreError,
    PersistenceCapacityError,
    PersistenceCorruptionError,
    StorageError,
)
from panelforge.core.logging_config import get_logger
from panelforge.core.models import GenerationJob

from .blob_store import BlobStore, BlobTransaction
from .record_store import RecordStore

logger = get_logger("storage.persistence")

BLOB_PREFIXES = (CHARACTER_BLOB_PREFIX, PANEL_BLOB_PREFIX, UPLOAD_BLOB_PREFIX)


def character_blob_key(name: str) -> str:
    return f"{CHARACTER_BLOB_PREFIX}{name}"


def panel_blob_key(panel_number: int) -> str:
    return f"{PANEL_BLOB_PREFIX}{panel_number}"


def upload_blob_key(upload_id: str) -> str:
    return f"{UPLOAD_BLOB_PREFIX}{upload_id}"


def _digest(data: str) -> str:
    return hashlib.sha1(data.encode('utf-8')).hexdigest()


@dataclass
class StorageInfo:
    """Whether saved state exists, and when it was written."""
    has_data: bool
    timestamp: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"hasData": self.has_data, "timestamp": self.timestamp}


class HybridPersistence:
    """Save, load and clear a GenerationJob across the record and blob tiers."""

    def __init__(
        self,
        records: RecordStore,
        blobs: BlobStore,
        record_key: str = RECORD_KEY,
        version: str = STORAGE_VERSION,
    ):
        self.records = records
        self.blobs = blobs
        self.record_key = record_key
        self.version = version
        # Digest of each blob known to be stored, to skip rewriting unchanged images
        self._stored: Dict[str, str] = {}

    @classmethod
    def from_directory(
        cls,
        state_dir: Union[str, Path],
        record_capacity: int = DEFAULT_RECORD_CAPACITY,
    ) -> 'HybridPersistence':
        state_dir = Path(state_dir)
        return cls(RecordStore(state_dir / "records", record_capacity), BlobStore(state_dir / "blobs"))

    # -------------------------------------------------------------------------
    # Save
    # -------------------------------------------------------------------------

    async def save(self, job: GenerationJob) -> bool:
        """
        Persist a job.

        Returns:
            True if the structured record was written. Image failures are
            logged and do not affect the result.
        """
        record = {
            "version": self.version,
            "timestamp": datetime.now().isoformat(),
            "job": job.to_record(),
        }
        saved = self._write_record(json.dumps(record, ensure_ascii=False))
        await self._write_blobs(job)
        return saved

    def _write_record(self, text: str) -> bool:
        try:
            with self.records.open() as records:
                try:
                    records.set(self.record_key, text)
                    return True
                except PersistenceCapacityError as e:
                    logger.warning(f"⚠️ {e}; removing existing record and retrying once")
                    records.remove(self.record_key)
                    try:
                        records.set(self.record_key, text)
                        return True
                    except PersistenceCapacityError as retry_error:
                        logger.error(f"❌ Job record not saved this cycle: {retry_error}")
                        return False
        except StorageError as e:
            logger.error(f"❌ Job record not saved this cycle: {e}")
            return False

    @staticmethod
    def _collect_blobs(job: GenerationJob) -> Dict[str, str]:
        """Every blob key the job references, mapped to its image (possibly empty)."""
        blobs: Dict[str, str] = {}
        for ref in job.character_references:
            blobs[character_blob_key(ref.name)] = ref.image
        for panel in job.generated_panels:
            blobs[panel_blob_key(panel.panel_number)] = panel.image
        uploads = job.character_uploads + job.setting_uploads
        if job.run_inputs:
            uploads = uploads + job.run_inputs.uploads()
        for upload in uploads:
            key = upload_blob_key(upload.id)
            if upload.image or key not in blobs:
                blobs[key] = upload.image
        return blobs

    async def _write_blobs(self, job: GenerationJob) -> None:
        blobs = self._collect_blobs(job)
        try:
            async with self.blobs.open() as tx:
                for key, image in blobs.items():
                    if not image:
                        continue
                    digest = _digest(image)
                    if self._stored.get(key) == digest:
                        continue
                    try:
                        await tx.put(key, image)
                        self._stored[key] = digest
                    except BlobStoreError as e:
                        self._stored.pop(key, None)
                        logger.warning(f"⚠️ Image '{key}' not saved: {e}")
                await self._prune(tx, set(blobs))
        except BlobStoreError as e:
            logger.warning(f"⚠️ Images not saved this cycle: {e}")

    async def _prune(self, tx: BlobTransaction, referenced: Set[str]) -> None:
        """Delete blobs whose item no longer exists in the job."""
        for key in await tx.keys():
            if key.startswith(BLOB_PREFIXES) and key not in referenced:
                try:
                    await tx.delete(key)
                    self._stored.pop(key, None)
                    logger.debug(f"Removed orphaned image '{key}'")
                except BlobStoreError as e:
                    logger.warning(f"⚠️ Could not remove orphaned image '{key}': {e}")

    # -------------------------------------------------------------------------
    # Load
    # -------------------------------------------------------------------------

    def _parse_record(self, raw: str) -> Dict[str, Any]:
        try:
            record = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceCorruptionError(f"Saved record is not valid JSON: {e}")
        if not isinstance(record, dict) or not isinstance(record.get("job"), dict):
            raise PersistenceCorruptionError("Saved record has no job object")
        return record

    async def load(self) -> Optional[GenerationJob]:
        """
        Restore the saved job.

        Returns:
            The job, or None when nothing usable is saved. Incompatible or
            unreadable state is discarded from both tiers.
        """
        try:
            with self.records.open() as records:
                raw = records.get(self.record_key)
        except PersistenceCorruptionError as e:
            logger.warning(f"⚠️ {e}; discarding saved state")
            await self.clear()
            return None
        except StorageError as e:
            logger.error(f"❌ Could not read saved job: {e}")
            return None

        if raw is None:
            return None

        try:
            record = self._parse_record(raw)
            if record.get("version") != self.version:
                logger.info(
                    f"Saved state version {record.get('version')!r} does not match "
                    f"{self.version!r}; discarding"
                )
                await self.clear()
                return None
            try:
                job = GenerationJob.from_dict(record["job"])
            except (KeyError, ValueError, TypeError, AttributeError) as e:
                raise PersistenceCorruptionError(f"Saved job cannot be restored: {e}")
        except PersistenceCorruptionError as e:
            logger.warning(f"⚠️ {e}; discarding saved state")
            await self.clear()
            return None

        await self._hydrate_images(job)
        job.is_generating = False
        logger.info(
            f"Restored job: phase={job.phase.value}, characters={len(job.character_references)}, "
            f"panels={len(job.generated_panels)}"
        )
        return job

    async def _hydrate_images(self, job: GenerationJob) -> None:
        items = [(character_blob_key(r.name), r) for r in job.character_references]
        items += [(panel_blob_key(p.panel_number), p) for p in job.generated_panels]
        uploads = job.character_uploads + job.setting_uploads
        if job.run_inputs:
            uploads = uploads + job.run_inputs.uploads()
        items += [(upload_blob_key(u.id), u) for u in uploads]

        try:
            async with self.blobs.open() as tx:
                for key, item in items:
                    try:
                        image = await tx.get(key)
                    except BlobStoreError as e:
                        logger.warning(f"⚠️ Image '{key}' unreadable: {e}")
                        image = None
                    if image is None:
                        logger.debug(f"Image '{key}' missing; restoring item without image")
                        item.image = ""
                    else:
                        item.image = image
                        self._stored[key] = _digest(image)
        except BlobStoreError as e:
            logger.warning(f"⚠️ Images unavailable, restoring without them: {e}")
            for _, item in items:
                item.image = ""

    # -------------------------------------------------------------------------
    # Clear / info
    # -------------------------------------------------------------------------

    async def clear(self) -> None:
        """Remove the structured record and every stored image."""
        try:
            with self.records.open() as records:
                records.remove(self.record_key)
        except StorageError as e:
            logger.error(f"❌ Could not remove saved job record: {e}")

        try:
            async with self.blobs.open() as tx:
                await tx.clear()
        except BlobStoreError as e:
            logger.error(f"❌ Could not clear stored images: {e}")

        self._stored.clear()

    def storage_info(self) -> StorageInfo:
        try:
            with self.records.open() as records:
                raw = records.get(self.record_key)
        except StorageError:
            return StorageInfo(has_data=False)

        if raw is None:
            return StorageInfo(has_data=False)
        try:
            timestamp = json.loads(raw).get("timestamp")
        except (json.JSONDecodeError, AttributeError):
            timestamp = None
        return StorageInfo(has_data=True, timestamp=timestamp)
