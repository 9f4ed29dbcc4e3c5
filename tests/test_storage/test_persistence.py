"""
Tests for Hybrid Persistence

Tests for panelforge/storage/
"""

import json

import pytest

from panelforge.core.constants import PipelinePhase, RECORD_KEY, Stage
from panelforge.core.exceptions import BlobStoreError, PersistenceCapacityError
from panelforge.core.models import (
    CharacterReference,
    GeneratedPanel,
    GenerationJob,
    JobError,
    RunInputs,
    UploadedReference,
)
from panelforge.storage.blob_store import BLOB_SUFFIX, BlobStore, BlobTransaction
from panelforge.storage.persistence import HybridPersistence, panel_blob_key
from panelforge.storage.record_store import RECORD_SUFFIX, RecordStore
from panelforge.utils.file_utils import key_to_filename


def image(tag: str) -> str:
    return f"data:image/png;base64,{tag}"


@pytest.fixture
def failed_job(sample_analysis, sample_breakdown) -> GenerationJob:
    """A job that failed at panel 3 with a character upload."""
    upload = UploadedReference(id="u1", name="rex.png", image=image("UPLOAD"))
    return GenerationJob(
        story="A dog named Rex chased a ball in the park.",
        character_uploads=[upload],
        phase=PipelinePhase.FAILED,
        story_analysis=sample_analysis,
        character_references=[CharacterReference(name="Rex", image=image("REX"))],
        story_breakdown=sample_breakdown,
        generated_panels=[GeneratedPanel(1, image("P1")), GeneratedPanel(2, image("P2"))],
        error=JobError("Provider 'gemini' error: Request timeout", Stage.PANELS, 3),
        run_inputs=RunInputs(story="A dog named Rex chased a ball in the park.", character_uploads=[upload]),
    )


async def blob_keys(persistence: HybridPersistence):
    async with persistence.blobs.open() as tx:
        return await tx.keys()


class TestRecordStore:
    """Tests for the capacity-limited record store."""

    def test_set_get_remove(self, temp_dir):
        store = RecordStore(temp_dir)
        with store.open() as records:
            records.set("generation-job", '{"a": 1}')
            assert records.get("generation-job") == '{"a": 1}'

            records.remove("generation-job")
            assert records.get("generation-job") is None

    def test_capacity_counts_existing_value(self, temp_dir):
        """Test that overwriting a key still counts its current size."""
        store = RecordStore(temp_dir, capacity_bytes=15)
        with store.open() as records:
            records.set("k", "x" * 10)
            with pytest.raises(PersistenceCapacityError):
                records.set("k", "y" * 10)
            assert records.get("k") == "x" * 10


class TestBlobStore:
    """Tests for the asynchronous blob store."""

    @pytest.mark.asyncio
    async def test_put_get_delete(self, temp_dir):
        store = BlobStore(temp_dir)
        async with store.open() as tx:
            await tx.put("char-Mia the Cat", image("MIA"))
            await tx.put("panel-1", image("P1"))

            assert await tx.get("char-Mia the Cat") == image("MIA")
            assert await tx.keys() == ["char-Mia the Cat", "panel-1"]

            await tx.delete("panel-1")
            assert await tx.get("panel-1") is None

            await tx.clear()
            assert await tx.keys() == []

    @pytest.mark.asyncio
    async def test_transaction_closed_after_scope(self, temp_dir):
        async with BlobStore(temp_dir).open() as tx:
            pass

        with pytest.raises(BlobStoreError):
            await tx.get("panel-1")


class TestHybridPersistence:
    """Tests for saving and loading jobs across both tiers."""

    @pytest.mark.asyncio
    async def test_round_trip(self, temp_dir, failed_job):
        persistence = HybridPersistence.from_directory(temp_dir)

        assert await persistence.save(failed_job) is True
        loaded = await HybridPersistence.from_directory(temp_dir).load()

        assert loaded.to_record() == failed_job.to_record()
        assert loaded.get_generated_panel(2).image == image("P2")
        assert loaded.character_references[0].image == image("REX")
        assert loaded.character_uploads[0].image == image("UPLOAD")
        assert loaded.run_inputs.character_uploads[0].image == image("UPLOAD")

    @pytest.mark.asyncio
    async def test_record_has_no_images(self, temp_dir, failed_job):
        """Test that image payloads only live in the blob tier."""
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)

        with persistence.records.open() as records:
            raw = records.get(RECORD_KEY)

        assert '"version": "1.0.0"' in raw
        assert "data:image" not in raw
        assert set(await blob_keys(persistence)) == {"char-Rex", "panel-1", "panel-2", "upload-u1"}

    @pytest.mark.asyncio
    async def test_generating_flag_not_restored(self, temp_dir, failed_job):
        failed_job.is_generating = True
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)

        assert (await persistence.load()).is_generating is False

    @pytest.mark.asyncio
    async def test_nothing_saved(self, temp_dir):
        assert await HybridPersistence.from_directory(temp_dir).load() is None

    @pytest.mark.asyncio
    async def test_version_mismatch_discards_state(self, temp_dir, failed_job):
        """Test that state from another version is cleared from both tiers."""
        old = HybridPersistence(
            RecordStore(temp_dir / "records"), BlobStore(temp_dir / "blobs"), version="0.9.0"
        )
        await old.save(failed_job)

        persistence = HybridPersistence.from_directory(temp_dir)

        assert await persistence.load() is None
        assert persistence.storage_info().has_data is False
        assert await blob_keys(persistence) == []

    @pytest.mark.asyncio
    async def test_corrupt_record_discards_state(self, temp_dir, failed_job):
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)
        with persistence.records.open() as records:
            records.set(RECORD_KEY, "{not json")

        assert await persistence.load() is None
        assert await blob_keys(persistence) == []

    @pytest.mark.asyncio
    async def test_undecodable_record_discards_state(self, temp_dir, failed_job):
        """Test that a record file that is not UTF-8 is treated as corruption."""
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)
        (persistence.records.root / key_to_filename(RECORD_KEY, RECORD_SUFFIX)).write_bytes(b"\xff\xfe{bad")

        assert await persistence.load() is None
        assert persistence.storage_info().has_data is False
        assert await blob_keys(persistence) == []

    @pytest.mark.asyncio
    async def test_wrong_shape_record_discards_state(self, temp_dir, failed_job):
        """Test that a record whose nested values have the wrong type is discarded."""
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)
        with persistence.records.open() as records:
            record = json.loads(records.get(RECORD_KEY))
            record["job"]["storyAnalysis"]["characters"] = ["Rex"]
            records.set(RECORD_KEY, json.dumps(record))

        assert await persistence.load() is None
        assert await blob_keys(persistence) == []

    @pytest.mark.asyncio
    async def test_undecodable_blob_yields_empty_image(self, temp_dir, failed_job):
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)
        (persistence.blobs.root / key_to_filename(panel_blob_key(2), BLOB_SUFFIX)).write_bytes(b"\xff\xfe\xfd")

        loaded = await HybridPersistence.from_directory(temp_dir).load()

        assert loaded.get_generated_panel(2).image == ""
        assert loaded.get_generated_panel(1).image == image("P1")

    @pytest.mark.asyncio
    async def test_missing_blob_yields_empty_image(self, temp_dir, failed_job):
        """Test that an item whose image is gone is kept with an empty image."""
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)
        async with persistence.blobs.open() as tx:
            await tx.delete(panel_blob_key(2))

        loaded = await HybridPersistence.from_directory(temp_dir).load()

        assert [p.panel_number for p in loaded.generated_panels] == [1, 2]
        assert loaded.get_generated_panel(2).image == ""
        assert loaded.get_generated_panel(1).image == image("P1")

    @pytest.mark.asyncio
    async def test_capacity_remediation(self, temp_dir, failed_job):
        """Test that a full record store is cleared of the old record and retried once."""
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)
        with persistence.records.open() as records:
            size = records.used_bytes()

        persistence.records.capacity_bytes = int(size * 1.5)
        failed_job.story_analysis.title = "Rex Again"

        assert await persistence.save(failed_job) is True
        assert (await persistence.load()).story_analysis.title == "Rex Again"

    @pytest.mark.asyncio
    async def test_capacity_exhausted_does_not_raise(self, temp_dir, failed_job):
        persistence = HybridPersistence.from_directory(temp_dir, record_capacity=10)

        assert await persistence.save(failed_job) is False
        assert persistence.storage_info().has_data is False

    @pytest.mark.asyncio
    async def test_orphaned_blobs_pruned(self, temp_dir, failed_job):
        persistence = HybridPersistence.from_directory(temp_dir)
        failed_job.generated_panels.append(GeneratedPanel(3, image("P3")))
        await persistence.save(failed_job)

        failed_job.generated_panels = failed_job.generated_panels[:1]
        failed_job.character_references = []
        await persistence.save(failed_job)

        assert set(await blob_keys(persistence)) == {"panel-1", "upload-u1"}

    @pytest.mark.asyncio
    async def test_unchanged_blobs_not_rewritten(self, temp_dir, failed_job, monkeypatch):
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)

        written = []
        original_put = BlobTransaction.put

        async def counting_put(self, key, data):
            written.append(key)
            await original_put(self, key, data)

        monkeypatch.setattr(BlobTransaction, "put", counting_put)
        failed_job.upsert_generated_panel(GeneratedPanel(2, image("P2-new")))
        await persistence.save(failed_job)

        assert written == ["panel-2"]

    @pytest.mark.asyncio
    async def test_blob_failure_does_not_fail_save(self, temp_dir, failed_job, monkeypatch):
        async def failing_put(self, key, data):
            raise BlobStoreError(f"Failed to write blob '{key}'")

        monkeypatch.setattr(BlobTransaction, "put", failing_put)
        persistence = HybridPersistence.from_directory(temp_dir)

        assert await persistence.save(failed_job) is True
        assert persistence.storage_info().has_data is True

    @pytest.mark.asyncio
    async def test_clear(self, temp_dir, failed_job):
        persistence = HybridPersistence.from_directory(temp_dir)
        await persistence.save(failed_job)
        info = persistence.storage_info()
        assert info.has_data is True
        assert info.timestamp is not None

        await persistence.clear()

        assert persistence.storage_info().has_data is False
        assert await blob_keys(persistence) == []
