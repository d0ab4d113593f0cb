"""Unit tests for the JSON file-backed vector store."""

import json

import pytest

from fragment_store.exceptions import ValidationError
from fragment_store.models import BackendKind, BatchEntry, FragmentMetadata


class TestPersistence:
    async def test_insert_is_not_durable_until_save(self, json_store, tmp_path) -> None:
        await json_store.insert("a", "text", [1.0, 0.0], FragmentMetadata())

        assert not (tmp_path / "index.json").exists()

        await json_store.save()

        saved = json.loads((tmp_path / "index.json").read_text())
        assert saved["totalChunks"] == 1
        assert saved["entries"][0]["id"] == "a"

    async def test_delete_saves_immediately(self, json_store, tmp_path) -> None:
        await json_store.insert("a", "text", [1.0, 0.0], FragmentMetadata())
        await json_store.insert("b", "text", [0.0, 1.0], FragmentMetadata())

        await json_store.delete("a")

        saved = json.loads((tmp_path / "index.json").read_text())
        assert [entry["id"] for entry in saved["entries"]] == ["b"]

    async def test_reopen_loads_saved_snapshot(self, json_store, make_store) -> None:
        await json_store.insert("a", "persisted", [1.0, 0.0], FragmentMetadata(section="S"))
        await json_store.save()

        async with make_store("json") as reopened:
            entry = await reopened.get("a")

        assert entry is not None
        assert entry.content == "persisted"
        assert entry.metadata.section == "S"

    async def test_corrupt_snapshot_starts_empty(self, make_store, tmp_path) -> None:
        (tmp_path / "index.json").write_text("{ not json")

        async with make_store("json") as store:
            assert await store.is_empty()

    async def test_save_leaves_no_temp_file(self, json_store, tmp_path) -> None:
        await json_store.insert("a", "text", [1.0, 0.0], FragmentMetadata())
        await json_store.save()

        assert not (tmp_path / "index.tmp").exists()


class TestDimension:
    async def test_first_insert_fixes_dimension(self, make_store) -> None:
        async with make_store("json", dimension=1536) as store:
            await store.insert("a", "text", [1.0, 0.0, 0.0], FragmentMetadata())

            stats = await store.get_stats()

        assert stats.dimension == 3

    async def test_empty_embedding_rejected(self, json_store) -> None:
        with pytest.raises(ValidationError):
            await json_store.insert("a", "text", [], FragmentMetadata())

    async def test_batch_keeps_entries_before_failure(self, json_store) -> None:
        entries = [
            BatchEntry(id="ok", content="fine", embedding=[1.0, 0.0]),
            BatchEntry(id="bad", content="wrong size", embedding=[1.0, 0.0, 0.0]),
        ]

        with pytest.raises(ValidationError):
            await json_store.insert_batch(entries)

        assert await json_store.get("ok") is not None
        assert await json_store.get("bad") is None


class TestChunkingUnsupported:
    async def test_reports_no_chunking(self, json_store) -> None:
        assert json_store.supports_chunking() is False

    async def test_large_document_operations_raise(self, json_store) -> None:
        with pytest.raises(ValidationError, match="not supported"):
            await json_store.insert_large_document("doc", "x" * 10, FragmentMetadata())
        with pytest.raises(ValidationError):
            await json_store.retrieve_large_document("doc")
        with pytest.raises(ValidationError):
            await json_store.get_document_chunks("doc")


class TestStatsAndVerify:
    async def test_stats_on_never_written_store(self, json_store) -> None:
        stats = await json_store.get_stats()

        assert stats.total_chunks == 0
        assert stats.embedding_model == "test-embedding"
        assert stats.backend is BackendKind.JSON
        assert stats.memory_usage == 0

    async def test_stats_counts_and_memory_estimate(self, json_store) -> None:
        await json_store.insert("a", "t", [1.0, 0.0], FragmentMetadata(document_id="d1"))
        await json_store.insert(
            "b", "t", [0.0, 1.0], FragmentMetadata(document_id="d1", content_type="code")
        )

        stats = await json_store.get_stats()

        assert stats.document_counts == {"d1": 2}
        assert stats.content_type_counts == {"unknown": 1, "code": 1}
        assert stats.memory_usage == 2 * (2 * 8 + 500)

    async def test_export_of_never_written_store_is_empty_document(self, json_store) -> None:
        document = json.loads(await json_store.export_data())

        assert document["entries"] == []
        assert document["totalChunks"] == 0

    async def test_verify_without_index(self, json_store) -> None:
        report = await json_store.verify()

        assert not report.valid
        assert report.errors == ["No index loaded"]

    async def test_verify_detects_count_mismatch(self, json_store) -> None:
        await json_store.insert("a", "t", [1.0, 0.0], FragmentMetadata())
        json_store._index.total_chunks = 5

        report = await json_store.verify()

        assert not report.valid
        assert any("Chunk count mismatch" in error for error in report.errors)

    async def test_import_replaces_collection(self, json_store) -> None:
        await json_store.insert("old", "t", [1.0, 0.0], FragmentMetadata())
        payload = json.dumps(
            {
                "version": "1.0",
                "embeddingModel": "other-model",
                "dimension": 3,
                "totalChunks": 1,
                "createdAt": 1,
                "updatedAt": 2,
                "entries": [
                    {"id": "new", "content": "c", "embedding": [0.0, 0.0, 1.0], "metadata": {}}
                ],
            }
        )

        await json_store.import_data(payload)

        assert await json_store.get("old") is None
        assert await json_store.get("new") is not None
        stats = await json_store.get_stats()
        assert stats.dimension == 3
        assert stats.embedding_model == "other-model"


def mixed_dimension_document() -> dict:
    return {
        "version": "1.0",
        "embeddingModel": "test-embedding",
        "dimension": 2,
        "totalChunks": 2,
        "createdAt": 1,
        "updatedAt": 2,
        "entries": [
            {"id": "a", "content": "fits", "embedding": [1.0, 0.0], "metadata": {}},
            {"id": "b", "content": "too long", "embedding": [1.0, 0.0, 0.0], "metadata": {}},
        ],
    }


class TestImportedDimensions:
    async def test_import_rejects_mixed_dimensions(self, json_store, tmp_path) -> None:
        await json_store.insert("kept", "t", [0.0, 1.0], FragmentMetadata())

        with pytest.raises(ValidationError, match="Dimension mismatch for b"):
            await json_store.import_data(json.dumps(mixed_dimension_document()))

        assert await json_store.get("kept") is not None
        assert await json_store.get("a") is None
        assert not (tmp_path / "index.json").exists()

    async def test_load_skips_mismatched_entries(self, make_store, tmp_path) -> None:
        (tmp_path / "index.json").write_text(json.dumps(mixed_dimension_document()))

        async with make_store("json") as store:
            result = await store.search([1.0, 0.0])
            report = await store.verify()

        assert [f.id for f in result.fragments] == ["a"]
        assert report.valid
