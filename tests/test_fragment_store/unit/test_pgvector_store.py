"""Unit tests for the PostgreSQL store against an in-process fake pool.

The fake records every statement so query construction, transaction use and
result handling can be checked without a database server.
"""

import json
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Any

import numpy as np
import pytest

from fragment_store.config import PgVectorBackendConfig
from fragment_store.exceptions import (
    NotFoundError,
    NotReadyError,
    PersistenceError,
    ValidationError,
)
from fragment_store.models import BatchEntry, FragmentMetadata, SearchOptions
from fragment_store.pgvector_store import PgVectorStore, build_where, to_list


class FakeConnection:
    def __init__(self, pool: "FakePool") -> None:
        self.pool = pool

    async def execute(self, query: str, *args: Any) -> str:
        return await self.pool.execute(query, *args)

    async def executemany(self, query: str, args: list[tuple]) -> None:
        self.pool.calls.append(("executemany", query, args))

    @asynccontextmanager
    async def transaction(self):
        self.pool.transactions.append("begin")
        try:
            yield
        except BaseException:
            self.pool.transactions.append("rollback")
            raise
        self.pool.transactions.append("commit")


class FakePool:
    def __init__(self) -> None:
        self.calls: list[tuple] = []
        self.transactions: list[str] = []
        self.rows: list[dict[str, Any]] = []
        self.row: dict[str, Any] | None = None
        self.value: Any = 0
        self.status = "DELETE 0"
        self.error: Exception | None = None
        self.closed = False

    def _record(self, kind: str, query: str, args: tuple) -> None:
        self.calls.append((kind, query, args))
        if self.error is not None:
            raise self.error

    async def execute(self, query: str, *args: Any) -> str:
        self._record("execute", query, args)
        return self.status

    async def fetch(self, query: str, *args: Any) -> list[dict[str, Any]]:
        self._record("fetch", query, args)
        return self.rows

    async def fetchrow(self, query: str, *args: Any) -> dict[str, Any] | None:
        self._record("fetchrow", query, args)
        return self.row

    async def fetchval(self, query: str, *args: Any) -> Any:
        self._record("fetchval", query, args)
        return self.value

    @asynccontextmanager
    async def acquire(self):
        yield FakeConnection(self)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def pg_config() -> PgVectorBackendConfig:
    return PgVectorBackendConfig(host="localhost", database="vectors", user="app", ssl=False)


@pytest.fixture
def pool() -> FakePool:
    return FakePool()


@pytest.fixture
def pg_store(pg_config: PgVectorBackendConfig, pool: FakePool) -> PgVectorStore:
    store = PgVectorStore(pg_config, embedding_model="test-embedding", dimension=2)
    store._pool = pool
    return store


class TestBuildWhere:
    def test_no_filters(self) -> None:
        assert build_where({}) == ("", [])

    def test_empty_allowed_list_skipped(self) -> None:
        assert build_where({"content_type": []}) == ("", [])

    def test_denormalized_column_uses_any(self) -> None:
        clause, params = build_where({"content_type": ["markdown", "code"]})

        assert clause == "WHERE content_type = ANY($2::text[])"
        assert params == [["markdown", "code"]]

    def test_none_allows_null_column(self) -> None:
        clause, params = build_where({"section": ["Intro", None]})

        assert clause == "WHERE (section = ANY($2::text[]) OR section IS NULL)"
        assert params == [["Intro"]]

    def test_non_string_values_dropped_for_text_columns(self) -> None:
        _, params = build_where({"section": [5, "Intro", True]})

        assert params == [["Intro"]]

    def test_none_allows_missing_json_field(self) -> None:
        clause, params = build_where({"lang": ["python", None]})

        assert clause.endswith("OR NOT metadata ? $3)")
        assert params[1] == "lang"
        assert {"lang": None} in params[0]

    def test_none_parameter_shifts_following_indexes(self) -> None:
        clause, params = build_where({"lang": [None], "content_type": ["code"]})

        assert "content_type = ANY($4::text[])" in clause
        assert params == [[{"lang": None}, {"lang": [None]}], "lang", ["code"]]

    def test_other_fields_use_json_containment(self) -> None:
        clause, params = build_where({"tags": ["alpha"]})

        assert "jsonb_array_elements($2::jsonb)" in clause
        assert "metadata @> c.value" in clause
        assert params == [[{"tags": "alpha"}, {"tags": ["alpha"]}]]

    def test_parameters_numbered_in_order(self) -> None:
        clause, params = build_where(
            {"document_id": ["d"], "tags": ["t"], "content_type": ["code"]}, start_index=5
        )

        assert "$5::text[]" in clause
        assert "$6::jsonb" in clause
        assert "$7::text[]" in clause
        assert clause.count(" AND ") == 2
        assert len(params) == 3


class TestToList:
    def test_numpy_array(self) -> None:
        assert to_list(np.array([0.5, 1.0], dtype=np.float32)) == [0.5, 1.0]

    def test_text_form(self) -> None:
        assert to_list("[1,2.5]") == [1.0, 2.5]

    def test_none(self) -> None:
        assert to_list(None) == []


class TestInitialize:
    async def test_missing_extension_raises(self, pg_config, monkeypatch) -> None:
        conn = FakePool()
        conn.value = False

        async def connect(**kwargs):
            return conn

        monkeypatch.setattr("fragment_store.pgvector_store.asyncpg.connect", connect)
        store = PgVectorStore(pg_config, dimension=2)

        with pytest.raises(PersistenceError, match="pgvector extension not installed"):
            await store.initialize()

        assert conn.closed
        assert not store.is_ready()

    async def test_creates_schema_and_pool(self, pg_config, monkeypatch) -> None:
        conn = FakePool()
        conn.value = True
        pool = FakePool()
        pool_kwargs: dict[str, Any] = {}

        async def connect(**kwargs):
            return conn

        async def create_pool(**kwargs):
            pool_kwargs.update(kwargs)
            return pool

        monkeypatch.setattr("fragment_store.pgvector_store.asyncpg.connect", connect)
        monkeypatch.setattr("fragment_store.pgvector_store.asyncpg.create_pool", create_pool)
        store = PgVectorStore(pg_config, dimension=3)

        await store.initialize()

        ddl = conn.calls[-1][1]
        assert "vector(3)" in ddl
        assert "USING hnsw (embedding vector_cosine_ops)" in ddl
        assert "USING GIN (metadata)" in ddl
        assert "UNIQUE (document_id, chunk_index)" in ddl
        assert pool_kwargs["max_size"] == 10
        assert pool_kwargs["ssl"] is False
        assert store.is_ready()

    async def test_connection_failure_wrapped(self, pg_config, monkeypatch) -> None:
        async def connect(**kwargs):
            raise OSError("connection refused")

        monkeypatch.setattr("fragment_store.pgvector_store.asyncpg.connect", connect)

        with pytest.raises(PersistenceError, match="connection refused"):
            await PgVectorStore(pg_config).initialize()


class TestWrites:
    async def test_not_ready_without_pool(self, pg_config) -> None:
        with pytest.raises(NotReadyError):
            await PgVectorStore(pg_config).get("a")

    async def test_insert_sends_denormalized_columns(self, pg_store, pool) -> None:
        metadata = FragmentMetadata(document_id="doc", section="S", content_type="code", x=1)

        await pg_store.insert("a", "text", [1.0, 0.0], metadata)

        kind, query, args = pool.calls[-1]
        assert "ON CONFLICT (id) DO UPDATE" in query
        assert args[0:2] == ("a", "text")
        assert args[2].tolist() == [1.0, 0.0]
        assert args[3]["x"] == 1
        assert args[4:] == ("doc", "S", "code")

    async def test_insert_dimension_mismatch(self, pg_store, pool) -> None:
        with pytest.raises(ValidationError):
            await pg_store.insert("a", "text", [1.0, 0.0, 0.0], FragmentMetadata())

        assert pool.calls == []

    async def test_batch_runs_in_one_transaction(self, pg_store, pool) -> None:
        await pg_store.insert_batch(
            [BatchEntry(id=f"b{i}", content="c", embedding=[1.0, 0.0]) for i in range(3)]
        )

        assert pool.transactions == ["begin", "commit"]
        kind, _, rows = pool.calls[-1]
        assert kind == "executemany"
        assert [row[0] for row in rows] == ["b0", "b1", "b2"]

    async def test_batch_with_missing_embedding_fails_whole_batch(self, pg_store, pool) -> None:
        entries = [
            BatchEntry(id="ok", content="c", embedding=[1.0, 0.0]),
            BatchEntry(id="empty", content="c"),
        ]

        with pytest.raises(ValidationError):
            await pg_store.insert_batch(entries)

        assert pool.transactions == ["begin", "rollback"]
        assert pool.calls == []

    async def test_driver_error_wrapped(self, pg_store, pool) -> None:
        pool.error = OSError("connection reset")

        with pytest.raises(PersistenceError, match="connection reset"):
            await pg_store.insert("a", "text", [1.0, 0.0], FragmentMetadata())

    @pytest.mark.parametrize("status, removed", [("DELETE 1", True), ("DELETE 0", False)])
    async def test_delete_reads_status(self, pg_store, pool, status, removed) -> None:
        pool.status = status

        assert await pg_store.delete("a") is removed

    async def test_clear_truncates_both_tables(self, pg_store, pool) -> None:
        await pg_store.clear()

        assert pool.calls[-1][1] == "TRUNCATE TABLE embeddings, document_chunks"


class TestSearch:
    @pytest.fixture
    def rows(self) -> list[dict[str, Any]]:
        return [
            {"id": "a", "content": "A", "metadata": {"section": "S"}, "score": 0.9},
            {"id": "b", "content": "B", "metadata": {}, "score": 0.3},
            {"id": "z", "content": "Z", "metadata": None, "score": float("nan")},
        ]

    async def test_threshold_applied_after_query(self, pg_store, pool, rows) -> None:
        pool.rows = rows

        result = await pg_store.search([1.0, 0.0], SearchOptions(score_threshold=0.5))

        assert [f.id for f in result.fragments] == ["a"]
        assert result.total_found == 1
        assert result.fragments[0].metadata.section == "S"

    async def test_nan_score_becomes_zero(self, pg_store, pool, rows) -> None:
        pool.rows = rows

        result = await pg_store.search([0.0, 0.0])

        assert [f.score for f in result.fragments] == [0.9, 0.3, 0.0]

    async def test_query_shape(self, pg_store, pool) -> None:
        await pg_store.search(
            [1.0, 0.0], SearchOptions(top_k=7, filters={"content_type": ["markdown"]})
        )

        _, query, args = pool.calls[-1]
        assert "1 - (embedding <=> $1) AS score" in query
        assert "WHERE content_type = ANY($2::text[])" in query
        assert "ORDER BY embedding <=> $1, id" in query
        assert "LIMIT 7" in query
        assert "embedding," not in query.split("FROM")[0]
        assert args[1] == ["markdown"]

    async def test_include_embeddings(self, pg_store, pool) -> None:
        pool.rows = [
            {
                "id": "a",
                "content": "A",
                "metadata": {},
                "embedding": np.array([1.0, 0.0], dtype=np.float32),
                "score": 1.0,
            }
        ]

        result = await pg_store.search([1.0, 0.0], SearchOptions(include_embeddings=True))

        assert result.fragments[0].embedding == [1.0, 0.0]


class TestLargeDocuments:
    async def test_chunks_written_with_placeholder_embeddings(self, pg_store, pool) -> None:
        ids = await pg_store.insert_large_document(
            "doc", "abcdefgh", FragmentMetadata(section="all"), chunk_size=3
        )

        assert ids == ["doc_chunk_0", "doc_chunk_1", "doc_chunk_2"]
        assert pool.transactions == ["begin", "commit"]
        assert "DELETE FROM document_chunks" in pool.calls[0][1]
        _, _, rows = pool.calls[1]
        assert [row[2] for row in rows] == ["abc", "def", "gh"]
        assert all(row[4] == 3 for row in rows)
        assert not rows[0][3].any()

    async def test_retrieve_concatenates_in_order(self, pg_store, pool) -> None:
        pool.rows = [
            {"chunk_index": 0, "chunk_content": "ab", "total_chunks": 2, "metadata": {}},
            {"chunk_index": 1, "chunk_content": "c", "total_chunks": 2, "metadata": {}},
        ]

        assert await pg_store.retrieve_large_document("doc") == "abc"

    async def test_retrieve_missing_raises(self, pg_store, pool) -> None:
        with pytest.raises(NotFoundError):
            await pg_store.retrieve_large_document("missing")


class TestManagement:
    async def test_stats(self, pg_store, pool) -> None:
        created = datetime(2025, 1, 1, tzinfo=UTC)
        pool.row = {"total": 2, "created": created, "updated": None}
        pool.rows = [{"key": "doc", "count": 2}]

        stats = await pg_store.get_stats()

        assert stats.total_chunks == 2
        assert stats.created_at == created
        assert stats.document_counts == {"doc": 2}
        assert stats.memory_usage is None

    async def test_export_uses_table_timestamps(self, pg_store, pool) -> None:
        created = datetime(2025, 1, 1, tzinfo=UTC)
        updated = datetime(2025, 2, 1, tzinfo=UTC)
        pool.row = {"created": created, "updated": updated}

        document = json.loads(await pg_store.export_data())

        assert document["entries"] == []
        assert document["createdAt"] == int(created.timestamp() * 1000)
        assert document["updatedAt"] == int(updated.timestamp() * 1000)

    async def test_verify_reports_wrong_dimensions(self, pg_store, pool) -> None:
        pool.value = 4

        report = await pg_store.verify()

        assert not report.valid
        assert report.errors == ["Found 4 chunks with incorrect embedding dimension"]

    async def test_verify_never_raises(self, pg_store, pool) -> None:
        pool.error = OSError("gone")

        report = await pg_store.verify()

        assert not report.valid
        assert report.errors[0].startswith("Verification failed")

    async def test_optimize_vacuums_both_tables(self, pg_store, pool) -> None:
        await pg_store.optimize()

        assert [call[1] for call in pool.calls] == [
            "VACUUM ANALYZE embeddings",
            "VACUUM ANALYZE document_chunks",
        ]

    async def test_import_validates_then_batches(self, pg_store, pool) -> None:
        with pytest.raises(ValidationError):
            await pg_store.import_data('{"entries": "nope"}')
        assert pool.calls == []

    async def test_close_releases_pool(self, pg_store, pool) -> None:
        await pg_store.close()

        assert pool.closed
        assert not pg_store.is_ready()
