"""Copy every fragment from one vector store to another.

Migration is best-effort rather than atomic: each entry is upserted on its
own, failures are collected, and the run continues. Any backend may be the
source or the target.
"""

import asyncio
import time
from collections.abc import Callable
from enum import Enum

from loguru import logger
from pydantic import BaseModel, Field

from fragment_store.base import VectorStore, parse_interchange
from fragment_store.exceptions import StoreError, ValidationError
from fragment_store.models import StoreStats

BATCH_SIZE = 100
PROGRESS_INTERVAL = 10
BATCH_DELAY_SECONDS = 0.05


class MigrationPhase(str, Enum):
    PREPARING = "preparing"
    MIGRATING = "migrating"
    VERIFYING = "verifying"
    COMPLETE = "complete"
    FAILED = "failed"


class MigrationProgress(BaseModel):
    """Snapshot passed to the progress callback.

    Attributes:
        phase: Current migration phase
        total_chunks: Entries in the source store
        migrated_chunks: Entries written to the target so far
        percentage: 0-90 while migrating, 95 when verifying, 100 when complete
        current_chunk: Id of the most recently migrated entry
        error: Failure message when phase is "failed"
    """

    phase: MigrationPhase
    total_chunks: int = 0
    migrated_chunks: int = 0
    percentage: int = 0
    current_chunk: str | None = None
    error: str | None = None


class MigrationError(BaseModel):
    """An entry that could not be written to the target."""

    id: str
    error: str


class MigrationResult(BaseModel):
    """Outcome of a migration run.

    ``success`` is True only when no entry failed. Discrepancies between the
    source and target stats are reported, never raised.
    """

    success: bool
    migrated_chunks: int
    total_chunks: int
    duration: float = Field(description="Seconds spent migrating")
    errors: list[MigrationError] = Field(default_factory=list)
    source_stats: StoreStats
    target_stats: StoreStats
    discrepancies: list[str] = Field(default_factory=list)


class MigrationVerification(BaseModel):
    valid: bool
    differences: list[str] = Field(default_factory=list)


ProgressCallback = Callable[[MigrationProgress], None]


def compare_stats(source: StoreStats, target: StoreStats) -> list[str]:
    """List the differences in count, dimension and model between two stores."""
    differences = []
    if source.total_chunks != target.total_chunks:
        differences.append(
            f"Chunk count mismatch: source={source.total_chunks}, target={target.total_chunks}"
        )
    if source.dimension != target.dimension:
        differences.append(
            f"Embedding dimension mismatch: source={source.dimension}, target={target.dimension}"
        )
    if source.embedding_model != target.embedding_model:
        differences.append(
            f"Embedding model mismatch: source={source.embedding_model}, "
            f"target={target.embedding_model}"
        )
    return differences


class StoreMigration:
    """Moves all entries from ``source`` into ``target``.

    Example:
        >>> migration = StoreMigration(json_store, sqlite_store, on_progress=print)
        >>> result = await migration.migrate(clear_target=True)
        >>> result.success
        True
    """

    def __init__(
        self,
        source: VectorStore,
        target: VectorStore,
        on_progress: ProgressCallback | None = None,
        batch_delay: float = BATCH_DELAY_SECONDS,
    ) -> None:
        self.source = source
        self.target = target
        self.on_progress = on_progress
        self.batch_delay = batch_delay

    async def migrate(self, clear_target: bool = False) -> MigrationResult:
        """Run the migration.

        Args:
            clear_target: Remove everything from the target before copying

        Returns:
            Counts, per-entry errors and before/after stats

        Raises:
            ValidationError: If the source store is empty
            StoreError: If the source cannot be read or the target cannot be
                prepared; progress is reported as "failed" first
        """
        started = time.perf_counter()
        errors: list[MigrationError] = []

        try:
            self._report(MigrationProgress(phase=MigrationPhase.PREPARING))

            source_stats = await self.source.get_stats()
            total = source_stats.total_chunks
            logger.info(f"Migration: source has {total} chunks")
            if total == 0:
                raise ValidationError("Source vector store is empty, nothing to migrate")

            if not self.target.is_ready():
                await self.target.initialize()
            if clear_target:
                logger.info("Clearing target vector store")
                await self.target.clear()

            self._report(MigrationProgress(phase=MigrationPhase.MIGRATING, total_chunks=total))
            migrated = await self._migrate_entries(total, errors)

            self._report(
                MigrationProgress(
                    phase=MigrationPhase.VERIFYING,
                    total_chunks=total,
                    migrated_chunks=migrated,
                    percentage=95,
                )
            )
            await self.target.save()
            target_stats = await self.target.get_stats()
            logger.info(f"Migration: target now has {target_stats.total_chunks} chunks")
        except StoreError as e:
            logger.error(f"Migration failed: {e}")
            self._report(MigrationProgress(phase=MigrationPhase.FAILED, error=str(e)))
            raise

        discrepancies = compare_stats(source_stats, target_stats)
        for discrepancy in discrepancies:
            logger.warning(f"Migration discrepancy: {discrepancy}")

        self._report(
            MigrationProgress(
                phase=MigrationPhase.COMPLETE,
                total_chunks=total,
                migrated_chunks=migrated,
                percentage=100,
            )
        )

        return MigrationResult(
            success=not errors,
            migrated_chunks=migrated,
            total_chunks=total,
            duration=time.perf_counter() - started,
            errors=errors,
            source_stats=source_stats,
            target_stats=target_stats,
            discrepancies=discrepancies,
        )

    async def verify(self) -> MigrationVerification:
        """Compare source and target stats without migrating anything. Never raises."""
        try:
            source_stats = await self.source.get_stats()
            target_stats = await self.target.get_stats()
        except StoreError as e:
            return MigrationVerification(valid=False, differences=[f"Verification failed: {e}"])

        differences = compare_stats(source_stats, target_stats)
        return MigrationVerification(valid=not differences, differences=differences)

    async def _migrate_entries(self, total: int, errors: list[MigrationError]) -> int:
        document = parse_interchange(await self.source.export_data())
        entries = document.entries
        if not entries:
            raise ValidationError("No entries found in source export")

        logger.info(f"Migrating {len(entries)} entries")
        migrated = 0
        for start in range(0, len(entries), BATCH_SIZE):
            for entry in entries[start : start + BATCH_SIZE]:
                try:
                    await self.target.upsert(entry)
                except StoreError as e:
                    logger.error(f"Error migrating chunk {entry.id}: {e}")
                    errors.append(MigrationError(id=entry.id, error=str(e)))
                    continue

                migrated += 1
                if migrated % PROGRESS_INTERVAL == 0 or migrated == len(entries):
                    self._report(
                        MigrationProgress(
                            phase=MigrationPhase.MIGRATING,
                            total_chunks=total,
                            migrated_chunks=migrated,
                            percentage=round(migrated / total * 90),
                            current_chunk=entry.id,
                        )
                    )

            await asyncio.sleep(self.batch_delay)

        return migrated

    def _report(self, progress: MigrationProgress) -> None:
        if self.on_progress is not None:
            self.on_progress(progress)
