# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Ingestion path for RepoScope.

``IngestionPipeline`` drives Segmenter -> EmbeddingOrchestrator -> IndexWriter
for one repository snapshot. Per-file and per-chunk failures are recorded in
the ``IngestionSummary`` and never abort the run; only cancellation stops it
early.
"""

import asyncio
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from time import perf_counter
from typing import Any, Callable, Optional, Sequence

from .analysis.languages import detect_language, is_binary_content
from .analysis.segmenter import Segmenter
from .concurrency import check_cancelled, run_cancellable
from .errors import IndexStoreError, OperationCancelled, SegmentationError
from .models import Chunk, IngestionSummary, RepositorySnapshot, SnapshotFile
from .orchestrator import EmbeddingOrchestrator
from .storage.metadata import RevisionStore
from .storage.vector import VectorStore

logger = logging.getLogger(__name__)

# Bytes of each file inspected for language sniffing.
LANGUAGE_SAMPLE_BYTES = 4096


def chunk_to_row(chunk: Chunk, revision: str, repo_name: str = "") -> dict[str, Any]:
    """Vector store row for an embedded chunk of ``repo_name``."""
    if chunk.embedding is None:
        raise ValueError(f"Chunk {chunk.file_path}:{chunk.start_line} has no embedding")
    ref = chunk.ref()
    return {
        "id": hashlib.sha256(f"{repo_name}:{ref.row_id}".encode("utf-8")).hexdigest(),
        "vector": chunk.embedding,
        "file_path": chunk.file_path,
        "start_line": chunk.start_line,
        "end_line": chunk.end_line,
        "part": chunk.part,
        "language": chunk.language,
        "chunk_kind": chunk.chunk_kind.value,
        "content_hash": chunk.content_hash,
        "content": chunk.text,
        "repo_name": repo_name,
        "revision": revision,
        "last_updated": datetime.now(),
    }


@dataclass
class WriteReport:
    written: int = 0
    failed_batches: int = 0
    errors: list[str] = field(default_factory=list)


class IndexWriter:
    """Batched, idempotent upserts plus revision bookkeeping."""

    def __init__(
        self,
        store: VectorStore,
        revisions: Optional[RevisionStore] = None,
        batch_size: int = 256,
    ):
        self.store = store
        self.revisions = revisions
        self.batch_size = batch_size

    async def write_batch(self, batch_index: int, rows: list[dict[str, Any]]) -> int:
        """Write one batch; raises ``IndexStoreError`` when the store rejects it."""
        try:
            return await asyncio.to_thread(self.store.upsert, rows)
        except Exception as exc:
            raise IndexStoreError(
                f"Index batch {batch_index} ({len(rows)} rows) failed: {exc}",
                batch_index=batch_index,
            ) from exc

    async def upsert(
        self,
        chunks: Sequence[Chunk],
        revision: str,
        cancel: Optional[asyncio.Event] = None,
        repo_name: str = "",
    ) -> WriteReport:
        """Write embedded chunks in batches; failed batches are reported, not raised.

        Chunks without an embedding are never written.
        """
        report = WriteReport()
        rows = [chunk_to_row(c, revision, repo_name) for c in chunks if c.has_embedding]
        for batch_index, start in enumerate(range(0, len(rows), self.batch_size)):
            # Committed batches stay committed; nothing new starts after cancellation.
            check_cancelled(cancel)
            batch = rows[start : start + self.batch_size]
            try:
                report.written += await run_cancellable(
                    self.write_batch(batch_index, batch), cancel
                )
            except IndexStoreError as exc:
                logger.error("%s", exc)
                report.failed_batches += 1
                report.errors.append(str(exc))
        return report

    async def mark_revision_indexed(
        self,
        snapshot_id: str,
        repo_name: str,
        files: Sequence[tuple[str, str, int]],
        counts: dict[str, Any],
        status: str = "complete",
    ) -> None:
        if self.revisions is None:
            return
        await asyncio.to_thread(
            self.revisions.mark_revision_indexed, snapshot_id, repo_name, files, counts, status
        )

    async def delete_file(self, file_path: str, repo_name: Optional[str] = None) -> None:
        try:
            await asyncio.to_thread(self.store.delete_file, file_path, repo_name)
        except Exception as exc:
            raise IndexStoreError(f"Removing rows of {file_path} failed: {exc}") from exc

    async def delete_files(
        self,
        file_paths: Sequence[str],
        repo_name: Optional[str] = None,
        cancel: Optional[asyncio.Event] = None,
    ) -> WriteReport:
        """Drop the rows of each path; failures are reported, not raised."""
        report = WriteReport()
        for path in file_paths:
            check_cancelled(cancel)
            try:
                await run_cancellable(self.delete_file(path, repo_name), cancel)
            except IndexStoreError as exc:
                logger.error("%s", exc)
                report.failed_batches += 1
                report.errors.append(str(exc))
        return report

    async def count(self) -> int:
        return await asyncio.to_thread(self.store.count)


class IngestionPipeline:
    """Index one repository snapshot end to end."""

    def __init__(
        self,
        segmenter: Segmenter,
        orchestrator: EmbeddingOrchestrator,
        writer: IndexWriter,
        segment_workers: int = 1,
        language_detector: Callable[[str, Optional[str]], str] = detect_language,
    ):
        self.segmenter = segmenter
        self.orchestrator = orchestrator
        self.writer = writer
        self.segment_workers = max(1, segment_workers)
        self.language_detector = language_detector

    def _language_for(self, file: SnapshotFile) -> str:
        sample = file.content[:LANGUAGE_SAMPLE_BYTES].decode("utf-8", errors="ignore")
        return self.language_detector(file.path, sample)

    def _segment_one(self, file: SnapshotFile) -> list[Chunk]:
        language = self._language_for(file)
        try:
            return self.segmenter.segment_file(file, language)
        except SegmentationError:
            raise
        except Exception as exc:
            raise SegmentationError(file.path, str(exc)) from exc

    def _previous_files(
        self, snapshot: RepositorySnapshot
    ) -> tuple[dict[str, tuple[str, int]], bool]:
        """Files recorded for this repo's latest revision, and whether it completed."""
        revisions = self.writer.revisions
        if revisions is None:
            return {}, False
        previous = revisions.latest_revision(snapshot.repo_name)
        if not previous:
            return {}, False
        recorded = revisions.revision_files(previous["snapshot_id"], snapshot.repo_name)
        return recorded, revisions.is_revision_indexed(
            previous["snapshot_id"], snapshot.repo_name
        )

    @staticmethod
    def _unchanged_files(
        snapshot: RepositorySnapshot, recorded: dict[str, tuple[str, int]]
    ) -> dict[str, tuple[str, int]]:
        unchanged = {}
        for f in snapshot.files:
            entry = recorded.get(f.path)
            if entry is not None and entry[0] == f.sha256:
                unchanged[f.path] = entry
        return unchanged

    async def _segment_files(
        self,
        files: list[SnapshotFile],
        summary: IngestionSummary,
        cancel: Optional[asyncio.Event],
    ) -> dict[str, list[Chunk]]:
        loop = asyncio.get_running_loop()
        results: dict[str, list[Chunk]] = {}
        executor = ThreadPoolExecutor(max_workers=self.segment_workers)
        try:
            futures = [loop.run_in_executor(executor, self._segment_one, f) for f in files]
            outcomes = await run_cancellable(
                asyncio.gather(*futures, return_exceptions=True), cancel
            )
        finally:
            # Do not block the event loop on workers still running after cancellation.
            executor.shutdown(wait=False, cancel_futures=True)

        for file, outcome in zip(files, outcomes):
            if isinstance(outcome, SegmentationError):
                logger.warning("%s", outcome)
                summary.files_skipped += 1
                summary.segmentation_errors += 1
                summary.skipped_files.append(file.path)
                continue
            if isinstance(outcome, BaseException):
                raise outcome
            summary.files_segmented += 1
            results[file.path] = outcome
        return results

    async def ingest(
        self,
        snapshot: RepositorySnapshot,
        cancel: Optional[asyncio.Event] = None,
        force: bool = False,
    ) -> IngestionSummary:
        """Segment, embed and index ``snapshot``.

        Files unchanged since the last complete revision are skipped unless
        ``force`` is set. Earlier rows of every other recorded or re-segmented
        path are dropped before the new rows are written. Cancellation returns
        a summary with ``cancelled``.
        """
        started = perf_counter()
        summary = IngestionSummary(revision=snapshot.revision, repo_name=snapshot.repo_name)
        summary.files_seen = len(snapshot.files)
        logger.info(
            "Ingesting %s at revision %s (%d files)",
            snapshot.repo_name,
            snapshot.revision[:12],
            len(snapshot.files),
        )

        recorded, complete = await asyncio.to_thread(self._previous_files, snapshot)
        unchanged = {} if force or not complete else self._unchanged_files(snapshot, recorded)
        to_segment: list[SnapshotFile] = []
        for f in snapshot.files:
            if is_binary_content(f.path, f.content[:512]):
                summary.files_skipped += 1
                summary.skipped_files.append(f.path)
                continue
            if f.path in unchanged:
                summary.files_unchanged += 1
                continue
            to_segment.append(f)

        logger.info(
            "Ingest scan summary: seen=%d to_segment=%d unchanged=%d skipped=%d",
            summary.files_seen,
            len(to_segment),
            summary.files_unchanged,
            summary.files_skipped,
        )

        try:
            check_cancelled(cancel)
            per_file = await self._segment_files(to_segment, summary, cancel)
            chunks = [c for file_chunks in per_file.values() for c in file_chunks]
            summary.chunks_total = len(chunks)

            embed_report = await self.orchestrator.embed_chunks(chunks, cancel)
            summary.chunks_cached = embed_report.cached
            summary.chunks_embedded = embed_report.embedded
            summary.chunks_failed = embed_report.failed
            summary.provider_calls = embed_report.provider_calls

            # Rows of re-segmented and vanished files are replaced, not accumulated.
            present = {f.path for f in snapshot.files}
            stale = sorted((set(recorded) - set(unchanged)) | {f.path for f in to_segment})
            summary.files_removed = sum(1 for path in recorded if path not in present)
            delete_report = await self.writer.delete_files(stale, snapshot.repo_name, cancel)

            write_report = await self.writer.upsert(
                chunks, snapshot.revision, cancel, repo_name=snapshot.repo_name
            )
            summary.chunks_written = write_report.written
            summary.index_batches_failed = (
                delete_report.failed_batches + write_report.failed_batches
            )

            check_cancelled(cancel)
            files = [
                (f.path, f.sha256, len(per_file[f.path]))
                for f in to_segment
                if f.path in per_file
            ]
            files.extend((path, h, n) for path, (h, n) in unchanged.items())
            summary.duration_seconds = perf_counter() - started
            await self.writer.mark_revision_indexed(
                snapshot.revision,
                snapshot.repo_name,
                files,
                counts=_summary_counts(summary),
                status=summary.status,
            )
        except OperationCancelled:
            summary.cancelled = True
            logger.warning(
                "Ingestion of %s cancelled after %d chunks written",
                snapshot.repo_name,
                summary.chunks_written,
            )

        summary.duration_seconds = perf_counter() - started
        logger.info(
            "Ingested %s: status=%s files=%d segmented=%d skipped=%d chunks=%d "
            "cached=%d embedded=%d failed=%d written=%d removed=%d failed_batches=%d "
            "provider_calls=%d in %.1fs",
            snapshot.repo_name,
            summary.status,
            summary.files_seen,
            summary.files_segmented,
            summary.files_skipped,
            summary.chunks_total,
            summary.chunks_cached,
            summary.chunks_embedded,
            summary.chunks_failed,
            summary.chunks_written,
            summary.files_removed,
            summary.index_batches_failed,
            summary.provider_calls,
            summary.duration_seconds,
        )
        return summary


def _summary_counts(summary: IngestionSummary) -> dict[str, Any]:
    data = summary.to_dict()
    data.pop("skipped_files", None)
    return data
