"""
Job handlers for background processing.

This module contains job handlers that implement the JobHandler protocol
and are registered in the job registry. Sliced handlers (ingest, vectorize,
evaluate) process a bounded amount of work per job and continue the chain
through `JobContext.enqueue_continuation`.
"""

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from labelops.config.settings import Settings
from labelops.v1.ai.clients import AIServiceError
from labelops.v1.ai.scoring import (
    DEFAULT_SYSTEM_PROMPT,
    ScoreParseError,
    build_evaluation_prompt,
    parse_scores,
)
from labelops.v1.core.registries import (
    CompletionProvider,
    EmbeddingProvider,
    completion_registry,
    embedding_registry,
)
from labelops.v1.infra.jobs.continuation import ChainStep, next_chain_step
from labelops.v1.infra.jobs.schemas import (
    CleanupPayload,
    EvaluateBatchPayload,
    IngestPayload,
    JobCreate,
    RecordCursor,
    VectorizePayload,
)
from labelops.v1.infra.jobs.service import JobService
from labelops.v1.records.ingestion import (
    SKIP_DUPLICATE_ID,
    SKIP_EMPTY_ROW,
    SKIP_KEYWORD_MISMATCH,
    ParsedRow,
    matches_keywords,
    parse_row,
    read_csv_rows,
)
from labelops.v1.records.models import DataRecord
from labelops.v1.records.repository import RecordRepository

logger = logging.getLogger(__name__)


def _chain_result(
    step: ChainStep, result: dict[str, Any], remaining: int
) -> dict[str, Any]:
    result["remaining"] = remaining
    if step == ChainStep.DONE:
        result["chain_complete"] = True
    elif step == ChainStep.CONTINUE:
        result["continued"] = True
    else:
        result["stalled"] = True
    return result


class IngestHandler:
    """
    Load CSV rows into data records.

    Processes at most `ingest_rows_per_job` rows starting at `offset`, in
    chunks of `ingest_chunk_size`. Rows without content, rows not matching
    the keyword filter and rows whose task id already exists are skipped.
    Remaining rows go to a continuation with an advanced offset; a finished
    chain optionally enqueues vectorization of the project.
    """

    def __init__(self, settings: Settings, repository: RecordRepository | None = None):
        self.settings = settings
        self.repository = repository or RecordRepository()

    async def handle(
        self, session: AsyncSession, ctx: Any, payload: dict[str, Any]
    ) -> dict[str, Any] | None:
        data = IngestPayload.model_validate(payload)
        rows = read_csv_rows(data.csv_content)
        total_rows = len(rows)
        end = min(total_rows, data.offset + self.settings.ingest_rows_per_job)
        chunk_size = self.settings.ingest_chunk_size

        saved = 0
        skipped = 0
        skip_details: dict[str, int] = {}
        position = data.offset

        logger.info(
            "Starting ingest slice",
            extra={
                "project_id": data.project_id,
                "offset": data.offset,
                "end": end,
                "total_rows": total_rows,
            },
        )

        while position < end:
            if await ctx.is_cancelled():
                logger.info("Ingest cancelled", extra={"job_id": str(ctx.job_id)})
                return {
                    "cancelled": True,
                    "processed": position - data.offset,
                    "saved": saved,
                    "skipped": skipped,
                }

            chunk_end = min(position + chunk_size, end)
            chunk = rows[position:chunk_end]

            candidates: list[ParsedRow] = []
            for row_number, row in enumerate(chunk, start=position + 2):
                parsed = parse_row(row, row_number, data.record_type)
                if parsed is None:
                    skip_details[SKIP_EMPTY_ROW] = (
                        skip_details.get(SKIP_EMPTY_ROW, 0) + 1
                    )
                    continue
                if not matches_keywords(parsed.content, data.filter_keywords):
                    skip_details[SKIP_KEYWORD_MISMATCH] = (
                        skip_details.get(SKIP_KEYWORD_MISMATCH, 0) + 1
                    )
                    continue
                candidates.append(parsed)

            fresh = await self._drop_duplicates(session, data.project_id, candidates)
            duplicates = len(candidates) - len(fresh)
            if duplicates:
                skip_details[SKIP_DUPLICATE_ID] = (
                    skip_details.get(SKIP_DUPLICATE_ID, 0) + duplicates
                )

            await self.repository.add_records(session, data.project_id, data.source, fresh)
            saved += len(fresh)
            skipped += len(chunk) - len(fresh)
            position = chunk_end

            await ctx.report_progress(
                position, total_rows, f"Processed {position} of {total_rows} rows"
            )

        total_saved = data.saved_so_far + saved
        total_skipped = data.skipped_so_far + skipped
        result: dict[str, Any] = {
            "processed": position - data.offset,
            "saved": saved,
            "skipped": skipped,
            "skip_details": skip_details,
            "total_saved": total_saved,
            "total_skipped": total_skipped,
        }

        if position < total_rows:
            continuation = data.model_copy(
                update={
                    "offset": position,
                    "saved_so_far": total_saved,
                    "skipped_so_far": total_skipped,
                }
            )
            await ctx.enqueue_continuation(continuation)
            result["next_offset"] = position
            return _chain_result(ChainStep.CONTINUE, result, total_rows - position)

        if data.generate_embeddings and total_saved > 0:
            response = await ctx.enqueue(
                JobCreate(
                    payload=VectorizePayload(project_id=data.project_id),
                    priority=ctx.job.priority - 1,
                    dedupe_key=f"vectorize:{data.project_id}",
                )
            )
            result["vectorize_job_id"] = str(response.job_id)

        logger.info(
            "Ingest finished",
            extra={
                "project_id": data.project_id,
                "total_saved": total_saved,
                "total_skipped": total_skipped,
            },
        )
        return _chain_result(ChainStep.DONE, result, 0)

    async def _drop_duplicates(
        self, session: AsyncSession, project_id: str, rows: list[ParsedRow]
    ) -> list[ParsedRow]:
        """Remove rows whose task id exists already, or earlier in the chunk."""
        existing: dict[str, set[str]] = {}
        for record_type in {row.record_type for row in rows}:
            existing[record_type] = await self.repository.existing_external_ids(
                session,
                project_id,
                record_type,
                (row.external_id for row in rows if row.record_type == record_type),
            )

        fresh = []
        for row in rows:
            if row.external_id is None:
                fresh.append(row)
                continue
            seen = existing[row.record_type]
            if row.external_id in seen:
                continue
            seen.add(row.external_id)
            fresh.append(row)
        return fresh


def _cursor_after(record: DataRecord) -> RecordCursor:
    return RecordCursor(created_at=record.created_at, record_id=record.id)


class VectorizeHandler:
    """
    Embed records of a project that have no embedding.

    Fetches at most `vectorize_fetch_ceiling` records after the payload's
    cursor and embeds them in batches of `vectorize_batch_size`. A batch the
    embedding service rejects is logged and skipped, as is an individual
    empty vector. The continuation resumes after the last fetched record,
    so skipped records are retried by the next chain rather than this one.
    """

    def __init__(
        self,
        settings: Settings,
        repository: RecordRepository | None = None,
        provider: EmbeddingProvider | None = None,
    ):
        self.settings = settings
        self.repository = repository or RecordRepository()
        self.provider = provider

    def get_provider(self) -> EmbeddingProvider:
        return self.provider or embedding_registry.get(self.settings.embeddings.value)

    async def handle(
        self, session: AsyncSession, ctx: Any, payload: dict[str, Any]
    ) -> dict[str, Any] | None:
        data = VectorizePayload.model_validate(payload)
        provider = self.get_provider()
        model_version = provider.get_model_version()
        after = data.after.position if data.after else None

        remaining_before = await self.repository.count_unvectorized(
            session, data.project_id, after
        )
        if remaining_before == 0:
            return _chain_result(ChainStep.DONE, {"processed": 0}, 0)

        records = await self.repository.fetch_unvectorized(
            session, data.project_id, self.settings.vectorize_fetch_ceiling, after
        )
        batch_size = self.settings.vectorize_batch_size

        embedded = 0
        skipped = 0
        failed_batches = 0
        attempted = 0

        for start in range(0, len(records), batch_size):
            if await ctx.is_cancelled():
                logger.info("Vectorization cancelled", extra={"job_id": str(ctx.job_id)})
                return {"cancelled": True, "processed": embedded, "skipped": skipped}

            batch = records[start : start + batch_size]
            attempted += len(batch)
            try:
                vectors = await provider.embed([record.content for record in batch])
            except AIServiceError as e:
                failed_batches += 1
                logger.warning(
                    "Embedding batch failed; skipping",
                    extra={
                        "project_id": data.project_id,
                        "batch_start": start,
                        "batch_size": len(batch),
                        "error": str(e),
                    },
                )
                continue

            for record, vector in zip(batch, vectors):
                if not vector:
                    skipped += 1
                    continue
                await self.repository.store_embedding(
                    session, record.id, vector, model_version
                )
                embedded += 1
            await session.commit()

            await ctx.report_progress(
                attempted, len(records), f"Embedded {embedded} of {len(records)} records"
            )

        cursor = _cursor_after(records[-1]) if records else data.after
        remaining_after = await self.repository.count_unvectorized(
            session, data.project_id, cursor.position if cursor else None
        )
        step = next_chain_step(remaining_after, attempted)
        result = {
            "processed": embedded,
            "skipped": skipped,
            "failed_batches": failed_batches,
            "attempted": attempted,
            "model_version": model_version,
        }

        if step == ChainStep.CONTINUE:
            await ctx.enqueue_continuation(data.model_copy(update={"after": cursor}))
        elif step == ChainStep.STALLED:
            logger.warning(
                "Vectorization made no progress; chain stopped",
                extra={"project_id": data.project_id, "remaining": remaining_after},
            )

        return _chain_result(step, result, remaining_after)


class EvaluateBatchHandler:
    """
    Score unevaluated records of a project with one model.

    Evaluates at most `evaluation_batch_size` records after the payload's
    cursor, each with its own completion call, so one bad response only
    skips that record. The continuation resumes after the last record tried
    and the evaluation worker is self-triggered.
    """

    def __init__(
        self,
        settings: Settings,
        repository: RecordRepository | None = None,
        provider: CompletionProvider | None = None,
    ):
        self.settings = settings
        self.repository = repository or RecordRepository()
        self.provider = provider

    def get_provider(self) -> CompletionProvider:
        return self.provider or completion_registry.get(
            self.settings.completions.value
        )

    async def handle(
        self, session: AsyncSession, ctx: Any, payload: dict[str, Any]
    ) -> dict[str, Any] | None:
        data = EvaluateBatchPayload.model_validate(payload)
        provider = self.get_provider()
        system_prompt = data.system_prompt or DEFAULT_SYSTEM_PROMPT
        after = data.after.position if data.after else None

        remaining_before = await self.repository.count_unevaluated(
            session, data.project_id, data.model_id, after
        )
        if remaining_before == 0:
            return _chain_result(ChainStep.DONE, {"processed": 0}, 0)

        records = await self.repository.fetch_unevaluated(
            session,
            data.project_id,
            data.model_id,
            self.settings.evaluation_batch_size,
            after,
        )

        evaluated = 0
        failed = 0
        tokens_used = 0

        for index, record in enumerate(records, start=1):
            if await ctx.is_cancelled():
                logger.info("Evaluation cancelled", extra={"job_id": str(ctx.job_id)})
                return {"cancelled": True, "processed": evaluated, "failed": failed}

            try:
                completion = await provider.complete(
                    data.model_id, build_evaluation_prompt(record.content), system_prompt
                )
                scores = parse_scores(completion.content)
            except (AIServiceError, ScoreParseError) as e:
                failed += 1
                logger.warning(
                    "Record evaluation failed; skipping",
                    extra={
                        "record_id": str(record.id),
                        "model_id": data.model_id,
                        "error": str(e),
                    },
                )
                continue

            await self.repository.save_evaluation(
                session,
                record.id,
                data.model_id,
                scores.realism,
                scores.quality,
                completion,
            )
            evaluated += 1
            tokens_used += completion.total_tokens

            await ctx.report_progress(
                index, len(records), f"Evaluated {evaluated} of {len(records)} records"
            )

        cursor = _cursor_after(records[-1]) if records else data.after
        remaining_after = await self.repository.count_unevaluated(
            session, data.project_id, data.model_id, cursor.position if cursor else None
        )
        step = next_chain_step(remaining_after, len(records))
        result = {
            "processed": evaluated,
            "failed": failed,
            "attempted": len(records),
            "tokens_used": tokens_used,
            "model_id": data.model_id,
        }

        if step == ChainStep.CONTINUE:
            await ctx.enqueue_continuation(data.model_copy(update={"after": cursor}))
            ctx.trigger_worker("evaluation")
        elif step == ChainStep.STALLED:
            logger.warning(
                "Evaluation made no progress; chain stopped",
                extra={
                    "project_id": data.project_id,
                    "model_id": data.model_id,
                    "remaining": remaining_after,
                },
            )

        return _chain_result(step, result, remaining_after)


class CleanupHandler:
    """Delete terminal jobs older than the retention window."""

    def __init__(self, settings: Settings):
        self.settings = settings

    async def handle(
        self, session: AsyncSession, ctx: Any, payload: dict[str, Any]
    ) -> dict[str, Any] | None:
        data = CleanupPayload.model_validate(payload)
        retention_days = data.retention_days
        if retention_days is None:
            retention_days = self.settings.job_retention_days
        job_service = JobService(self.settings)

        if data.dry_run:
            candidates = await job_service.count_cleanup_candidates(
                session, retention_days
            )
            return {
                "dry_run": True,
                "would_delete": candidates,
                "retention_days": retention_days,
            }

        deleted_count = await job_service.cleanup(session, retention_days)

        logger.info(
            "Maintenance cleanup completed",
            extra={"deleted_count": deleted_count, "retention_days": retention_days},
        )

        return {
            "processed": deleted_count,
            "deleted_count": deleted_count,
            "retention_days": retention_days,
        }
