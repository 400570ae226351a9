"""
Queries over data records and evaluations used by the job handlers.

Sliced handlers walk records in `(created_at, id)` order. A chain passes the
position of the last record it attempted to its continuation, so records
that failed are not fetched again by the same chain; a new chain starts
from the beginning and retries them.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from uuid import UUID

from sqlalchemy import and_, exists, func, or_, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from labelops.v1.core.registries import CompletionResult
from labelops.v1.records.ingestion import ParsedRow
from labelops.v1.records.models import DataRecord, RecordEvaluation

logger = logging.getLogger(__name__)

RecordPosition = tuple[datetime, UUID]

_UPSERT_INSERTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def _after(position: RecordPosition | None) -> list:
    if position is None:
        return []
    created_at, record_id = position
    return [
        or_(
            DataRecord.created_at > created_at,
            and_(DataRecord.created_at == created_at, DataRecord.id > record_id),
        )
    ]


class RecordRepository:
    """Data access for records, embeddings and evaluations."""

    # Ingestion

    async def existing_external_ids(
        self,
        session: AsyncSession,
        project_id: str,
        record_type: str,
        external_ids: Iterable[str],
    ) -> set[str]:
        """Return the subset of `external_ids` already stored for the project."""
        ids = list({i for i in external_ids if i})
        if not ids:
            return set()

        result = await session.execute(
            select(DataRecord.external_id).where(
                DataRecord.project_id == project_id,
                DataRecord.record_type == record_type,
                DataRecord.external_id.in_(ids),
            )
        )
        return {row for row in result.scalars().all() if row is not None}

    async def add_records(
        self,
        session: AsyncSession,
        project_id: str,
        source: str,
        rows: list[ParsedRow],
    ) -> int:
        for row in rows:
            session.add(
                DataRecord(
                    project_id=project_id,
                    record_type=row.record_type,
                    content=row.content,
                    source=source,
                    external_id=row.external_id,
                    meta=row.metadata,
                )
            )
        await session.commit()
        return len(rows)

    # Vectorization

    def _unvectorized(self, project_id: str, after: RecordPosition | None) -> list:
        return [
            DataRecord.project_id == project_id,
            DataRecord.embedding.is_(None),
            *_after(after),
        ]

    async def count_unvectorized(
        self,
        session: AsyncSession,
        project_id: str,
        after: RecordPosition | None = None,
    ) -> int:
        result = await session.execute(
            select(func.count(DataRecord.id)).where(
                *self._unvectorized(project_id, after)
            )
        )
        return result.scalar() or 0

    async def fetch_unvectorized(
        self,
        session: AsyncSession,
        project_id: str,
        limit: int,
        after: RecordPosition | None = None,
    ) -> list[DataRecord]:
        result = await session.execute(
            select(DataRecord)
            .where(*self._unvectorized(project_id, after))
            .order_by(DataRecord.created_at.asc(), DataRecord.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def store_embedding(
        self,
        session: AsyncSession,
        record_id: UUID,
        vector: list[float],
        model_version: str,
    ) -> None:
        await session.execute(
            update(DataRecord)
            .where(DataRecord.id == record_id)
            .values(embedding=vector, embedding_model=model_version)
            .execution_options(synchronize_session=False)
        )

    # Evaluation

    def _unevaluated(
        self, project_id: str, model_id: str, after: RecordPosition | None
    ) -> list:
        return [
            DataRecord.project_id == project_id,
            ~exists().where(
                RecordEvaluation.record_id == DataRecord.id,
                RecordEvaluation.model_id == model_id,
            ),
            *_after(after),
        ]

    async def count_unevaluated(
        self,
        session: AsyncSession,
        project_id: str,
        model_id: str,
        after: RecordPosition | None = None,
    ) -> int:
        result = await session.execute(
            select(func.count(DataRecord.id)).where(
                *self._unevaluated(project_id, model_id, after)
            )
        )
        return result.scalar() or 0

    async def fetch_unevaluated(
        self,
        session: AsyncSession,
        project_id: str,
        model_id: str,
        limit: int,
        after: RecordPosition | None = None,
    ) -> list[DataRecord]:
        result = await session.execute(
            select(DataRecord)
            .where(*self._unevaluated(project_id, model_id, after))
            .order_by(DataRecord.created_at.asc(), DataRecord.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def save_evaluation(
        self,
        session: AsyncSession,
        record_id: UUID,
        model_id: str,
        realism: int,
        quality: int,
        usage: CompletionResult,
    ) -> None:
        """
        Insert or overwrite the evaluation of a record by a model.

        One upsert statement, so two workers scoring the same record never
        collide on the `(record_id, model_id)` constraint; the later score wins.
        """
        insert = _UPSERT_INSERTS[session.get_bind().dialect.name]
        scores = {
            "realism_score": realism,
            "quality_score": quality,
            "prompt_tokens": usage.prompt_tokens,
            "completion_tokens": usage.completion_tokens,
            "total_tokens": usage.total_tokens,
        }
        statement = insert(RecordEvaluation).values(
            record_id=record_id, model_id=model_id, **scores
        )
        await session.execute(
            statement.on_conflict_do_update(
                index_elements=[RecordEvaluation.record_id, RecordEvaluation.model_id],
                set_=scores,
            )
        )
        await session.commit()

    async def get_evaluation(
        self, session: AsyncSession, record_id: UUID, model_id: str
    ) -> RecordEvaluation | None:
        result = await session.execute(
            select(RecordEvaluation)
            .where(
                RecordEvaluation.record_id == record_id,
                RecordEvaluation.model_id == model_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def count_evaluations(
        self, session: AsyncSession, project_id: str, model_id: str
    ) -> int:
        result = await session.execute(
            select(func.count(RecordEvaluation.id))
            .join(DataRecord, DataRecord.id == RecordEvaluation.record_id)
            .where(
                DataRecord.project_id == project_id,
                RecordEvaluation.model_id == model_id,
            )
        )
        return result.scalar() or 0
