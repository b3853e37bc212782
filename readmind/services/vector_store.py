"""
Vector store adapter over the relational database.

On PostgreSQL similarity search runs in SQL through pgvector's cosine
distance operator (``<=>``). Other dialects (SQLite in development and
tests) load the owner's candidate rows and score them with numpy.

Similarity is ``1 - cosine distance`` clamped to [0, 1]. Admission compares
the unrounded similarity with ``min_score`` (inclusive); only the reported
score is rounded to four decimals. SQLAlchemy errors are wrapped in
``StoreFailure`` so callers only handle the engine's taxonomy.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Type

import numpy as np
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.db.models import Base, OWNER_SCOPED_MODELS
from readmind.errors import DuplicateRecord, StoreFailure

logger = logging.getLogger(__name__)

SCORE_PRECISION = 4
# Embeddings are stored as float32; a similarity this close to the threshold
# counts as equal to it.
SIMILARITY_TOLERANCE = 1e-6


@dataclass
class ScoredRecord:
    """A stored row with its similarity to the query vector"""
    record: Any
    score: float


def clamp_similarity(similarity: float) -> float:
    if similarity is None or np.isnan(similarity):
        return 0.0
    return min(1.0, max(0.0, float(similarity)))


def to_score(similarity: float) -> float:
    """Clamp a raw cosine similarity to [0, 1] and round it for reporting."""
    return round(clamp_similarity(similarity), SCORE_PRECISION)


def admits(similarity: float, min_score: float) -> bool:
    """Inclusive threshold check on the unrounded similarity."""
    return clamp_similarity(similarity) >= min_score - SIMILARITY_TOLERANCE


def primary_key(model: Type[Base]):
    return model.__mapper__.primary_key[0]


class VectorStore:
    """Owner-scoped reads, writes and similarity search for one session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    @property
    def dialect(self) -> str:
        return self.db.bind.dialect.name

    async def upsert(self, record: Base) -> Base:
        """Insert or update ``record`` by primary key and commit."""
        try:
            merged = await self.db.merge(record)
            await self.db.commit()
            return merged
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateRecord(str(e.orig)) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Upsert of {type(record).__name__} failed: {e}")
            raise StoreFailure(str(e)) from e

    async def add(self, record: Base) -> Base:
        """Insert a new row and commit."""
        try:
            self.db.add(record)
            await self.db.commit()
            return record
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateRecord(str(e.orig)) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.error(f"Insert of {type(record).__name__} failed: {e}")
            raise StoreFailure(str(e)) from e

    async def commit(self) -> None:
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise DuplicateRecord(str(e.orig)) from e
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreFailure(str(e)) from e

    async def get(self, model: Type[Base], record_id: str, owner_id: Optional[str] = None):
        """Fetch by primary key; ``None`` when missing or owned by someone else."""
        try:
            record = await self.db.get(model, record_id)
        except SQLAlchemyError as e:
            raise StoreFailure(str(e)) from e
        if record is None:
            return None
        if owner_id is not None and record.owner_id != owner_id:
            return None
        return record

    async def scalars(self, stmt) -> List[Any]:
        try:
            result = await self.db.execute(stmt)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StoreFailure(str(e)) from e

    async def first(self, stmt):
        try:
            result = await self.db.execute(stmt)
            return result.scalars().first()
        except SQLAlchemyError as e:
            raise StoreFailure(str(e)) from e

    def _conditions(
        self,
        model: Type[Base],
        owner_id: str,
        filters: Optional[Dict[str, Any]],
        exclude_ids: Optional[Iterable[str]],
    ) -> list:
        conditions = [model.owner_id == owner_id, model.embedding.isnot(None)]
        for name, value in (filters or {}).items():
            column = getattr(model, name)
            if value is None:
                continue
            if isinstance(value, (list, tuple, set, frozenset)):
                conditions.append(column.in_(list(value)))
            else:
                conditions.append(column == value)
        excluded = list(exclude_ids or [])
        if excluded:
            conditions.append(primary_key(model).notin_(excluded))
        return conditions

    async def similarity_search(
        self,
        model: Type[Base],
        vector: Sequence[float],
        owner_id: str,
        filters: Optional[Dict[str, Any]] = None,
        k: int = 10,
        min_score: float = 0.0,
        exclude_ids: Optional[Iterable[str]] = None,
    ) -> List[ScoredRecord]:
        """
        Top-``k`` rows of ``model`` owned by ``owner_id`` whose embedding is at
        least ``min_score`` similar to ``vector``, best first.

        ``filters`` maps column names to a value or a collection of values.
        Ties on score are broken by primary key so results are deterministic.
        """
        if k <= 0:
            return []

        conditions = self._conditions(model, owner_id, filters, exclude_ids)
        pk = primary_key(model)

        try:
            if self.dialect == "postgresql":
                distance = model.embedding.cosine_distance(list(vector))
                stmt = (
                    select(model, distance.label("distance"))
                    .where(*conditions)
                    .where(distance <= 1 - min_score + SIMILARITY_TOLERANCE)
                    .order_by(distance, pk)
                    .limit(k)
                )
                result = await self.db.execute(stmt)
                similarities = [(row[0], 1 - row.distance) for row in result.all()]
            else:
                result = await self.db.execute(select(model).where(*conditions))
                similarities = self._similarities_in_memory(vector, result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Similarity search over {model.__tablename__} failed: {e}")
            raise StoreFailure(str(e)) from e

        hits = [
            ScoredRecord(record=record, score=to_score(similarity))
            for record, similarity in similarities
            if admits(similarity, min_score)
        ]
        hits.sort(key=lambda s: (-s.score, str(getattr(s.record, pk.key))))
        return hits[:k]

    @staticmethod
    def _similarities_in_memory(vector: Sequence[float], rows: Sequence[Any]) -> List[Tuple[Any, float]]:
        if not rows:
            return []
        query = np.asarray(vector, dtype=float)
        matrix = np.vstack([np.asarray(r.embedding, dtype=float) for r in rows])
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            similarities = np.where(norms > 0, matrix @ query / norms, 0.0)
        return list(zip(rows, (float(s) for s in similarities)))

    async def delete_by_owner(self, model: Type[Base], owner_id: str) -> int:
        """Delete every ``model`` row of ``owner_id``; returns the row count."""
        try:
            result = await self.db.execute(delete(model).where(model.owner_id == owner_id))
            await self.db.commit()
            return result.rowcount or 0
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreFailure(str(e)) from e

    async def wipe_owner(self, owner_id: str) -> Dict[str, int]:
        """Delete all of an owner's data across every owner-scoped table."""
        counts = {}
        for model in OWNER_SCOPED_MODELS:
            counts[model.__tablename__] = await self.delete_by_owner(model, owner_id)
        logger.info(f"Wiped owner {owner_id}: {counts}")
        return counts
