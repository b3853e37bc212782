"""
Extraction Queue: background memory extraction off the request path.

Requests enqueue an ``ExtractionTask`` and return immediately. Worker tasks
pull from an asyncio queue, each opening its own database session, and run
the memory extraction service. Every task has a job row that records its
outcome, so failures are visible without anyone awaiting the work.

The job tracker also gates submission: a conversation that already has a
completed extraction (or one in flight) is not queued again.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from readmind.config import settings
from readmind.db.database import async_session_maker
from readmind.db.models import ExtractionJob, ExtractionJobStatus
from readmind.errors import StoreFailure
from readmind.logging_config import set_request_context
from readmind.services.embedding_service import EmbeddingService
from readmind.services.llm_service import LLMService
from readmind.services.memory_extractor import ExtractionResult, MemoryExtractionService
from readmind.services.vector_store import VectorStore

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (ExtractionJobStatus.PENDING.value, ExtractionJobStatus.PROCESSING.value)
INTERRUPTED = "interrupted before completion"

@dataclass
class ExtractionTask:
    """One unit of background work."""
    job_id: str
    owner_id: str
    conversation_id: str
    messages: List[Dict[str, str]] = field(default_factory=list)
    document_title: Optional[str] = None
    document_id: Optional[str] = None
    note_ids: Optional[List[str]] = None
    from_notes: bool = False

class ExtractionJobTracker:
    """Job-status storage for conversation extractions."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.store = VectorStore(db)

    async def has_completed_extraction(self, conversation_id: str, owner_id: Optional[str] = None) -> bool:
        stmt = select(ExtractionJob.id).where(
            ExtractionJob.conversation_id == conversation_id,
            ExtractionJob.status == ExtractionJobStatus.COMPLETED.value,
        )
        if owner_id is not None:
            stmt = stmt.where(ExtractionJob.owner_id == owner_id)
        return await self.store.first(stmt.limit(1)) is not None

    async def has_active_job(self, conversation_id: str, owner_id: str) -> bool:
        stmt = select(ExtractionJob.id).where(
            ExtractionJob.owner_id == owner_id,
            ExtractionJob.conversation_id == conversation_id,
            ExtractionJob.status.in_(ACTIVE_STATUSES),
        )
        return await self.store.first(stmt.limit(1)) is not None

    async def create(self, owner_id: str, conversation_id: str) -> ExtractionJob:
        return await self.store.add(ExtractionJob(
            owner_id=owner_id,
            conversation_id=conversation_id,
            status=ExtractionJobStatus.PENDING.value,
        ))

    async def get(self, job_id: str, owner_id: Optional[str] = None) -> Optional[ExtractionJob]:
        return await self.store.get(ExtractionJob, job_id, owner_id)

    async def _set(self, job_id: str, **values) -> Optional[ExtractionJob]:
        job = await self.store.get(ExtractionJob, job_id)
        if job is None:
            logger.warning(f"Extraction job {job_id} disappeared")
            return None
        for key, value in values.items():
            setattr(job, key, value)
        await self.store.commit()
        return job

    async def start(self, job_id: str) -> Optional[ExtractionJob]:
        return await self._set(job_id, status=ExtractionJobStatus.PROCESSING.value)

    async def complete(self, job_id: str, result: ExtractionResult) -> Optional[ExtractionJob]:
        return await self._set(
            job_id,
            status=ExtractionJobStatus.COMPLETED.value,
            entities_created=result.entities_created,
            relationships_created=result.relationships_created,
            error_message=None,
            completed_at=datetime.utcnow(),
        )

    async def fail(self, job_id: str, error: str) -> Optional[ExtractionJob]:
        return await self._set(
            job_id,
            status=ExtractionJobStatus.FAILED.value,
            error_message=(error or "unknown error")[:2000],
            completed_at=datetime.utcnow(),
        )

    async def fail_active(self, error: str) -> int:
        """Mark every pending or processing job as failed; returns how many."""
        try:
            result = await self.db.execute(
                update(ExtractionJob)
                .where(ExtractionJob.status.in_(ACTIVE_STATUSES))
                .values(
                    status=ExtractionJobStatus.FAILED.value,
                    error_message=error,
                    completed_at=datetime.utcnow(),
                )
            )
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            raise StoreFailure(str(e)) from e
        return result.rowcount or 0

class ExtractionQueue:
    """
    In-process work queue for memory extraction.

    Features:
    - Bounded asyncio queue with a fixed pool of worker tasks
    - One database session per task
    - Outcome recorded on the job row (completed / failed)
    - Jobs interrupted by a stop or a restart are marked failed
    """

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        workers: Optional[int] = None,
        maxsize: Optional[int] = None,
        embedding_service: Optional[EmbeddingService] = None,
        llm_service: Optional[LLMService] = None,
    ):
        self.session_factory = session_factory
        self.worker_count = workers or settings.extraction_workers
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize or settings.extraction_queue_size)
        self._workers: List[asyncio.Task] = []
        self.embedding_service = embedding_service
        self.llm_service = llm_service
        self._stats = {"enqueued": 0, "completed": 0, "failed": 0, "skipped": 0}

    @property
    def running(self) -> bool:
        return any(not w.done() for w in self._workers)

    @property
    def stats(self) -> Dict[str, int]:
        return {**self._stats, "pending": self._queue.qsize()}

    async def start(self) -> None:
        if self.running:
            return
        await self.recover_interrupted()
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"extraction-worker-{i}")
            for i in range(self.worker_count)
        ]
        logger.info(f"Extraction queue started with {self.worker_count} workers")

    async def stop(self) -> None:
        """Cancel the workers and fail every job they did not finish."""
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

        dropped = []
        while not self._queue.empty():
            dropped.append(self._queue.get_nowait())
            self._queue.task_done()
        for task in dropped:
            self._stats["failed"] += 1
            await self._record_failure(task.job_id, INTERRUPTED)
        logger.info(f"Extraction queue stopped, {len(dropped)} queued jobs dropped")

    async def recover_interrupted(self) -> int:
        """
        Fail job rows left pending or processing by a previous process.

        Queued tasks do not survive a restart, and an active job row blocks
        its conversation from being submitted again.
        """
        try:
            async with self.session_factory() as session:
                count = await ExtractionJobTracker(session).fail_active(INTERRUPTED)
        except StoreFailure as e:
            logger.error(f"Could not recover interrupted extraction jobs: {e}")
            return 0
        if count:
            logger.warning(f"Marked {count} interrupted extraction jobs as failed")
        return count

    async def join(self) -> None:
        """Wait until every queued task has been processed."""
        await self._queue.join()

    async def submit(
        self,
        owner_id: str,
        conversation_id: str,
        messages: List[Dict[str, str]],
        document_title: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> Optional[str]:
        """Queue a conversation for extraction. Returns the job id, or None when skipped."""
        return await self._submit(ExtractionTask(
            job_id="",
            owner_id=owner_id,
            conversation_id=conversation_id,
            messages=list(messages),
            document_title=document_title,
            document_id=document_id,
        ))

    async def submit_notes(
        self,
        owner_id: str,
        document_id: Optional[str] = None,
        note_ids: Optional[List[str]] = None,
    ) -> Optional[str]:
        """Queue extraction over an owner's notes. Notes can be re-extracted any time."""
        return await self._submit(ExtractionTask(
            job_id="",
            owner_id=owner_id,
            conversation_id=f"notes:{document_id or 'selection'}",
            document_id=document_id,
            note_ids=note_ids,
            from_notes=True,
        ))

    async def _submit(self, task: ExtractionTask) -> Optional[str]:
        async with self.session_factory() as session:
            tracker = ExtractionJobTracker(session)
            if not task.from_notes:
                if await tracker.has_completed_extraction(task.conversation_id, task.owner_id):
                    logger.info(f"Conversation {task.conversation_id} already extracted, skipping")
                    self._stats["skipped"] += 1
                    return None
                if await tracker.has_active_job(task.conversation_id, task.owner_id):
                    logger.info(f"Conversation {task.conversation_id} already queued, skipping")
                    self._stats["skipped"] += 1
                    return None
            job = await tracker.create(task.owner_id, task.conversation_id)
            task.job_id = job.id

            try:
                self._queue.put_nowait(task)
            except asyncio.QueueFull:
                await tracker.fail(job.id, "extraction queue full")
                logger.error(f"Extraction queue full, dropped job {job.id}")
                raise StoreFailure("extraction queue is full")

        self._stats["enqueued"] += 1
        logger.debug(f"Enqueued extraction job {task.job_id} for conversation {task.conversation_id}")
        return task.job_id

    async def _worker(self, index: int) -> None:
        while True:
            task = await self._queue.get()
            try:
                await self.run_task(task)
            finally:
                self._queue.task_done()

    async def run_task(self, task: ExtractionTask) -> Optional[ExtractionResult]:
        """Run one task and record its outcome. Only cancellation propagates."""
        set_request_context(request_id=task.job_id, owner_id=task.owner_id)
        try:
            async with self.session_factory() as session:
                tracker = ExtractionJobTracker(session)
                await tracker.start(task.job_id)
                service = MemoryExtractionService(
                    session,
                    embedding_service=self.embedding_service,
                    llm_service=self.llm_service,
                )
                if task.from_notes:
                    result = await service.extract_from_notes(
                        task.owner_id, document_id=task.document_id, note_ids=task.note_ids
                    )
                else:
                    result = await service.extract(
                        owner_id=task.owner_id,
                        conversation_id=task.conversation_id,
                        messages=task.messages,
                        document_title=task.document_title,
                        document_id=task.document_id,
                    )
                if result.success:
                    await tracker.complete(task.job_id, result)
                    self._stats["completed"] += 1
                else:
                    await tracker.fail(task.job_id, result.error or "extraction failed")
                    self._stats["failed"] += 1
                return result
        except asyncio.CancelledError:
            self._stats["failed"] += 1
            await self._record_failure(task.job_id, INTERRUPTED)
            raise
        except Exception as e:
            logger.exception(f"Extraction job {task.job_id} crashed: {e}")
            self._stats["failed"] += 1
            await self._record_failure(task.job_id, f"{type(e).__name__}: {e}")
            return None

    async def _record_failure(self, job_id: str, error: str) -> None:
        try:
            async with self.session_factory() as session:
                await ExtractionJobTracker(session).fail(job_id, error)
        except StoreFailure as e:
            logger.error(f"Could not record failure of job {job_id}: {e}")

# Singleton instance
_extraction_queue: Optional[ExtractionQueue] = None

def get_extraction_queue() -> ExtractionQueue:
    """Get the process-wide extraction queue."""
    global _extraction_queue
    if _extraction_queue is None:
        _extraction_queue = ExtractionQueue()
    return _extraction_queue

def set_extraction_queue(queue: Optional[ExtractionQueue]) -> None:
    """Replace the process-wide queue (used by the app lifespan and tests)."""
    global _extraction_queue
    _extraction_queue = queue
