"""
Job intake, tracking and lookup.

``RequestIntake`` creates the job record and hands it to a detached
``JobOrchestrator`` task held by the ``JobRegistry``; ``StatusQuery`` and
``ComicLookup`` only ever read what has been persisted.
"""
import asyncio
import logging
import time
from datetime import datetime
from typing import Any, Awaitable, Dict, List, Optional

from .image_stage import ImageStage
from .kv_storage import JobStore, get_store
from .llm import OpenAITextGenerator, TextGenerator
from .models import (
    DuplicateJobError,
    GenerationRequest,
    IN_PROGRESS_STATUSES,
    InvalidGenerationRequest,
    Job,
    JobFinishedError,
    JobStatus,
    utcnow,
)
from .orchestrator import JobOrchestrator
from .progress import ProgressReporter
from .settings import MAX_PANELS, STALE_JOB_AFTER_S
from .stability_client import ImageSynthesizer, StabilityImageSynthesizer
from .story_stage import StoryStage

logger = logging.getLogger(__name__)


class JobRegistry:
    """Tracks the one background task allowed per job id."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def start(self, job_id: str, coro: Awaitable[Any]) -> asyncio.Task:
        existing = self._tasks.get(job_id)
        if existing is not None and not existing.done():
            coro.close()
            raise RuntimeError(f"job {job_id} is already running")
        task = asyncio.create_task(coro, name=f"comic-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._discard(job_id, t))
        return task

    def _discard(self, job_id: str, task: asyncio.Task):
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    def __len__(self) -> int:
        return len(self._tasks)

    async def join(self, job_id: Optional[str] = None):
        """Wait for one job (or all tracked jobs) to finish."""
        if job_id is None:
            tasks = list(self._tasks.values())
        else:
            tasks = [self._tasks[job_id]] if job_id in self._tasks else []
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class RequestIntake:
    MAX_ID_ATTEMPTS = 5

    def __init__(self, store: JobStore, orchestrator: JobOrchestrator, registry: JobRegistry,
                 max_panels: int = MAX_PANELS):
        self.store = store
        self.orchestrator = orchestrator
        self.registry = registry
        self.max_panels = max_panels
        self._last_id = 0

    def _new_job_id(self) -> str:
        # creation time in ms, bumped so ids from the same millisecond stay unique
        now_ms = int(time.time() * 1000)
        self._last_id = max(now_ms, self._last_id + 1)
        return str(self._last_id)

    def validate(self, req: GenerationRequest):
        if not req.topic or not req.topic.strip():
            raise InvalidGenerationRequest("Please enter a topic for your comic")
        if req.panel_count > self.max_panels:
            raise InvalidGenerationRequest(f"A comic can have at most {self.max_panels} panels")

    async def submit_generation(self, req: GenerationRequest) -> str:
        self.validate(req)
        for _ in range(self.MAX_ID_ATTEMPTS):
            job = Job(
                job_id=self._new_job_id(),
                status=JobStatus.GENERATING_STORY,
                progress=0,
                current_step="Starting...",
                created_by=req.created_by,
            )
            try:
                await self.store.create(job.to_record())
                break
            except DuplicateJobError:
                logger.warning(f"Job id {job.job_id} already taken, retrying")
        else:
            raise DuplicateJobError("could not allocate a unique job id")

        logger.info(f"Starting comic job {job.job_id} for topic: {req.topic[:50]}...")
        self.registry.start(job.job_id, self.orchestrator.run(job.job_id, req))
        return job.job_id


class StatusQuery:
    def __init__(self, store: JobStore):
        self.store = store

    @staticmethod
    def comic_ref(job_id: str) -> str:
        return f"/v1/comics/{job_id}"

    async def query_status(self, job_id: str) -> Dict[str, Any]:
        record = await self.store.find_one(job_id)
        if not record:
            return {"status": "not_found"}
        if record.get("status") == JobStatus.COMPLETED.value:
            return {"status": JobStatus.COMPLETED.value, "redirect": self.comic_ref(job_id)}
        return {
            "status": record.get("status"),
            "progress": record.get("progress") or 0,
            "currentStep": record.get("current_step") or "Starting...",
        }


class ComicLookup:
    def __init__(self, store: JobStore):
        self.store = store

    async def get_comic(self, job_id: str) -> Optional[Job]:
        record = await self.store.find_one(job_id)
        return Job.model_validate(record) if record else None

    async def list_comics(self) -> List[Job]:
        records = await self.store.find(status=JobStatus.COMPLETED.value)
        comics = [Job.model_validate(r) for r in records]
        comics.sort(key=lambda j: j.created_at, reverse=True)
        return comics


async def reconcile_orphaned_jobs(store: JobStore, registry: JobRegistry,
                                  stale_after: float = STALE_JOB_AFTER_S) -> int:
    """Mark in-progress jobs that stopped updating as errored.

    Jobs running in this process, or updated within ``stale_after`` seconds
    (possibly by another worker sharing the store), are left alone.
    """
    reporter = ProgressReporter(store)
    now = utcnow()
    orphaned = 0
    for record in await store.find():
        job_id = record.get("job_id")
        if record.get("status") not in {s.value for s in IN_PROGRESS_STATUSES}:
            continue
        if registry.is_running(job_id):
            continue
        last_seen = _last_update(record)
        if last_seen is not None and (now - last_seen).total_seconds() < stale_after:
            continue
        message = "Interrupted by server restart"
        try:
            await reporter.advance(job_id, status=JobStatus.ERROR, error=message, current_step=message)
        except JobFinishedError:
            continue
        orphaned += 1
    if orphaned:
        logger.warning(f"Marked {orphaned} orphaned jobs as error")
    return orphaned


def _last_update(record: Dict[str, Any]) -> Optional[datetime]:
    for key in ("updated_at", "created_at"):
        value = record.get(key)
        if not value:
            continue
        try:
            # pydantic writes UTC as "Z", which fromisoformat only accepts from 3.11
            stamp = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except (AttributeError, ValueError):
            continue
        if stamp.tzinfo is None:
            stamp = stamp.replace(tzinfo=utcnow().tzinfo)
        return stamp
    return None


class ComicService:
    """Wires stores, collaborators and stages together."""

    def __init__(
        self,
        store: Optional[JobStore] = None,
        text_generator: Optional[TextGenerator] = None,
        image_synthesizer: Optional[ImageSynthesizer] = None,
        **image_stage_options: Any,
    ):
        self.store = store if store is not None else get_store()
        text_generator = text_generator or OpenAITextGenerator()
        image_synthesizer = image_synthesizer or StabilityImageSynthesizer()
        self.reporter = ProgressReporter(self.store)
        self.registry = JobRegistry()
        self.orchestrator = JobOrchestrator(
            StoryStage(text_generator),
            ImageStage(text_generator, image_synthesizer, self.reporter, **image_stage_options),
            self.reporter,
        )
        self.intake = RequestIntake(self.store, self.orchestrator, self.registry)
        self.status = StatusQuery(self.store)
        self.comics = ComicLookup(self.store)

    async def submit_generation(self, req: GenerationRequest) -> str:
        return await self.intake.submit_generation(req)

    async def query_status(self, job_id: str) -> Dict[str, Any]:
        return await self.status.query_status(job_id)

    async def reconcile(self, stale_after: float = STALE_JOB_AFTER_S) -> int:
        return await reconcile_orphaned_jobs(self.store, self.registry, stale_after)
