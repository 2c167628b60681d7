import asyncio, logging, traceback
from datetime import datetime
from typing import Optional
from langgraph.graph import StateGraph, END
from pydantic import BaseModel
from .image_stage import ImageStage
from .models import GenerationRequest, ImageSet, JobFinishedError, JobStatus, Story, utcnow
from .progress import ProgressReporter
from .story_stage import StoryStage

logger = logging.getLogger(__name__)

STORY_PROGRESS = 10
IMAGES_PROGRESS = 30


class ComicState(BaseModel):
    job_id: str
    request: GenerationRequest
    story: Optional[Story] = None
    images: Optional[ImageSet] = None
    error: Optional[str] = None
    completed_at: Optional[datetime] = None


class JobOrchestrator:
    """Drives one job through story -> images -> completed, or to error.

    Each transition is a single guarded ProgressReporter update, so a job
    that is already completed or errored is never moved again. ``run``
    never raises an Exception: anything unexpected becomes an ``error``
    status.
    """

    def __init__(self, story_stage: StoryStage, image_stage: ImageStage, reporter: ProgressReporter):
        self.story_stage = story_stage
        self.image_stage = image_stage
        self.reporter = reporter
        self.graph = self._build_graph()

    async def _fail(self, job_id: str, message: str):
        logger.error(f"Job {job_id} failed: {message}")
        await self.reporter.advance(job_id, status=JobStatus.ERROR, error=message, current_step=message)

    async def node_story(self, state: ComicState) -> dict:
        job_id = state.job_id
        await self.reporter.advance(
            job_id,
            status=JobStatus.GENERATING_STORY,
            progress=STORY_PROGRESS,
            current_step="Generating story...",
        )
        logger.info(f"Generating comic story for job {job_id}")
        result = await self.story_stage.generate(state.request)
        if result.story is None:
            message = f"Failed to generate story: {result.reason}"
            await self._fail(job_id, message)
            return {"error": message}
        return {"story": result.story}

    async def node_images(self, state: ComicState) -> dict:
        job_id = state.job_id
        await self.reporter.advance(
            job_id,
            status=JobStatus.GENERATING_IMAGES,
            progress=IMAGES_PROGRESS,
            current_step="Generating images...",
            story=state.story,
        )
        logger.info(f"Generating {len(state.story.scenes)} panels for job {job_id}")
        result = await self.image_stage.generate(
            state.story.scenes, state.request.style, state.request.genre, job_id
        )
        if result.images is None:
            message = f"Failed to generate images: {result.reason}"
            await self._fail(job_id, message)
            return {"error": message}
        return {"images": result.images}

    async def node_finalize(self, state: ComicState) -> dict:
        completed_at = utcnow()
        await self.reporter.advance(
            state.job_id,
            status=JobStatus.COMPLETED,
            progress=100,
            current_step="Complete!",
            story=state.story,
            images=state.images,
            completed_at=completed_at,
        )
        failed = sum(1 for p in state.images.panels if not p.ok)
        logger.info(f"Comic generation completed for job {state.job_id} ({failed} failed panels)")
        return {"completed_at": completed_at}

    @staticmethod
    def _route_after_story(state: ComicState) -> str:
        return END if state.error else "images"

    @staticmethod
    def _route_after_images(state: ComicState) -> str:
        return END if state.error else "finalize"

    def _build_graph(self):
        g = StateGraph(ComicState)
        g.add_node("story", self.node_story)
        g.add_node("images", self.node_images)
        g.add_node("finalize", self.node_finalize)
        g.set_entry_point("story")
        g.add_conditional_edges("story", self._route_after_story, {"images": "images", END: END})
        g.add_conditional_edges("images", self._route_after_images, {"finalize": "finalize", END: END})
        g.add_edge("finalize", END)
        return g.compile()

    async def run(self, job_id: str, request: GenerationRequest):
        try:
            await self.graph.ainvoke(ComicState(job_id=job_id, request=request))
        except asyncio.CancelledError:
            logger.warning(f"Job {job_id} was cancelled")
            await self._record_failure(job_id, "Generation was interrupted")
            raise
        except JobFinishedError as e:
            # finished elsewhere (e.g. reconciled as orphaned); leave that status alone
            logger.warning(f"Stopping job {job_id}: {e}")
        except Exception as e:
            logger.error(f"Error generating comic {job_id}: {e!r}")
            logger.error(f"Full traceback: {traceback.format_exc()}")
            await self._record_failure(job_id, str(e) or e.__class__.__name__)

    async def _record_failure(self, job_id: str, message: str):
        try:
            await self._fail(job_id, message)
        except Exception as persist_error:
            # The job stays in its last persisted state
            logger.error(f"Could not record failure for job {job_id}: {persist_error!r}")
