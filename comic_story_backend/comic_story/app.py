from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

# Ensure .env is loaded before importing modules that initialize API clients
from .settings import has_all_keys, ALLOWED_ORIGINS
from .jobs import ComicService
from .models import GenerationRequest, InvalidGenerationRequest, Job, StorageError

logger = logging.getLogger(__name__)


def _gallery_entry(comic: Job) -> dict:
    cover = None
    if comic.images:
        cover = next((p.image_path for p in comic.images.panels if p.ok), None)
    return {
        "job_id": comic.job_id,
        "title": comic.story.title if comic.story else None,
        "summary": comic.story.summary if comic.story else None,
        "cover": cover,
        "created_at": comic.created_at.isoformat(),
    }


def create_app(service: Optional[ComicService] = None) -> FastAPI:
    service = service or ComicService()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await service.reconcile()
        except StorageError as e:
            logger.error(f"Could not reconcile orphaned jobs on startup: {e}")
        yield
        if len(service.registry):
            logger.warning(f"Shutting down with {len(service.registry)} comic jobs in flight")

    app = FastAPI(title="Comic Story Backend", lifespan=lifespan)
    app.state.service = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS or ["*"],
        allow_credentials=True,
        allow_methods=["POST", "GET", "OPTIONS"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        keys_ok = has_all_keys()
        logger.info(f"Health check: API keys present = {keys_ok}")
        return {"ok": True, "has_keys": keys_ok}

    @app.post("/v1/comics:generate")
    async def start_job(req: GenerationRequest):
        try:
            job_id = await service.submit_generation(req)
        except InvalidGenerationRequest as e:
            raise HTTPException(400, str(e))
        return {"job_id": job_id, "status": "generating_story"}

    @app.get("/v1/jobs/{job_id}")
    async def job_status(job_id: str):
        try:
            return await service.query_status(job_id)
        except StorageError as e:
            logger.error(f"Error checking status for job {job_id}: {e}")
            return {"status": "error", "error": "Failed to check status"}

    @app.get("/v1/comics")
    async def gallery():
        comics = await service.comics.list_comics()
        return {"comics": [_gallery_entry(c) for c in comics]}

    @app.get("/v1/comics/{job_id}")
    async def get_comic(job_id: str):
        comic = await service.comics.get_comic(job_id)
        if not comic:
            raise HTTPException(404, "comic not found")
        return comic.model_dump(mode="json")

    return app


app = create_app()
