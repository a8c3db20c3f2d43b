from __future__ import annotations

import re
import shutil
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import structlog
from fastapi import FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from vod_transcoder.errors import DuplicateJobError, JobNotFoundError, PersistenceError
from vod_transcoder.service import Services

logger = structlog.get_logger(__name__)

# Video ids name directories on disk
_VIDEO_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def create_app(services: Services) -> FastAPI:
    """HTTP surface for uploads, job status and queue stats."""
    storage = services.config.storage
    upload_dir = Path(storage.upload_dir)
    upload_dir.mkdir(parents=True, exist_ok=True)
    output_root = Path(storage.output_root)
    output_root.mkdir(parents=True, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        services.close()

    app = FastAPI(title="vod-transcoder", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # For dev
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(DuplicateJobError)
    async def duplicate_job_handler(request: Request, exc: DuplicateJobError):
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "detail": {
                    "code": "JOB_IN_FLIGHT",
                    "message": str(exc),
                    "videoId": exc.video_id,
                    "jobId": exc.job_id,
                }
            },
        )

    @app.get("/")
    async def root():
        return {"message": "vod-transcoder API", "docs": "/docs", "health": "/health"}

    @app.get("/health")
    async def health_check():
        return {"status": "ok"}

    @app.post("/videos", status_code=status.HTTP_202_ACCEPTED)
    def upload_video(
        file: UploadFile = File(...),
        title: str = Form(...),
        owner_id: str = Form(...),
        video_id: Optional[str] = Form(None),
    ):
        """Store the upload, create the video record and enqueue the transcode.

        Passing an existing ``video_id`` re-transcodes that record; it is
        rejected with 409 while a job for the video is still in flight.
        """
        if video_id is not None and not _VIDEO_ID_RE.match(video_id):
            raise HTTPException(status_code=422, detail="Invalid video id")
        video_id = video_id or uuid.uuid4().hex
        ext = Path(file.filename or "").suffix
        source_path = upload_dir / f"{video_id}-{uuid.uuid4().hex[:8]}{ext}"

        with open(source_path, "wb") as buffer:
            shutil.copyfileobj(file.file, buffer)

        try:
            if services.videos.get_video(video_id) is None:
                services.videos.create_video(video_id, owner_id, title)
            job_id = services.transcoder.submit(
                str(source_path), video_id=video_id, uploader_id=owner_id, title=title
            )
        except PersistenceError as e:
            source_path.unlink(missing_ok=True)
            raise HTTPException(status_code=500, detail=str(e))
        except DuplicateJobError:
            source_path.unlink(missing_ok=True)
            raise
        logger.info("upload_accepted", video_id=video_id, job_id=job_id)
        return {"videoId": video_id, "jobId": job_id}

    @app.get("/jobs/{job_id}")
    def get_job(job_id: str):
        try:
            return services.transcoder.get_job_status(job_id)
        except JobNotFoundError:
            raise HTTPException(status_code=404, detail="Job not found")

    @app.get("/videos/{video_id}")
    def get_video(video_id: str):
        video = services.videos.get_video(video_id)
        if video is None:
            raise HTTPException(status_code=404, detail="Video not found")
        return video.to_dict()

    @app.get("/queue/stats")
    def queue_stats():
        return services.transcoder.stats()

    # Serves the stored manifest and variant URLs. Mounted after the routes
    # so GET /videos/<videoId> still reaches the record endpoint.
    app.mount(
        storage.public_url_prefix.rstrip("/"),
        StaticFiles(directory=str(output_root)),
        name="published",
    )

    return app
