"""Video record persistence (SQLAlchemy ORM).

The worker calls ``ResultPersistence`` exactly once per terminal outcome:
``persist_success`` after the ladder and manifest are published, or
``persist_failure`` when a job fails for good. Each call is one transaction.
"""

from pathlib import Path
from typing import Dict, Optional, Sequence

import structlog
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .api.db_models import Base, Video, VideoStatus
from .errors import PersistenceError
from .models import VariantDescriptor

logger = structlog.get_logger(__name__)


def create_db_engine(database_url: str) -> Engine:
    """Engine for the video database; creates the tables if missing."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Sessions are opened from worker threads and API handlers
        connect_args["check_same_thread"] = False
        _ensure_sqlite_parent(database_url)
    engine = create_engine(database_url, connect_args=connect_args)
    Base.metadata.create_all(engine)
    return engine


def _ensure_sqlite_parent(database_url: str) -> None:
    path = make_url(database_url).database
    if path and path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)


class VideoRepository:
    """Create and read video records."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, expire_on_commit=False)

    def session(self) -> Session:
        return self._sessions()

    def create_video(self, video_id: str, owner_id: str, title: Optional[str] = None) -> Video:
        """Insert a record in status 'processing'."""
        try:
            with self.session() as session, session.begin():
                video = Video(
                    id=video_id,
                    owner_id=owner_id,
                    title=title,
                    status=VideoStatus.PROCESSING,
                    is_published=False,
                )
                session.add(video)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not create video {video_id}: {e}") from e
        return video

    def get_video(self, video_id: str) -> Optional[Video]:
        with self.session() as session:
            return session.get(Video, video_id)


class ResultPersistence:
    """Writes the terminal outcome of a transcode onto the video record."""

    def __init__(self, repository: VideoRepository):
        self.repository = repository

    def persist_success(
        self,
        video_id: str,
        manifest_url: str,
        variants: Sequence[VariantDescriptor],
        duration_s: float,
    ) -> None:
        """Publish the video: manifest URL, per-label variants and duration.

        Raises:
            PersistenceError: unknown video id or any database error
        """
        eager: Dict[str, dict] = {
            v.label: v.model_dump(include={"label", "width", "height", "bitrate_kbps", "url"})
            for v in variants
        }
        try:
            with self.repository.session() as session, session.begin():
                video = session.get(Video, video_id)
                if video is None:
                    raise PersistenceError(f"Video not found: {video_id}")
                video.status = VideoStatus.PUBLISHED
                video.is_published = True
                video.manifest_url = manifest_url
                video.variants = eager
                video.duration = int(round(duration_s))
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not publish video {video_id}: {e}") from e
        logger.info("video_published", video_id=video_id, variants=len(eager))

    def persist_failure(self, video_id: str) -> None:
        """Mark the video failed.

        Raises:
            PersistenceError: unknown video id or any database error
        """
        try:
            with self.repository.session() as session, session.begin():
                video = session.get(Video, video_id)
                if video is None:
                    raise PersistenceError(f"Video not found: {video_id}")
                video.status = VideoStatus.FAILED
                video.is_published = False
        except SQLAlchemyError as e:
            raise PersistenceError(f"Could not mark video {video_id} failed: {e}") from e
        logger.info("video_marked_failed", video_id=video_id)
