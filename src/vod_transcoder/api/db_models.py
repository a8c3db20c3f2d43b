import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, Column, DateTime, Enum, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VideoStatus(enum.Enum):
    PROCESSING = "processing"
    PUBLISHED = "published"
    FAILED = "failed"


class Video(Base):
    __tablename__ = "videos"
    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    title = Column(String, nullable=True)
    status = Column(Enum(VideoStatus), default=VideoStatus.PROCESSING, nullable=False)
    manifest_url = Column(String, nullable=True)  # master playlist URL
    variants = Column(JSON, nullable=True)  # label -> variant descriptor
    duration = Column(Integer, nullable=True)  # whole seconds
    is_published = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "ownerId": self.owner_id,
            "title": self.title,
            "status": self.status.value if self.status else None,
            "videoFile": {"url": self.manifest_url, "eager": self.variants or {}},
            "duration": self.duration,
            "isPublished": self.is_published,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }
