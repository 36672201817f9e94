# models.py
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


@dataclass
class VideoMetadata:
    duration: float  # seconds
    codec: str
    width: int
    height: int
    bitrate: int
    size: int  # bytes


@dataclass
class ProcessingResult:
    output_path: str
    original_duration: float
    final_duration: float
    time_saved: float
    percentage_saved: float
    silences_removed: int

    def to_dict(self):
        return {
            "outputPath": self.output_path,
            "originalDuration": self.original_duration,
            "finalDuration": self.final_duration,
            "timeSaved": self.time_saved,
            "percentageSaved": self.percentage_saved,
            "silencesRemoved": self.silences_removed,
        }


# eq=False: records are tracked by identity in the scheduler's active set
@dataclass(eq=False)
class Job:
    id: str
    input_path: str
    output_path: str
    state: JobState = JobState.QUEUED
    progress: int = 0
    attempts: int = 0   # re-queues so far
    error: Optional[str] = None
    result: Optional[ProcessingResult] = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False)

    def touch(self, now: Optional[datetime] = None):
        self.updated_at = now or utc_now()


STATUS_MESSAGES = {
    JobState.QUEUED: "Vidéo en file d'attente...",
    JobState.COMPLETED: "Traitement terminé avec succès !",
    JobState.FAILED: "Le traitement a échoué",
}


def status_message(job: Job) -> str:
    if job.state == JobState.PROCESSING:
        if job.progress < 50:
            return "Détection des silences en cours..."
        return "Suppression des silences en cours..."
    return STATUS_MESSAGES.get(job.state, "")


@dataclass(frozen=True)
class JobStatus:
    video_id: str
    status: JobState
    progress: int
    message: str
    attempts: int
    error: Optional[str]
    result: Optional[ProcessingResult]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobStatus":
        return cls(
            video_id=job.id,
            status=job.state,
            progress=job.progress,
            message=status_message(job),
            attempts=job.attempts,
            error=job.error,
            result=job.result,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    def to_dict(self):
        return {
            "videoId": self.video_id,
            "status": self.status.value,
            "progress": self.progress,
            "message": self.message,
            "attempts": self.attempts,
            "error": self.error,
            "result": self.result.to_dict() if self.result else None,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
