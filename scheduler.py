# scheduler.py
import threading
import traceback
from collections import deque
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional

from admission import AdmissionController
from intervals import IntervalError, reduce_silences
from media import EngineCancelled, EngineError, MediaEngine
from models import Job, JobState, JobStatus, utc_now
from retry import CANCELLED_MESSAGE, INTERNAL_MESSAGE, classify_failure
from storage import FileStorage


class InputError(Exception):
    """The input cannot be processed; no job is created."""


class JobCancelled(Exception):
    pass


def thread_runner(target, job):
    t = threading.Thread(target=target, args=(job,), name=f"job-{job.id}", daemon=True)
    t.start()


class Scheduler:
    """
    Owns the pending queue, the active set and every job record.

    All state transitions happen under one lock. Pipelines run outside it,
    one thread per active job, at most `max_concurrent_jobs` at a time.
    When a job finishes its slot is released and advance() is called right
    away, so the next queued job starts without polling.
    """

    def __init__(self, engine, files=None, max_concurrent_jobs=2, retry_budget=1,
                 merge_gap=2.0, max_silences=10, runner=None, clock=utc_now):
        self.engine = engine
        self.files = files
        self.retry_budget = retry_budget
        self.merge_gap = merge_gap
        self.max_silences = max_silences
        self._runner = runner or thread_runner
        self._clock = clock

        self._jobs: Dict[str, Job] = {}
        self._queue = deque()       # job ids, FIFO
        self._active = set()        # Job records in processing
        self._lock = threading.RLock()
        self._changed = threading.Condition(self._lock)
        self.admission = AdmissionController(max_concurrent_jobs, lambda: len(self._active))

    @classmethod
    def from_config(cls, db, files=None, engine=None, **overrides):
        """Build a scheduler from the config table; keyword overrides win when not None."""
        if files is None:
            files = FileStorage(db.get_config("video_storage_path", default="/tmp/videos"))
        if engine is None:
            engine = MediaEngine(
                silence_threshold=db.get_config("silence_threshold", default="-35dB"),
                silence_duration=float(db.get_config("silence_duration", default="0.5")),
                phase_timeout=float(db.get_config("phase_timeout_seconds", default="0")),
            )
        settings = {
            "max_concurrent_jobs": int(db.get_config("max_concurrent_jobs", default="2")),
            "retry_budget": int(db.get_config("retry_budget", default="1")),
            "merge_gap": float(db.get_config("merge_gap", default="2.0")),
            "max_silences": int(db.get_config("max_silences", default="10")),
        }
        settings.update({k: v for k, v in overrides.items() if v is not None})
        return cls(engine, files, **settings)

    # ---------------- Logging ----------------
    def _log_transition(self, job_id, old_state, new_state, extra=""):
        now = self._clock().isoformat()
        print(f"[{now}] Job {job_id}: {old_state} → {new_state} {extra}")

    # ---------------- Caller API ----------------
    def submit(self, video_id, input_path) -> Job:
        if self.files is not None and not self.files.path_exists(input_path):
            raise InputError(f"Input not found: {input_path}")
        if self.files is not None:
            output_path = self.files.resolve_output_path(video_id)
        else:
            src = Path(input_path)
            output_path = str(src.with_name(f"{src.stem}_cut.mp4"))

        now = self._clock()
        job = Job(id=video_id, input_path=input_path, output_path=output_path,
                  created_at=now, updated_at=now)
        with self._lock:
            previous = self._jobs.get(video_id)
            if previous is not None:
                self._detach(previous)
            self._jobs[video_id] = job
            self._queue.append(video_id)
            self._log_transition(video_id, "new", "queued", f"(queue length {len(self._queue)})")
            self._changed.notify_all()

        self.advance()
        return job

    def advance(self) -> Optional[str]:
        """Start the head of the queue if a slot is free. Returns the started job id."""
        with self._lock:
            if not self.admission.can_admit():
                return None
            job = None
            while self._queue and job is None:
                job = self._jobs.get(self._queue.popleft())
            if job is None:
                return None

            now = self._clock()
            job.state = JobState.PROCESSING
            job.progress = 0
            job.started_at = now
            job.touch(now)
            self._active.add(job)
            self._log_transition(job.id, "queued", "processing",
                                 f"(attempt {job.attempts + 1}/{self.retry_budget + 1}, "
                                 f"active {len(self._active)}/{self.admission.max_concurrent_jobs})")
            self._changed.notify_all()

        try:
            self._runner(self._run_job, job)
        except RuntimeError:
            # thread could not be started
            traceback.print_exc()
            self._fail(job, INTERNAL_MESSAGE, "could not start job runner")
            self._release(job)
            self.advance()
        return job.id

    def get_status(self, video_id) -> Optional[JobStatus]:
        with self._lock:
            job = self._jobs.get(video_id)
            return JobStatus.from_job(job) if job else None

    def cancel(self, video_id) -> bool:
        """
        Drop a job. A processing job is marked failed and its engine process
        is killed at the next poll; its result, if any, is discarded.
        """
        with self._lock:
            job = self._jobs.pop(video_id, None)
            if job is None:
                return False
            old_state = job.state.value
            self._detach(job)
            self._log_transition(video_id, old_state, "cancelled")
            self._changed.notify_all()
        return True

    def sweep(self, max_age_minutes=30) -> int:
        cutoff = self._clock() - timedelta(minutes=max_age_minutes)
        with self._lock:
            stale = [job_id for job_id, job in self._jobs.items()
                     if job.state.terminal and job.updated_at < cutoff]
            for job_id in stale:
                del self._jobs[job_id]
        return len(stale)

    def can_admit(self) -> bool:
        with self._lock:
            return self.admission.can_admit()

    def load(self) -> float:
        return self.admission.load()

    def list_jobs(self) -> List[JobStatus]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.created_at, reverse=True)
            return [JobStatus.from_job(j) for j in jobs]

    def counts(self) -> Dict[str, int]:
        with self._lock:
            counts = {state.value: 0 for state in JobState}
            for job in self._jobs.values():
                counts[job.state.value] += 1
            return counts

    def queue_position(self, video_id) -> Optional[int]:
        with self._lock:
            try:
                return self._queue.index(video_id) + 1
            except ValueError:
                return None

    def wait_idle(self, timeout=None) -> bool:
        """Block until nothing is queued or processing. False on timeout."""
        with self._changed:
            return self._changed.wait_for(lambda: not self._queue and not self._active, timeout)

    # ---------------- Pipeline ----------------
    def _run_job(self, job):
        try:
            result = self._pipeline(job)
        except (EngineCancelled, JobCancelled):
            print(f"[{self._clock().isoformat()}] Job {job.id}: pipeline stopped after cancel")
        except IntervalError:
            traceback.print_exc()
            self._fail(job, INTERNAL_MESSAGE, "invalid silence intervals")
        except EngineError as e:
            self._handle_failure(job, e.diagnostic())
        except Exception as e:
            traceback.print_exc()
            self._handle_failure(job, f"{type(e).__name__}: {e}")
        else:
            self._complete(job, result)
        finally:
            self._release(job)
            self.advance()

    def _pipeline(self, job):
        cancel = job.cancel_event

        # Phase 1: detection + reduction (0-50%)
        self._set_progress(job, 10)
        raw = self.engine.detect_silences(job.input_path, cancel=cancel)
        silences = reduce_silences(raw, self.merge_gap, self.max_silences)
        print(f"[{self._clock().isoformat()}] Job {job.id}: reduced {len(raw)} silences to {len(silences)}")
        self._set_progress(job, 50)
        if cancel.is_set():
            raise JobCancelled(job.id)

        # Phase 2: transformation (50-100%)
        return self.engine.remove_silences(job.input_path, job.output_path, silences, cancel=cancel)

    # ---------------- State transitions (lock held) ----------------
    def _is_current(self, job) -> bool:
        return self._jobs.get(job.id) is job and job.state == JobState.PROCESSING

    def _detach(self, job):
        """Take a record out of scheduling: dequeue it, or fail and signal it if processing."""
        try:
            self._queue.remove(job.id)
        except ValueError:
            pass
        if job.state == JobState.PROCESSING:
            job.state = JobState.FAILED
            job.error = CANCELLED_MESSAGE
            job.touch(self._clock())
            job.cancel_event.set()

    def _set_progress(self, job, progress):
        with self._lock:
            if self._is_current(job):
                job.progress = max(job.progress, progress)
                job.touch(self._clock())

    def _complete(self, job, result):
        with self._lock:
            self._active.discard(job)
            if not self._is_current(job):
                return
            job.state = JobState.COMPLETED
            job.progress = 100
            job.result = result
            job.error = None
            job.touch(self._clock())
            self._log_transition(job.id, "processing", "completed",
                                 f"(saved {result.time_saved:.1f}s, {result.percentage_saved:.1f}%)")
            self._changed.notify_all()

    def _fail(self, job, message, reason):
        with self._lock:
            self._active.discard(job)
            if not self._is_current(job):
                return
            job.state = JobState.FAILED
            job.error = message
            job.touch(self._clock())
            self._log_transition(job.id, "processing", "failed", f"({reason})")
            self._changed.notify_all()

    def _handle_failure(self, job, error_text):
        decision = classify_failure(error_text, job.attempts, self.retry_budget,
                                    paths=(job.input_path, job.output_path))
        lines = (error_text or "").strip().splitlines()
        first_line = lines[0] if lines else "unknown error"
        if not decision.retry:
            self._fail(job, decision.message, f"{decision.category}: {first_line}")
            return
        with self._lock:
            self._active.discard(job)
            if not self._is_current(job):
                return
            job.attempts += 1
            job.state = JobState.QUEUED
            job.progress = 0
            job.touch(self._clock())
            self._queue.append(job.id)
            self._log_transition(job.id, "processing", "queued",
                                 f"(temporary error, retrying attempt {job.attempts + 1}/{self.retry_budget + 1}: {first_line})")
            self._changed.notify_all()

    def _release(self, job):
        with self._lock:
            self._active.discard(job)
            self._changed.notify_all()
