# admission.py
import os
from typing import Callable


class AdmissionController:
    """Concurrency ceiling for the scheduler, plus an advisory host-load reading."""

    def __init__(self, max_concurrent_jobs: int, active_count: Callable[[], int]):
        if max_concurrent_jobs < 1:
            raise ValueError(f"max_concurrent_jobs must be >= 1, got {max_concurrent_jobs}")
        self.max_concurrent_jobs = max_concurrent_jobs
        self._active_count = active_count

    def can_admit(self) -> bool:
        return self._active_count() < self.max_concurrent_jobs

    def load(self) -> float:
        """
        1-minute load average as a percentage of the CPU count.
        Falls back to active/ceiling when the host does not expose a load average.
        """
        try:
            load1, _, _ = os.getloadavg()
            cpus = os.cpu_count() or 1
            return (load1 / cpus) * 100
        except (AttributeError, OSError):
            return (self._active_count() / self.max_concurrent_jobs) * 100
