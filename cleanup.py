# cleanup.py
import threading
from datetime import datetime, timezone


class Janitor:
    """Periodically drops old job records and old video files."""

    def __init__(self, scheduler, files, job_max_age_minutes=30, file_max_age_minutes=15,
                 interval=300.0, stop_event=None):
        self.scheduler = scheduler
        self.files = files
        self.job_max_age_minutes = job_max_age_minutes
        self.file_max_age_minutes = file_max_age_minutes
        self.interval = interval
        self.stop_event = stop_event or threading.Event()

    def run(self):
        # first pass right away, then every `interval` seconds
        while True:
            self.run_once()
            if self.stop_event.wait(self.interval):
                break

    def run_once(self):
        now = datetime.now(timezone.utc).isoformat()
        print(f"[{now}] [cleanup] Starting cleanup pass")
        try:
            deleted = self.files.cleanup_old_files(self.file_max_age_minutes)
        except OSError as e:
            print(f"[{now}] [cleanup] Failed to clean up files: {e}")
            deleted = 0
        cleared = self.scheduler.sweep(self.job_max_age_minutes)
        print(f"[{now}] [cleanup] Deleted {deleted} old files, cleared {cleared} old jobs")
        return deleted, cleared

    def start(self):
        t = threading.Thread(target=self.run, name="janitor", daemon=True)
        t.start()
        return t

    def stop(self):
        self.stop_event.set()
