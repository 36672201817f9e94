# tests/test_scheduler.py
"""
Scheduler lifecycle:
- the concurrency ceiling holds extra jobs in the queue, FIFO
- a finished job frees its slot for exactly one queued job
- transient failures are re-queued at the tail once, then fail
- permanent and internal failures fail at once
- cancel and overwrite never let a stale pipeline touch the current record
- sweep only removes old terminal jobs
"""

import pytest

import retry
from fakes import Clock, FakeEngine, ManualRunner, inline_runner, wait_until
from intervals import Interval
from media import EngineError
from models import JobState
from scheduler import InputError, Scheduler
from storage import FileStorage

Q, P, C, F = JobState.QUEUED, JobState.PROCESSING, JobState.COMPLETED, JobState.FAILED


def transient():
    return EngineError("silence detection exited with code 1", "Connection reset by peer")


def states(scheduler, ids):
    return [scheduler.get_status(i).status for i in ids]


# ---------------- Admission ----------------
def test_submitting_one_more_than_the_ceiling_queues_the_extra_job():
    runner = ManualRunner()
    s = Scheduler(FakeEngine(), max_concurrent_jobs=2, runner=runner)

    for i in range(3):
        s.submit(f"v{i}", f"/in/v{i}.mp4")

    assert states(s, ["v0", "v1", "v2"]) == [P, P, Q]
    assert len(runner.pending) == 2
    assert not s.can_admit()
    assert s.queue_position("v2") == 1


def test_completion_promotes_exactly_one_queued_job():
    runner = ManualRunner()
    s = Scheduler(FakeEngine(), max_concurrent_jobs=2, runner=runner)
    for i in range(4):
        s.submit(f"v{i}", f"/in/v{i}.mp4")

    runner.run_next()

    assert states(s, ["v0", "v1", "v2", "v3"]) == [C, P, P, Q]
    assert [job.id for _, job in runner.pending] == ["v1", "v2"]
    assert s.counts() == {"queued": 1, "processing": 2, "completed": 1, "failed": 0}


def test_queue_is_fifo():
    runner = ManualRunner()
    s = Scheduler(FakeEngine(), max_concurrent_jobs=1, runner=runner)
    for vid in ["a", "b", "c"]:
        s.submit(vid, f"/in/{vid}.mp4")

    order = [runner.run_next().id for _ in range(3)]
    assert order == ["a", "b", "c"]
    assert s.wait_idle(0)


def test_advance_is_a_noop_when_full_or_empty():
    runner = ManualRunner()
    s = Scheduler(FakeEngine(), max_concurrent_jobs=1, runner=runner)
    assert s.advance() is None

    s.submit("a", "/in/a.mp4")
    s.submit("b", "/in/b.mp4")
    assert s.advance() is None
    assert states(s, ["a", "b"]) == [P, Q]


def test_threads_run_up_to_the_ceiling_concurrently():
    engine = FakeEngine(gated=True)
    s = Scheduler(engine, max_concurrent_jobs=2)
    for i in range(3):
        s.submit(f"v{i}", f"/in/v{i}.mp4")

    assert wait_until(lambda: len(engine.detect_calls) == 2)
    assert states(s, ["v0", "v1", "v2"]) == [P, P, Q]
    assert s.get_status("v0").progress == 10

    engine.release("/in/v0.mp4")
    assert wait_until(lambda: s.get_status("v2").status == P)
    assert s.get_status("v0").status == C
    assert s.get_status("v1").status == P

    engine.release_all()
    assert s.wait_idle(5)
    assert states(s, ["v0", "v1", "v2"]) == [C, C, C]


# ---------------- Pipeline results ----------------
def test_completed_job_reports_result():
    engine = FakeEngine(silences=[Interval(2, 3), Interval(3.5, 4)], duration=10.0)
    s = Scheduler(engine, runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    status = s.get_status("a")
    assert status.status == C
    assert status.progress == 100
    assert status.message == "Traitement terminé avec succès !"
    # merged with a 2s gap before reaching the transformation
    assert engine.removed == [[Interval(2, 4)]]
    assert status.result.time_saved == pytest.approx(2.0)
    assert status.result.output_path == "/in/a_cut.mp4"


def test_reduction_caps_silences_at_ten():
    silences = [Interval(i * 10, i * 10 + 1 + i / 10) for i in range(12)]
    engine = FakeEngine(silences=silences, duration=130.0)
    s = Scheduler(engine, runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    assert len(engine.removed[0]) == 10
    assert s.get_status("a").result.silences_removed == 10


def test_no_silence_completes_without_saving_time():
    engine = FakeEngine(silences=[], duration=30.0)
    s = Scheduler(engine, runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    result = s.get_status("a").result
    assert result.time_saved == 0
    assert result.final_duration == 30.0


# ---------------- Retry ----------------
def test_transient_failure_is_retried_once_then_succeeds():
    engine = FakeEngine(failures=[transient()])
    s = Scheduler(engine, runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    status = s.get_status("a")
    assert status.status == C
    assert status.attempts == 1
    assert len(engine.detect_calls) == 2


def test_second_transient_failure_fails_the_job():
    engine = FakeEngine(failures=[transient(), transient()])
    s = Scheduler(engine, runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    status = s.get_status("a")
    assert status.status == F
    assert status.error == retry.MESSAGES[retry.EXHAUSTED]
    assert len(engine.detect_calls) == 2


def test_retried_job_goes_to_the_tail_with_progress_reset():
    runner = ManualRunner()
    engine = FakeEngine(failures=[transient()])
    s = Scheduler(engine, max_concurrent_jobs=1, runner=runner)
    s.submit("a", "/in/a.mp4")
    s.submit("b", "/in/b.mp4")

    runner.run_next()  # a fails, b takes the slot

    a = s.get_status("a")
    assert a.status == Q
    assert a.progress == 0
    assert a.attempts == 1
    assert s.get_status("b").status == P
    assert s.queue_position("a") == 1

    assert runner.run_next().id == "b"
    assert runner.run_next().id == "a"
    assert s.get_status("a").status == C


def test_permanent_failure_is_not_retried():
    engine = FakeEngine(failures=[EngineError("silence removal exited with code 1", "Cannot allocate memory")])
    s = Scheduler(engine, runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    status = s.get_status("a")
    assert status.status == F
    assert status.error == retry.MESSAGES[retry.MEMORY]
    assert status.attempts == 0
    assert len(engine.detect_calls) == 1


def test_transform_failure_is_retried_then_succeeds():
    engine = FakeEngine(silences=[Interval(2, 4)], duration=10.0,
                        transform_failures=[EngineError("silence removal exited with code 1", "Broken pipe")])
    s = Scheduler(engine, runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    status = s.get_status("a")
    assert status.status == C
    assert status.attempts == 1
    assert len(engine.detect_calls) == 2
    assert len(engine.removed) == 2


def test_permanent_transform_failure_fails_at_once():
    engine = FakeEngine(silences=[Interval(2, 4)], duration=10.0,
                        transform_failures=[EngineError("silence removal exited with code 1",
                                                        "Error initializing filter 'concat'")])
    s = Scheduler(engine, runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    status = s.get_status("a")
    assert status.status == F
    assert status.error == retry.MESSAGES[retry.GENERIC]
    assert status.attempts == 0
    assert len(engine.removed) == 1


def test_file_name_does_not_make_a_transient_failure_permanent():
    engine = FakeEngine(failures=[EngineError("silence detection exited with code 1",
                                              "/in/timeout_take2.mov: Input/output error")])
    s = Scheduler(engine, runner=inline_runner)

    s.submit("timeout_take2", "/in/timeout_take2.mov")

    status = s.get_status("timeout_take2")
    assert status.status == C
    assert status.attempts == 1


def test_progress_is_half_done_when_transformation_starts():
    seen = []

    class WatchingEngine(FakeEngine):
        def remove_silences(self, input_path, output_path, silences, cancel=None):
            seen.append(s.get_status("a").progress)
            return super().remove_silences(input_path, output_path, silences, cancel)

    s = Scheduler(WatchingEngine(silences=[Interval(2, 4)]), runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    assert seen == [50]
    assert s.get_status("a").progress == 100


def test_malformed_intervals_fail_as_internal_error():
    engine = FakeEngine(silences=[Interval(5, 6), Interval(1, 2)])
    s = Scheduler(engine, runner=inline_runner)

    s.submit("a", "/in/a.mp4")

    status = s.get_status("a")
    assert status.status == F
    assert status.error == retry.INTERNAL_MESSAGE
    assert len(engine.detect_calls) == 1


def test_unexpected_exception_does_not_stop_the_queue():
    engine = FakeEngine(failures=[RuntimeError("disk hiccup"), RuntimeError("disk hiccup")])
    s = Scheduler(engine, max_concurrent_jobs=1, runner=inline_runner)

    s.submit("a", "/in/a.mp4")
    s.submit("b", "/in/b.mp4")

    assert states(s, ["a", "b"]) == [F, C]
    assert s.wait_idle(0)


def test_runner_start_failure_moves_on_to_the_next_job():
    class BrokenOnce(ManualRunner):
        """Fails to start the third pipeline it is handed."""

        calls = 0

        def __call__(self, target, job):
            self.calls += 1
            if self.calls == 3:
                raise RuntimeError("can't start new thread")
            super().__call__(target, job)

    runner = BrokenOnce()
    s = Scheduler(FakeEngine(), max_concurrent_jobs=2, runner=runner)
    for vid in ["a", "b", "c", "d"]:
        s.submit(vid, f"/in/{vid}.mp4")

    runner.run_next()  # a completes, c cannot start, d takes the slot

    assert states(s, ["a", "b", "c", "d"]) == [C, P, F, P]
    assert s.get_status("c").error == retry.INTERNAL_MESSAGE
    assert [job.id for _, job in runner.pending] == ["b", "d"]


# ---------------- Cancel / overwrite ----------------
def test_cancel_queued_job_removes_it():
    runner = ManualRunner()
    s = Scheduler(FakeEngine(), max_concurrent_jobs=1, runner=runner)
    s.submit("a", "/in/a.mp4")
    s.submit("b", "/in/b.mp4")

    assert s.cancel("b")

    assert s.get_status("b") is None
    assert s.queue_position("b") is None
    assert not s.cancel("b")


def test_cancel_processing_job_discards_its_result():
    runner = ManualRunner()
    s = Scheduler(FakeEngine(), max_concurrent_jobs=1, runner=runner)
    job = s.submit("a", "/in/a.mp4")
    s.submit("b", "/in/b.mp4")

    assert s.cancel("a")

    assert s.get_status("a") is None
    assert job.state == F
    assert job.error == retry.CANCELLED_MESSAGE
    assert job.cancel_event.is_set()
    # the engine process still holds the slot until it stops
    assert not s.can_admit()

    runner.run_next()

    assert s.get_status("a") is None
    assert job.result is None
    assert s.get_status("b").status == P


def test_cancel_stops_a_running_pipeline():
    engine = FakeEngine(gated=True)
    s = Scheduler(engine, max_concurrent_jobs=1)
    s.submit("a", "/in/a.mp4")
    assert wait_until(lambda: engine.detect_calls)

    s.cancel("a")

    assert s.wait_idle(5)
    assert engine.removed == []


def test_resubmitting_an_id_replaces_the_record():
    runner = ManualRunner()
    s = Scheduler(FakeEngine(), max_concurrent_jobs=2, runner=runner)
    first = s.submit("a", "/in/a.mp4")
    second = s.submit("a", "/in/a-v2.mp4")

    assert first.state == F
    assert first.cancel_event.is_set()
    assert second.state == P

    runner.run_next()  # the stale pipeline finishes first
    assert s.get_status("a").status == P

    runner.run_next()
    assert s.get_status("a").status == C
    assert s.get_status("a").result.output_path == "/in/a-v2_cut.mp4"


def test_resubmitting_a_queued_id_keeps_one_queue_entry():
    runner = ManualRunner()
    s = Scheduler(FakeEngine(), max_concurrent_jobs=1, runner=runner)
    s.submit("a", "/in/a.mp4")
    s.submit("b", "/in/b.mp4")
    s.submit("b", "/in/b.mp4")

    runner.run_next()
    runner.run_next()
    assert runner.pending == []
    assert s.wait_idle(0)


# ---------------- Sweep ----------------
def test_sweep_removes_only_old_terminal_jobs():
    clock = Clock()
    runner = ManualRunner()
    engine = FakeEngine(failures=[EngineError("x", "Conversion failed!")])
    s = Scheduler(engine, max_concurrent_jobs=1, runner=runner, clock=clock)
    for vid in ["failed", "done", "busy", "waiting"]:
        s.submit(vid, f"/in/{vid}.mp4")
    runner.run_next()
    runner.run_next()
    assert states(s, ["failed", "done", "busy", "waiting"]) == [F, C, P, Q]

    clock.advance(minutes=10)
    assert s.sweep(30) == 0

    clock.advance(minutes=25)
    assert s.sweep(30) == 2

    assert s.get_status("failed") is None
    assert s.get_status("done") is None
    assert states(s, ["busy", "waiting"]) == [P, Q]


# ---------------- Input / composition ----------------
def test_missing_input_is_rejected_before_queueing(tmp_path):
    files = FileStorage(tmp_path)
    s = Scheduler(FakeEngine(), files=files, runner=ManualRunner())

    with pytest.raises(InputError):
        s.submit("ghost", files.resolve_input_path("ghost"))
    assert s.get_status("ghost") is None


def test_output_path_comes_from_storage(tmp_path):
    files = FileStorage(tmp_path)
    (tmp_path / "clip.mov").write_bytes(b"\x00")
    s = Scheduler(FakeEngine(), files=files, runner=inline_runner)

    job = s.submit("clip", files.resolve_input_path("clip"))

    assert job.input_path == str(tmp_path / "clip.mov")
    assert job.output_path == str(tmp_path / "clip_cut.mp4")


def test_from_config_reads_settings(tmp_path):
    from storage import Storage

    db = Storage(str(tmp_path / "cfg.db"))
    db.set_config("max_concurrent_jobs", 3)
    db.set_config("merge_gap", "1.5")
    db.set_config("video_storage_path", str(tmp_path / "videos"))

    s = Scheduler.from_config(db, retry_budget=2)

    assert s.admission.max_concurrent_jobs == 3
    assert s.merge_gap == 1.5
    assert s.retry_budget == 2
    assert s.max_silences == 10
    assert s.files.root == tmp_path / "videos"
    db.close()
