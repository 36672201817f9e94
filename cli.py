# cli.py
from pathlib import Path

import click

from intervals import derive_keep_segments, reduce_silences
from media import EngineError
from models import JobState
from scheduler import InputError, Scheduler
from storage import FileStorage, Storage


@click.group()
@click.option("--db", "db_path", default="silencectl.db", show_default=True, help="Config database")
@click.pass_context
def cli(ctx, db_path):
    """silencectl - remove silent parts from videos"""
    ctx.obj = Storage(db_path)


def _fmt_interval(i):
    return f"{i.start:8.2f}s → {i.end:8.2f}s  ({i.duration:.2f}s)"


# ---------------- Process local files ----------------
@cli.command()
@click.argument("inputs", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--output-dir", default=None, help="Where cut files are written (uses video_storage_path if not set)")
@click.option("--concurrency", default=None, type=int, help="Max jobs processed at once (uses config if set)")
@click.option("--retry-budget", default=None, type=int, help="Retries for temporary errors (uses config if set)")
@click.option("--timeout", default=None, type=float, help="Wait at most N seconds for all jobs")
@click.pass_obj
def process(db, inputs, output_dir, concurrency, retry_budget, timeout):
    """Remove silences from local video files"""
    files = FileStorage(output_dir or db.get_config("video_storage_path", default="/tmp/videos"))
    scheduler = Scheduler.from_config(db, files=files, max_concurrent_jobs=concurrency, retry_budget=retry_budget)

    ids = []
    for path in inputs:
        video_id = Path(path).stem
        n = 1
        while video_id in ids:
            n += 1
            video_id = f"{Path(path).stem}-{n}"
        try:
            scheduler.submit(video_id, str(Path(path).resolve()))
        except InputError as e:
            click.echo(f"❌ {e}")
            continue
        ids.append(video_id)
        click.echo(f"✅ Job {video_id} submitted.")

    if not scheduler.wait_idle(timeout):
        click.echo("⏳ Timed out waiting for jobs; still running jobs are abandoned.")

    failures = 0
    for video_id in ids:
        s = scheduler.get_status(video_id)
        if s.status == JobState.COMPLETED:
            r = s.result
            click.echo(f"{video_id} | completed | {r.original_duration:.1f}s → {r.final_duration:.1f}s "
                       f"| saved {r.time_saved:.1f}s ({r.percentage_saved:.1f}%) | {r.output_path}")
        else:
            failures += 1
            click.echo(f"{video_id} | {s.status.value} | {s.error or s.message}")
    if failures:
        raise SystemExit(1)


# ---------------- Storage ----------------
@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.option("--id", "video_id", default=None, help="Video ID (random UUID if not set)")
@click.pass_obj
def submit(db, path, video_id):
    """Copy a video into the storage directory served by the API"""
    files = FileStorage(db.get_config("video_storage_path", default="/tmp/videos"))
    try:
        video_id, stored = files.import_file(path, video_id)
    except ValueError as e:
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    click.echo(f"✅ Stored {stored}")
    click.echo(f"   Start processing with: POST /api/videos/{video_id}/process")


# ---------------- Inspection ----------------
@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def probe(db, path):
    """Show video metadata and validation problems"""
    scheduler = Scheduler.from_config(db)
    try:
        m = scheduler.engine.probe(path)
    except EngineError as e:
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    click.echo(f"🔎 {path}")
    click.echo(f"  Duration: {m.duration:.2f}s")
    click.echo(f"  Codec: {m.codec}")
    click.echo(f"  Resolution: {m.width}x{m.height}")
    click.echo(f"  Bitrate: {m.bitrate}")
    click.echo(f"  Size: {m.size} bytes")
    errors = scheduler.engine.validate_video(path, float(db.get_config("video_max_duration", default="600")))
    for err in errors:
        click.echo(f"  ⚠️ {err}")


@cli.command()
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def detect(db, path):
    """Show detected, reduced and kept intervals without cutting"""
    scheduler = Scheduler.from_config(db)
    try:
        raw = scheduler.engine.detect_silences(path)
        duration = scheduler.engine.probe(path).duration
    except EngineError as e:
        click.echo(f"❌ {e}")
        raise SystemExit(1)
    silences = reduce_silences(raw, scheduler.merge_gap, scheduler.max_silences)

    click.echo(f"Detected silences ({len(raw)}):")
    for i in raw:
        click.echo(f"  {_fmt_interval(i)}")
    click.echo(f"Reduced (gap < {scheduler.merge_gap}s merged, at most {scheduler.max_silences}): {len(silences)}")
    for i in silences:
        click.echo(f"  {_fmt_interval(i)}")
    keep = derive_keep_segments(silences, duration)
    click.echo(f"Kept segments ({len(keep)}) of {duration:.2f}s:")
    for i in keep:
        click.echo(f"  {_fmt_interval(i)}")


# ---------------- Server ----------------
@cli.command()
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.option("--concurrency", default=None, type=int, help="Max jobs processed at once (uses config if set)")
@click.pass_obj
def serve(db, host, port, concurrency):
    """Run the HTTP API, the scheduler and the cleanup thread"""
    import uvicorn

    from cleanup import Janitor
    from dashboard import create_app

    scheduler = Scheduler.from_config(db, max_concurrent_jobs=concurrency)
    files = scheduler.files
    janitor = Janitor(
        scheduler, files,
        job_max_age_minutes=float(db.get_config("job_max_age_minutes", default="30")),
        file_max_age_minutes=float(db.get_config("file_max_age_minutes", default="15")),
        interval=float(db.get_config("cleanup_interval", default="300")),
    )
    app = create_app(
        scheduler, files,
        max_duration=float(db.get_config("video_max_duration", default="600")),
        busy_load_threshold=float(db.get_config("busy_load_threshold", default="90")),
    )
    click.echo(f"🚀 Serving on {host}:{port} (max {scheduler.admission.max_concurrent_jobs} concurrent jobs)")
    janitor.start()
    try:
        uvicorn.run(app, host=host, port=port)
    finally:
        janitor.stop()


# ---------------- Config management ----------------
@cli.group()
def config():
    """Runtime configuration"""
    pass


@config.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_obj
def config_set(db, key, value):
    """Set a config key to a value"""
    db.set_config(key, value)
    click.echo(f"🛠️ Config '{key}' set to '{value}'.")


@config.command("get")
@click.argument("key")
@click.option("--default", default=None, help="Fallback if key not set")
@click.pass_obj
def config_get(db, key, default):
    """Get a config key"""
    value = db.get_config(key, default=None)
    if value is None:
        if default is not None:
            click.echo(f"{key}={default} (default)")
        else:
            click.echo(f"{key} not set")
        return
    click.echo(f"{key}={value}")


@config.command("list")
@click.pass_obj
def config_list(db):
    """List all config keys"""
    rows = db.list_config()
    if not rows:
        click.echo("No config keys set.")
        return
    for row in rows:
        click.echo(f"{row['key']}={row['value']} (updated_at={row['updated_at']})")


# ---------------- Entrypoint ----------------
if __name__ == "__main__":
    cli()
