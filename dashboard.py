# dashboard.py
from html import escape

from fastapi import FastAPI
from fastapi.responses import FileResponse, HTMLResponse, JSONResponse

from models import JobState
from scheduler import InputError

# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #2196F3; }
  .container { padding: 20px; }
  .navbar { background: #1976D2; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(220px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
  .muted { color: #555; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head>
      <title>{title}</title>
      <style>{BASE_STYLE}</style>
    </head>
    <body>
      <h1>{title}</h1>
      <div class="navbar">
        <a href="/">Jobs</a>
        <a href="/api/health">Health</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def create_app(scheduler, files, max_duration=600, busy_load_threshold=90.0) -> FastAPI:
    app = FastAPI(title="silencectl")
    app.state.scheduler = scheduler
    app.state.files = files

    # ---------- JSON API ----------
    @app.post("/api/videos/{video_id}/process")
    def process(video_id: str):
        input_path = files.resolve_input_path(video_id)
        if not files.path_exists(input_path):
            return JSONResponse({"error": "Video not found", "videoId": video_id}, status_code=404)

        existing = scheduler.get_status(video_id)
        if existing is not None:
            if existing.status == JobState.COMPLETED:
                return {"status": "already_completed", "message": "Video already processed",
                        "result": existing.result.to_dict() if existing.result else None}
            if existing.status in (JobState.QUEUED, JobState.PROCESSING):
                return {"status": existing.status.value, "message": "Video is already being processed",
                        "progress": existing.progress}

        load = scheduler.load()
        if load > busy_load_threshold:
            return JSONResponse({"error": "Server is currently overloaded",
                                 "message": "Please try again in a few moments",
                                 "cpuLoad": f"{load:.1f}%"}, status_code=503)

        errors = scheduler.engine.validate_video(input_path, max_duration)
        if errors:
            return JSONResponse({"error": "Invalid video file", "details": errors}, status_code=400)

        try:
            job = scheduler.submit(video_id, input_path)
        except InputError as e:
            return JSONResponse({"error": "Video not found", "message": str(e)}, status_code=404)

        status = scheduler.get_status(video_id)
        return {
            "status": status.status.value if status else job.state.value,
            "message": "Video processing started",
            "videoId": video_id,
            "queuePosition": scheduler.queue_position(video_id),
        }

    @app.get("/api/videos/{video_id}/status")
    def status(video_id: str):
        job_status = scheduler.get_status(video_id)
        if job_status is None:
            return JSONResponse({"error": "Job not found", "videoId": video_id}, status_code=404)
        return job_status.to_dict()

    @app.get("/api/videos/{video_id}/download")
    def download(video_id: str):
        job_status = scheduler.get_status(video_id)
        if job_status is None:
            return JSONResponse({"error": "Video not found", "videoId": video_id}, status_code=404)
        if job_status.status != JobState.COMPLETED:
            return JSONResponse({"error": "Video processing not completed",
                                 "status": job_status.status.value,
                                 "progress": job_status.progress}, status_code=400)

        output_path = files.resolve_output_path(video_id)
        if not files.path_exists(output_path):
            return JSONResponse({"error": "Processed video file not found"}, status_code=404)
        return FileResponse(output_path, media_type="video/mp4", filename="video_cut.mp4")

    @app.delete("/api/videos/{video_id}")
    def delete(video_id: str):
        scheduler.cancel(video_id)
        files.delete_files(video_id)
        return {"message": "Video deleted successfully", "videoId": video_id}

    @app.get("/api/health")
    def health():
        return {
            "canAdmit": scheduler.can_admit(),
            "load": round(scheduler.load(), 1),
            "jobs": scheduler.counts(),
        }

    # ---------- HTML ----------
    @app.get("/", response_class=HTMLResponse)
    def home():
        counts = scheduler.counts()
        cards = "".join(
            f'<div class="card"><h3>{state.capitalize()}</h3><p>{count}</p></div>'
            for state, count in counts.items()
        )
        body = f"""
          <div class="cards">{cards}
            <div class="card"><h3>Load</h3><p>{scheduler.load():.1f}%</p></div>
          </div>
          <h2>Jobs</h2>
          <table>
            <tr><th>ID</th><th>State</th><th>Progress</th><th>Attempts</th><th>Message</th><th>Updated</th></tr>
        """
        jobs = scheduler.list_jobs()
        for s in jobs:
            vid = escape(s.video_id)
            body += (f"<tr><td><a href='/job/{vid}'>{vid}</a></td><td>{s.status.value}</td>"
                     f"<td>{s.progress}%</td><td>{s.attempts}</td><td>{escape(s.message)}</td>"
                     f"<td>{s.updated_at.isoformat()}</td></tr>")
        body += "</table>"
        if not jobs:
            body += "<p class='muted'>No jobs yet.</p>"
        return page("Silence remover", body)

    @app.get("/job/{video_id}", response_class=HTMLResponse)
    def job_detail(video_id: str):
        s = scheduler.get_status(video_id)
        if s is None:
            return HTMLResponse(page("Job not found", f"<p>Job {escape(video_id)} not found.</p>"), status_code=404)

        result_html = "<p class='muted'>No result yet.</p>"
        if s.result:
            r = s.result
            result_html = f"""
              <table>
                <tr><th>Original duration</th><td>{r.original_duration:.2f}s</td></tr>
                <tr><th>Final duration</th><td>{r.final_duration:.2f}s</td></tr>
                <tr><th>Time saved</th><td>{r.time_saved:.2f}s ({r.percentage_saved:.1f}%)</td></tr>
                <tr><th>Silences removed</th><td>{r.silences_removed}</td></tr>
              </table>
              <p><a href="/api/videos/{escape(s.video_id)}/download">Download</a></p>
            """
        body = f"""
          <div class="cards">
            <div class="card"><b>State</b><p>{s.status.value}</p></div>
            <div class="card"><b>Progress</b><p>{s.progress}%</p></div>
            <div class="card"><b>Attempts</b><p>{s.attempts}</p></div>
          </div>
          <p class="muted">{escape(s.message)}</p>
          <h3>Error</h3>
          <pre>{escape(s.error or "-")}</pre>
          <h3>Result</h3>
          {result_html}
        """
        return page(f"Job {escape(s.video_id)}", body)

    return app
