# dashboard.py
import html
import json
import logging

from fastapi import Body, Depends, FastAPI, Header
from fastapi.responses import HTMLResponse, JSONResponse

from admin import AdminActions
from errors import AdminActionError
from job_store import JobStore
from scheduler import run_cycle
from settings import Settings, get_env
from storage import Storage

logger = logging.getLogger(__name__)

app = FastAPI(title="castqueue")

_db = None


def get_db():
    global _db
    if _db is None:
        _db = Storage()
    return _db


def get_admin_actions(db=Depends(get_db)):
    return AdminActions(db)


# ---------- Auth ----------
def _bearer(authorization):
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip() or None
    return None


def cron_authorized(authorization):
    secret = get_env("CRON_SECRET")
    if not secret:
        return True
    return _bearer(authorization) == secret


def admin_authorized(x_admin_token, authorization):
    expected = get_env("ADMIN_TOKEN")
    if not expected:
        return True
    token = (x_admin_token or "").strip() or _bearer(authorization)
    return token == expected


def _error(message, status_code):
    return JSONResponse({"error": message}, status_code=status_code)


def _job_store(db):
    return JobStore.from_settings(db, Settings.from_storage(db))


# ---------- Cron ----------
@app.get("/api/cron/casts")
def cron_casts(authorization: str = Header(None), db=Depends(get_db)):
    if not cron_authorized(authorization):
        return _error("Unauthorized", 401)
    try:
        return run_cycle(db)
    except Exception:
        logger.exception("Cast scheduler run failed")
        return _error("Failed to process cast jobs.", 500)


# ---------- Admin ----------
def _run_admin(action_fn, body):
    body = body if isinstance(body, dict) else {}
    try:
        return action_fn(body.get("action"), body)
    except AdminActionError as e:
        return _error(str(e), e.status_code)
    except Exception as e:
        logger.exception("Admin action %s failed", body.get("action"))
        return _error(str(e) or "Admin action failed.", 500)


@app.post("/api/admin/casts")
def admin_casts(body: dict = Body(default={}), x_admin_token: str = Header(None),
                authorization: str = Header(None), actions=Depends(get_admin_actions)):
    if not admin_authorized(x_admin_token, authorization):
        return _error("Unauthorized", 403)
    return _run_admin(actions.run_cast_action, body)


@app.post("/api/admin/notifications")
def admin_notifications(body: dict = Body(default={}), x_admin_token: str = Header(None),
                        authorization: str = Header(None), actions=Depends(get_admin_actions)):
    if not admin_authorized(x_admin_token, authorization):
        return _error("Unauthorized", 403)
    return _run_admin(actions.run_notification_action, body)


@app.post("/api/admin/casts/jobs")
def admin_cast_jobs(body: dict = Body(default={}), x_admin_token: str = Header(None),
                    authorization: str = Header(None), db=Depends(get_db)):
    if not admin_authorized(x_admin_token, authorization):
        return _error("Unauthorized", 403)
    status = body.get("status") if isinstance(body.get("status"), str) else None
    upcoming = body.get("upcoming") in (True, "true")
    try:
        jobs = _job_store(db).list_jobs(status=status, upcoming=upcoming, limit=body.get("limit", 50))
    except Exception:
        logger.exception("Failed to load cast jobs")
        return _error("Failed to load cast job queue.", 500)
    return {"jobs": [job.to_dict() for job in jobs]}


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #7C3AED; color: white; padding: 15px; margin: 0; }
  h2 { margin-top: 30px; color: #7C3AED; }
  .container { padding: 20px; }
  .navbar { background: #5B21B6; padding: 10px 20px; display: flex; gap: 20px; }
  .navbar a { color: white; text-decoration: none; font-weight: bold; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #7C3AED; color: white; }
  tr:nth-child(even) { background-color: #f2f2f2; }
  a { color: #5B21B6; }
  pre { background: white; border: 1px solid #ddd; padding: 10px; white-space: pre-wrap; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(180px,1fr)); gap: 16px; margin-top: 20px; }
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
        <a href="/config">Config</a>
      </div>
      <div class="container">
        {body_html}
      </div>
    </body>
    </html>
    """


def _cell(value):
    return html.escape(str(value)) if value not in (None, "") else "-"


# ---------- Home ----------
@app.get("/", response_class=HTMLResponse)
def home(db=Depends(get_db)):
    store = _job_store(db)
    counts = store.status_counts()
    jobs = store.list_jobs(upcoming=True, limit=50)

    cards = '<div class="cards">' + "".join(
        f'<div class="card"><b>{status}</b><p>{counts.get(status, 0)}</p></div>'
        for status in ("pending", "processing", "completed", "failed")
    ) + "</div>"

    table = """
    <h2>Upcoming and recent casts</h2>
    <table>
      <tr><th>ID</th><th>Template</th><th>Status</th><th>Attempts</th><th>Scheduled for</th><th>Channel</th><th>Last error</th></tr>
    """
    for job in jobs:
        table += (
            f"<tr><td><a href='/job/{job.id}'>{job.id[:8]}</a></td><td>{job.template}</td>"
            f"<td>{job.status}</td><td>{job.attempt_count}/{store.max_attempts}</td>"
            f"<td>{job.scheduled_for}</td><td>{_cell(job.channel_id)}</td><td>{_cell(job.last_error)}</td></tr>"
        )
    table += "</table>"
    if not jobs:
        table += "<p class='muted'>No cast jobs scheduled.</p>"

    return page("Cast Queue", cards + table)


# ---------- Config ----------
@app.get("/config", response_class=HTMLResponse)
def config_page(db=Depends(get_db)):
    rows = db.list_config()
    settings = Settings.from_storage(db)

    body = """
      <h2>Overrides</h2>
      <table>
        <tr><th>Key</th><th>Value</th><th>Updated</th></tr>
    """
    for r in rows:
        body += f"<tr><td>{_cell(r['key'])}</td><td>{_cell(r['value'])}</td><td>{r['updated_at']}</td></tr>"
    body += "</table>"
    if not rows:
        body += "<p class='muted'>No overrides set. Use the CLI config set command to add one.</p>"

    body += "<h2>Effective settings</h2><table><tr><th>Setting</th><th>Value</th></tr>"
    for key, value in vars(settings).items():
        body += f"<tr><td>{key}</td><td>{_cell(value)}</td></tr>"
    body += "</table>"

    return page("Config", body)


# ---------- Job detail ----------
@app.get("/job/{job_id}", response_class=HTMLResponse)
def job_detail(job_id: str, db=Depends(get_db)):
    store = _job_store(db)
    job = store.get(job_id)
    if not job:
        return HTMLResponse(page("Job not found", f"<p>Job {html.escape(job_id)} not found.</p>"), status_code=404)

    response = json.dumps(job.response_body, indent=2) if job.response_body else "(no response)"
    body = f"""
      <h2>Job {job.id}</h2>
      <div class="cards">
        <div class="card"><b>Template</b><p>{job.template}</p></div>
        <div class="card"><b>Status</b><p>{job.status}</p></div>
        <div class="card"><b>Attempts</b><p>{job.attempt_count}/{store.max_attempts}</p></div>
        <div class="card"><b>Channel</b><p>{_cell(job.channel_id)}</p></div>
      </div>

      <h3>Payload args</h3>
      <pre>{html.escape(json.dumps(job.payload_args, indent=2))}</pre>

      <h3>Timestamps</h3>
      <table>
        <tr><th>Created</th><td>{job.created_at}</td></tr>
        <tr><th>Scheduled for</th><td>{job.scheduled_for}</td></tr>
        <tr><th>Trigger at</th><td>{_cell(job.trigger_at)}</td></tr>
        <tr><th>Last attempt</th><td>{_cell(job.last_attempt_at)}</td></tr>
        <tr><th>Completed</th><td>{_cell(job.completed_at)}</td></tr>
        <tr><th>Updated</th><td>{job.updated_at}</td></tr>
      </table>

      <h3>Last error</h3>
      <pre>{_cell(job.last_error)}</pre>

      <h3>Response</h3>
      <pre>{html.escape(response)}</pre>
    """
    return page(f"Job {job.id[:8]}", body)
