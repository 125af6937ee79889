import logging
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path

from fastapi import Cookie, FastAPI
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from jinja2 import Environment, FileSystemLoader
from pydantic import BaseModel, Field, ValidationError

from .config import settings
from .db import get_job_runs, get_preferences, init_db, save_preferences, set_preferences_active
from .dispatcher import scheduler_alive, start_scheduler_thread
from .events import SqliteEventBus, schedule_request
from .models import (
    SCHEDULE_DELETED_EVENT,
    SCHEDULE_EVENT,
    Frequency,
    NewsletterRequest,
    UserPreferences,
)

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
jinja_env = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=True,
)

USER_COOKIE = "newsletter_user"

AVAILABLE_CATEGORIES = [
    "technology",
    "business",
    "politics",
    "science",
    "health",
    "sports",
    "entertainment",
    "world",
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings.validate_startup()
    init_db(settings.database_path)
    start_scheduler_thread()
    logger.info("Scheduler thread started")
    yield


app = FastAPI(title="Personal Newsletter", lifespan=lifespan)


EMAIL_RE = re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$")


class PreferencesRequest(BaseModel):
    email: str
    categories: list[str] = Field(min_length=1)
    frequency: Frequency = Frequency.WEEKLY


class EventRequest(BaseModel):
    name: str
    data: dict
    ts: datetime | None = None


def mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    if not domain:
        return email
    if len(local) <= 2:
        return f"{local[:1]}***@{domain}"
    return f"{local[0]}***{local[-1]}@{domain}"


def dashboard_context(prefs: UserPreferences) -> dict:
    email = mask_email(prefs.email) if settings.mask_dashboard_email else prefs.email
    return {
        "categories": prefs.categories,
        "frequency": prefs.frequency.capitalize(),
        "email": email,
        "is_active": prefs.is_active,
        "created": prefs.created_at.strftime("%B %d, %Y"),
    }


def _load_preferences(user_id: str | None) -> UserPreferences | None:
    if not user_id:
        return None
    return get_preferences(settings.database_path, user_id)


@app.get("/")
async def index():
    return RedirectResponse(url="/dashboard", status_code=303)


@app.get("/health")
async def health():
    alive = scheduler_alive()
    status = "ok" if alive else "degraded"
    return {"status": status, "scheduler_alive": alive}


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

@app.get("/dashboard", response_class=HTMLResponse)
async def dashboard(newsletter_user: str | None = Cookie(default=None)):
    try:
        prefs = _load_preferences(newsletter_user)
    except Exception:
        logger.exception("Failed to load preferences for dashboard")
        prefs = None
    if prefs is None:
        return RedirectResponse(url="/select", status_code=303)

    template = jinja_env.get_template("dashboard.html")
    return HTMLResponse(template.render(preferences=dashboard_context(prefs)))


@app.get("/select", response_class=HTMLResponse)
async def select(newsletter_user: str | None = Cookie(default=None)):
    try:
        prefs = _load_preferences(newsletter_user)
    except Exception:
        logger.exception("Failed to load preferences for edit form")
        prefs = None
    template = jinja_env.get_template("select.html")
    return HTMLResponse(template.render(
        preferences=prefs,
        available_categories=AVAILABLE_CATEGORIES,
        frequencies=[f.value for f in Frequency if f != Frequency.OTHER],
    ))


# ---------------------------------------------------------------------------
# Preferences API
# ---------------------------------------------------------------------------

@app.get("/api/user-preferences")
async def read_preferences(newsletter_user: str | None = Cookie(default=None)):
    prefs = _load_preferences(newsletter_user)
    if prefs is None:
        return JSONResponse(status_code=404, content={"error": "No preferences found"})
    return prefs.model_dump(mode="json")


@app.post("/api/user-preferences")
async def save_user_preferences(
    req: PreferencesRequest,
    newsletter_user: str | None = Cookie(default=None),
):
    email = req.email.strip().lower()
    if not EMAIL_RE.match(email):
        return JSONResponse(
            status_code=400,
            content={"ok": False, "message": "Invalid email address."},
        )

    user_id = newsletter_user or uuid.uuid4().hex
    existing = get_preferences(settings.database_path, user_id)
    prefs = UserPreferences(
        user_id=user_id,
        email=email,
        categories=req.categories,
        frequency=req.frequency.value,
        is_active=True,
        created_at=existing.created_at if existing else datetime.utcnow(),
    )
    save_preferences(settings.database_path, prefs)

    request = NewsletterRequest(
        user_id=user_id,
        email=email,
        categories=req.categories,
        frequency=req.frequency,
    )
    schedule_request(SqliteEventBus(settings.database_path), request)
    logger.info(f"Saved preferences for user {user_id} ({', '.join(req.categories)}, {req.frequency.value})")

    response = JSONResponse(content={"ok": True, "userId": user_id, "message": "Preferences saved."})
    response.set_cookie(key=USER_COOKIE, value=user_id, httponly=True, max_age=60 * 60 * 24 * 365)
    return response


@app.delete("/api/user-preferences")
async def unsubscribe(newsletter_user: str | None = Cookie(default=None)):
    if not newsletter_user:
        return JSONResponse(status_code=404, content={"error": "No preferences found"})
    found = set_preferences_active(settings.database_path, newsletter_user, False)
    SqliteEventBus(settings.database_path).send(SCHEDULE_DELETED_EVENT, {"userId": newsletter_user})
    if not found:
        return JSONResponse(status_code=404, content={"error": "No preferences found"})
    return {"ok": True, "message": "Your newsletter has been paused."}


@app.get("/api/newsletter-runs")
async def newsletter_runs(newsletter_user: str | None = Cookie(default=None)):
    if not newsletter_user:
        return []
    return get_job_runs(settings.database_path, user_id=newsletter_user)


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------

@app.post("/api/events")
async def receive_event(req: EventRequest):
    allowed = {SCHEDULE_EVENT, SCHEDULE_DELETED_EVENT}
    if req.name not in allowed:
        return JSONResponse(
            status_code=400,
            content={"ok": False, "message": f"Unknown event. Choose from: {', '.join(sorted(allowed))}"},
        )
    if req.name == SCHEDULE_DELETED_EVENT and not req.data.get("userId"):
        return JSONResponse(status_code=400, content={"ok": False, "message": "userId is required"})

    bus = SqliteEventBus(settings.database_path)
    try:
        event_id = bus.send(req.name, req.data, run_at=req.ts)
    except ValidationError as exc:
        return JSONResponse(
            status_code=400,
            content={"ok": False, "message": f"Invalid payload: {exc.error_count()} error(s)"},
        )
    return {"ok": True, "id": event_id}
