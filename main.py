"""
FastAPI backend for the scheduling decision engine, multi-principal.
"""

import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, RedirectResponse
from google.auth.exceptions import GoogleAuthError
from jose import JWTError, jwt
from oauthlib.oauth2.rfc6749.errors import OAuth2Error
from pydantic import BaseModel, Field

import auth
import database as db
import scheduler
from audit_ledger import AuditFilters, AuditLedger
from circuit_breaker import CircuitBreaker
from classifier import ClaudeClassifier
from config import load_config
from conversation_state import ConversationStateManager
from errors import AuditEntryNotFound
from gcal_client import CalendarAvailability
from gmail_client import GmailClient
from models import AuditAction, OverrideKind, ResultAction
from params import load_scoring_policy
from preferences import MAX_THRESHOLD, MIN_THRESHOLD, PreferenceStore
from processor import ERR_TIMEOUT, ERR_UNAUDITED_SEND, DecisionOrchestrator, process_message_async

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# ── JWT config ─────────────────────────────────────────────────────────────────
JWT_SECRET = os.environ.get("JWT_SECRET_KEY", "dev-secret-change-in-production")
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = 30
COOKIE_NAME = "session"

# ── In-flight OAuth flows: state -> (Flow, created_at unix ts) ─────────────────
_oauth_flows: dict[str, tuple] = {}


def _cleanup_stale_flows():
    cutoff = time.time() - 600  # 10 minutes
    stale = [s for s, (_, ts) in list(_oauth_flows.items()) if ts < cutoff]
    for s in stale:
        del _oauth_flows[s]


# ── Components ─────────────────────────────────────────────────────────────────
_config = load_config()
preferences = PreferenceStore()
ledger = AuditLedger()
breaker = CircuitBreaker(cooldown_minutes=_config["default_cooldown_minutes"])
conversations = ConversationStateManager(ttl_days=_config["conversation_ttl_days"])

_orchestrator: Optional[DecisionOrchestrator] = None


def _alert(principal_id: str, message: str) -> None:
    logger.critical(f"[{principal_id}] ALERT: {message}")
    db.log_event(principal_id, "alert", message)


def get_orchestrator() -> DecisionOrchestrator:
    """Built on first use so the Google and Anthropic clients are only created when needed."""
    global _orchestrator
    if _orchestrator is None:
        gmail = GmailClient()
        _orchestrator = DecisionOrchestrator(
            message_source=gmail,
            classifier=ClaudeClassifier(),
            preferences=preferences,
            availability=CalendarAvailability(preferences=preferences),
            sender=gmail,
            conversations=conversations,
            breaker=breaker,
            ledger=ledger,
            scoring=load_scoring_policy(),
            alert=_alert,
        )
    return _orchestrator


# ── Lifespan ───────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    db.init_db()
    scheduler.init_scheduler()
    scheduler.add_maintenance_jobs(conversations, ledger)
    yield
    scheduler.shutdown_scheduler()


app = FastAPI(title="Scheduling Decision Engine", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── JWT helpers ────────────────────────────────────────────────────────────────

def create_session_token(principal_id: str) -> str:
    expire = datetime.now(timezone.utc) + timedelta(days=JWT_EXPIRE_DAYS)
    return jwt.encode(
        {"sub": principal_id, "exp": expire},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )


def get_current_user(request: Request) -> str:
    """FastAPI dependency: returns principal_id or raises 401. Accepts the session cookie or a bearer token."""
    token = request.cookies.get(COOKIE_NAME)
    if not token:
        header = request.headers.get("Authorization", "")
        if header.lower().startswith("bearer "):
            token = header[7:].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated")
    try:
        payload = jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
        principal_id: str = payload.get("sub")
        if not principal_id:
            raise HTTPException(status_code=401, detail="Invalid token")
        return principal_id
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


# ── Auth endpoints ─────────────────────────────────────────────────────────────

@app.get("/auth/login")
def start_auth():
    """Redirect to the Google consent screen to connect Gmail and Calendar."""
    _cleanup_stale_flows()
    state = secrets.token_urlsafe(32)
    flow = auth.create_oauth_flow()
    _oauth_flows[state] = (flow, time.time())
    auth_url, _ = flow.authorization_url(
        access_type="offline",
        prompt="consent",
        state=state,
    )
    return RedirectResponse(auth_url)


@app.get("/auth/callback")
def auth_callback(code: str = None, error: str = None, state: str = None):
    """Google redirects here after the principal authorises."""
    if error:
        return HTMLResponse(f"<h2>Authorization failed: {error}</h2>", status_code=400)
    if not code:
        return HTMLResponse("<h2>No authorization code received.</h2>", status_code=400)

    entry = _oauth_flows.pop(state, None) if state else None
    if entry is None:
        return HTMLResponse(
            "<h2>OAuth state mismatch or expired. Please <a href='/auth/login'>try again</a>.</h2>",
            status_code=400,
        )
    flow, _ = entry

    try:
        flow.fetch_token(code=code)
        principal_id = auth.principal_from_flow(flow)
    except (OAuth2Error, GoogleAuthError, ValueError, KeyError) as e:
        logger.error(f"Token exchange error: {e}")
        return HTMLResponse(f"<h2>Token exchange failed: {e}</h2>", status_code=500)

    db.save_token(principal_id, auth.credentials_to_dict(flow.credentials))
    db.log_event(principal_id, "connected", "Google account connected")

    redirect = RedirectResponse(url="/", status_code=302)
    redirect.set_cookie(
        COOKIE_NAME,
        create_session_token(principal_id),
        httponly=True,
        samesite="lax",
        secure=os.environ.get("APP_BASE_URL", "").startswith("https"),
        max_age=60 * 60 * 24 * JWT_EXPIRE_DAYS,
    )
    return redirect


@app.post("/auth/logout")
def logout(response: Response):
    response.delete_cookie(COOKIE_NAME)
    return {"ok": True}


@app.get("/auth/status")
def auth_status(request: Request):
    try:
        principal_id = get_current_user(request)
    except HTTPException:
        return {"authorized": False, "google_connected": False}
    return {"authorized": True, "google_connected": auth.is_authorized(principal_id)}


# ── Message processing ─────────────────────────────────────────────────────────

@app.post("/api/messages/{message_id}/process")
async def process_message(
    message_id: str,
    response: Response,
    user_id: str = Depends(get_current_user),
    orchestrator: DecisionOrchestrator = Depends(get_orchestrator),
):
    """Webhook entry point. Redeliveries of a message already seen are dropped here."""
    if not db.claim_message(user_id, message_id):
        logger.info(f"[{user_id}] Duplicate delivery of {message_id}, skipped")
        return {"message_id": message_id, "duplicate": True}

    result = await process_message_async(orchestrator, message_id, user_id)

    if result.action == ResultAction.ERROR:
        # Let the caller retry, unless the reply went out or a timed-out worker may still send it
        if not result.email_sent and result.error_code not in (ERR_UNAUDITED_SEND, ERR_TIMEOUT):
            db.release_message(user_id, message_id)
        response.status_code = 503

    return {"message_id": message_id, "duplicate": False, **result.to_dict()}


# ── Audit ──────────────────────────────────────────────────────────────────────

@app.get("/api/audit")
def list_audit(
    action: Optional[AuditAction] = None,
    min_confidence: Optional[float] = Query(None, ge=0.0, le=1.0),
    max_confidence: Optional[float] = Query(None, ge=0.0, le=1.0),
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    user_id: str = Depends(get_current_user),
):
    filters = AuditFilters(
        action=action,
        min_confidence=min_confidence,
        max_confidence=max_confidence,
        start=start,
        end=end,
        limit=limit,
        offset=offset,
    )
    return ledger.get_by_principal(user_id, filters)


@app.get("/api/audit/stats")
def audit_stats(days: int = Query(7, ge=1, le=365), user_id: str = Depends(get_current_user)):
    return ledger.statistics(user_id, days)


@app.get("/api/audit/digest")
def audit_digest(user_id: str = Depends(get_current_user)):
    return ledger.weekly_digest(user_id)


def _owned_entry(entry_id: int, user_id: str):
    try:
        entry = ledger.get(entry_id)
    except AuditEntryNotFound:
        raise HTTPException(404, "Audit entry not found")
    if entry.principal_id != user_id:
        raise HTTPException(404, "Audit entry not found")
    return entry


@app.get("/api/audit/{entry_id}")
def audit_entry(entry_id: int, user_id: str = Depends(get_current_user)):
    entry = _owned_entry(entry_id, user_id)
    assessment = ledger.get_assessment(entry.request_id) if entry.request_id else None
    return {"entry": entry, "assessment": assessment}


class OverrideRequest(BaseModel):
    override: OverrideKind
    reason: Optional[str] = Field(None, max_length=1000)


@app.post("/api/audit/{entry_id}/override")
def override_entry(entry_id: int, body: OverrideRequest, user_id: str = Depends(get_current_user)):
    _owned_entry(entry_id, user_id)
    entry = ledger.record_override(entry_id, body.override, body.reason)
    db.log_event(user_id, "override", f"Audit entry {entry_id} marked {body.override.value}")
    return entry


# ── Circuit breaker ────────────────────────────────────────────────────────────

@app.get("/api/circuit-breaker")
def breaker_state(user_id: str = Depends(get_current_user)):
    return breaker.get_state(user_id)


class BreakerOverride(BaseModel):
    force_close: bool


@app.post("/api/circuit-breaker/override")
def breaker_override(body: BreakerOverride, user_id: str = Depends(get_current_user)):
    state = breaker.manual_override(user_id, body.force_close)
    if body.force_close:
        db.log_event(user_id, "breaker_closed", "Circuit breaker closed manually")
    return state


# ── Preferences ────────────────────────────────────────────────────────────────

@app.get("/api/preferences")
def get_preferences(user_id: str = Depends(get_current_user)):
    return preferences.get(user_id)


class PreferencesUpdate(BaseModel):
    automation_enabled: Optional[bool] = None
    confidence_threshold: Optional[float] = Field(None, ge=MIN_THRESHOLD, le=MAX_THRESHOLD)
    allow_list: Optional[list[str]] = None
    deny_list: Optional[list[str]] = None
    cooldown_minutes: Optional[int] = Field(None, ge=1, le=1440)
    max_consecutive_low_confidence: Optional[int] = Field(None, ge=1, le=100)
    response_tone: Optional[str] = Field(None, pattern="^(formal|casual|professional)$")
    user_timezone: Optional[str] = None
    working_hours_start: Optional[int] = Field(None, ge=0, le=23)
    working_hours_end: Optional[int] = Field(None, ge=1, le=24)
    default_meeting_minutes: Optional[int] = Field(None, ge=15, le=480)


@app.patch("/api/preferences")
def update_preferences(body: PreferencesUpdate, user_id: str = Depends(get_current_user)):
    updates = {k: v for k, v in body.model_dump().items() if v is not None}
    if not updates:
        raise HTTPException(400, "No updates provided")
    return preferences.update(user_id, updates)


@app.post("/api/preferences/allow-list/{email:path}")
def allow_list_add(email: str, user_id: str = Depends(get_current_user)):
    return preferences.add_to_allow_list(user_id, email)


@app.delete("/api/preferences/allow-list/{email:path}")
def allow_list_remove(email: str, user_id: str = Depends(get_current_user)):
    return preferences.remove_from_allow_list(user_id, email)


@app.post("/api/preferences/deny-list/{email:path}")
def deny_list_add(email: str, user_id: str = Depends(get_current_user)):
    return preferences.add_to_deny_list(user_id, email)


@app.delete("/api/preferences/deny-list/{email:path}")
def deny_list_remove(email: str, user_id: str = Depends(get_current_user)):
    return preferences.remove_from_deny_list(user_id, email)


# ── Conversations ──────────────────────────────────────────────────────────────

@app.get("/api/conversations")
def list_conversations(
    include_closed: bool = False,
    limit: int = Query(100, ge=1, le=500),
    user_id: str = Depends(get_current_user),
):
    return conversations.list_for_principal(user_id, include_closed, limit)


@app.post("/api/conversations/{thread_id}/close")
def close_conversation(thread_id: str, user_id: str = Depends(get_current_user)):
    conversation = conversations.find_open(thread_id)
    if conversation is None or conversation.principal_id != user_id:
        raise HTTPException(404, "No open conversation for this thread")
    conversations.close(thread_id)
    db.log_event(user_id, "conversation_closed", f"Closed conversation {thread_id}")
    return {"ok": True, "thread_id": thread_id}


# ── Scheduler ──────────────────────────────────────────────────────────────────

@app.get("/api/scheduler/status")
def scheduler_status(user_id: str = Depends(get_current_user)):
    return scheduler.get_status()


# ── Events ─────────────────────────────────────────────────────────────────────

@app.get("/api/events")
def get_events(
    limit: int = Query(50, ge=1, le=200),
    user_id: str = Depends(get_current_user),
):
    return db.get_recent_events(user_id, limit)
