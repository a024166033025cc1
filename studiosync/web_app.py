from __future__ import annotations

import hmac
import json
import os
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse, Response
from pydantic import BaseModel, Field

from studiosync.aggregate import WeekNotes
from studiosync.config_manager import SECRET_FIELDS, ConfigManager
from studiosync.feed_client import FeedError, fetch_feed_text, validate_feed_url
from studiosync.remote_client import session_token
from studiosync.scheduler import SyncScheduler
from studiosync.state_store import StateStore
from studiosync.sync_engine import SyncCoordinator

REMOTE_DOCUMENT_KEY = "remote-app-data"
CALENDAR_CACHE_CONTROL = "public, max-age=300"


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class LoginRequest(BaseModel):
    password: str = ""


class PullRequest(BaseModel):
    force: bool = False


class OnlineRequest(BaseModel):
    online: bool


class LinksRequest(BaseModel):
    ids: list[str] = Field(default_factory=list)


class FeedRequest(BaseModel):
    name: str = ""
    url: str


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.coordinator = SyncCoordinator(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.coordinator, self.config_manager)


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section_name, key in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict) or section.get(key) is None:
            continue
        if str(section[key]).strip() in {"", "***"}:
            if str(current.get(section_name, {}).get(key, "")):
                section.pop(key, None)
            else:
                section[key] = ""
        if not section:
            sanitized.pop(section_name, None)
    return sanitized


def _request_token(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[len("bearer "):].strip()
    return str(request.query_params.get("token", "")).strip()


async def _read_body(request: Request) -> bytes:
    return await request.body()


def _result_payload(result: Any) -> dict[str, Any]:
    payload = result.to_dict()
    merged = getattr(result, "merged", None)
    if merged is not None and hasattr(merged, "to_dict"):
        payload["data"] = merged.to_dict()
    return payload


def create_app() -> FastAPI:
    config_path = os.getenv("STUDIOSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("STUDIOSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Studiosync", version="0.1.0")
    app.state.context = context

    def require_token(request: Request) -> None:
        server = app.state.context.config_manager.load().server
        if not server.password:
            raise HTTPException(status_code=401, detail="Store password is not configured")
        expected = session_token(server.password, server.session_secret)
        if not hmac.compare_digest(_request_token(request), expected):
            raise HTTPException(status_code=401, detail="Unauthorized")

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    # -- remote store and relay ---------------------------------------------

    @app.post("/api/login")
    def login(request: LoginRequest) -> dict[str, str]:
        server = app.state.context.config_manager.load().server
        if not server.password or not hmac.compare_digest(request.password, server.password):
            raise HTTPException(status_code=401, detail="Invalid password")
        return {"token": session_token(server.password, server.session_secret)}

    @app.get("/api/data")
    def get_data(request: Request) -> Response:
        require_token(request)
        raw = app.state.context.state_store.get_document(REMOTE_DOCUMENT_KEY)
        return Response(content=raw if raw is not None else "null", media_type="application/json")

    @app.post("/api/data")
    def post_data(request: Request, body: bytes = Depends(_read_body)) -> dict[str, bool]:
        require_token(request)
        limit = app.state.context.config_manager.load().server.max_payload_bytes
        if len(body) > limit:
            raise HTTPException(status_code=413, detail=f"Payload exceeds {limit} bytes")
        try:
            document = json.loads(body or b"null")
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Body must be JSON") from exc
        if not isinstance(document, dict):
            raise HTTPException(status_code=400, detail="Body must be a JSON object")
        app.state.context.state_store.set_document(
            REMOTE_DOCUMENT_KEY,
            json.dumps(document, ensure_ascii=False),
        )
        return {"success": True}

    @app.get("/api/calendar/proxy")
    def calendar_proxy(request: Request, url: str = "") -> PlainTextResponse:
        require_token(request)
        timeout = app.state.context.config_manager.load().remote.timeout_seconds
        try:
            text = fetch_feed_text(url, timeout=timeout)
        except FeedError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        return PlainTextResponse(
            content=text,
            media_type="text/calendar",
            headers={"Cache-Control": CALENDAR_CACHE_CONTROL},
        )

    # -- configuration --------------------------------------------------------

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    # -- sync control ---------------------------------------------------------

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        payload = app.state.context.coordinator.status_snapshot()
        payload["runs"] = app.state.context.state_store.recent_sync_runs(limit=limit)
        return payload

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/pull")
    def pull_now(request: PullRequest) -> dict[str, Any]:
        result = app.state.context.coordinator.sync_from_cloud(trigger="manual", force=request.force)
        return {"result": _result_payload(result)}

    @app.post("/api/sync/push")
    def push_now() -> dict[str, Any]:
        return {"result": _result_payload(app.state.context.coordinator.push_to_cloud())}

    @app.post("/api/sync/visible")
    def visible() -> dict[str, str]:
        app.state.context.scheduler.notify_visible()
        return {"message": "visibility sync triggered"}

    @app.post("/api/sync/online")
    def set_online(request: OnlineRequest) -> dict[str, Any]:
        result = app.state.context.coordinator.set_online(request.online)
        return {
            "status": app.state.context.coordinator.status.value,
            "result": _result_payload(result) if result is not None else None,
        }

    @app.post("/api/sync/flush")
    def flush() -> dict[str, bool]:
        return {"sent": app.state.context.coordinator.flush_pending()}

    @app.post("/api/sync/retry")
    def retry() -> dict[str, Any]:
        return {"result": _result_payload(app.state.context.coordinator.retry_push())}

    @app.post("/api/warnings/{warning_id}/dismiss")
    def dismiss_warning(warning_id: str) -> dict[str, str]:
        if not app.state.context.coordinator.dismiss_warning(warning_id):
            raise HTTPException(status_code=404, detail="warning not found")
        return {"message": "warning dismissed"}

    @app.get("/api/feeds")
    def list_feeds() -> dict[str, Any]:
        feeds = app.state.context.config_manager.load().feeds
        return {"feeds": [{"name": feed.name, "url": feed.url} for feed in feeds]}

    @app.post("/api/feeds")
    def add_feed(request: FeedRequest) -> dict[str, Any]:
        try:
            url = validate_feed_url(request.url)
        except FeedError as exc:
            raise HTTPException(status_code=exc.status_code, detail=str(exc)) from exc
        config = app.state.context.config_manager.add_feed(request.name.strip() or url, url)
        app.state.context.scheduler.trigger_feeds()
        return {"feeds": [{"name": feed.name, "url": feed.url} for feed in config.feeds]}

    @app.delete("/api/feeds")
    def remove_feed(url: str) -> dict[str, str]:
        if not app.state.context.config_manager.remove_feed(url):
            raise HTTPException(status_code=404, detail="feed not found")
        return {"message": "feed removed"}

    @app.post("/api/feeds/refresh")
    def refresh_feeds() -> dict[str, Any]:
        result = app.state.context.coordinator.refresh_calendars(trigger="manual")
        return {"result": result.to_dict()}

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    # -- local data -----------------------------------------------------------

    @app.get("/api/local")
    def get_local() -> dict[str, Any]:
        return app.state.context.coordinator.load_data().to_dict()

    @app.put("/api/local/week-notes")
    def put_week_notes(payload: dict[str, Any]) -> dict[str, Any]:
        week = WeekNotes.from_dict(payload)
        if not week.week_of:
            raise HTTPException(status_code=400, detail="weekOf is required")
        return {"result": _result_payload(app.state.context.coordinator.save_week_notes(week))}

    @app.patch("/api/local/self-care")
    def patch_self_care(payload: dict[str, Any]) -> dict[str, Any]:
        return {"result": _result_payload(app.state.context.coordinator.update_self_care(payload))}

    @app.patch("/api/local/settings")
    def patch_settings(payload: dict[str, Any]) -> dict[str, Any]:
        return {"result": _result_payload(app.state.context.coordinator.update_settings(payload))}

    @app.put("/api/local/calendar-events/{occurrence_id}/links")
    def put_links(occurrence_id: str, request: LinksRequest) -> dict[str, Any]:
        result = app.state.context.coordinator.set_occurrence_links(occurrence_id, request.ids)
        if result is None:
            raise HTTPException(status_code=404, detail="calendar event not found")
        return {"result": _result_payload(result)}

    @app.get("/api/local/export")
    def export_local() -> Response:
        return Response(
            content=app.state.context.coordinator.export_data(),
            media_type="application/json",
            headers={"Content-Disposition": 'attachment; filename="studiosync-backup.json"'},
        )

    @app.post("/api/local/import")
    def import_local(body: bytes = Depends(_read_body)) -> dict[str, Any]:
        result = app.state.context.coordinator.import_data(body.decode("utf-8", errors="replace"))
        if result.status == "error":
            raise HTTPException(status_code=400, detail=result.message)
        return {"result": _result_payload(result)}

    return app
