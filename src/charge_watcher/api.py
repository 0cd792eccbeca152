"""FastAPI backend exposing device patterns for charging sessions."""
from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from pymysql.err import OperationalError

from . import stats as stats_mod
from . import storage
from .analyze import diagnose
from .data import Session
from .errors import ChargeWatcherError, Conflict, InsufficientData, InvalidInput, NotFound
from .live import auto_assign, estimate_remaining, is_finishing, ranked_matches
from .logging_utils import setup_logging
from .patterns import ClusterStore
from .profile import require_profile
from .recluster import recluster
from .rules import Rules

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Runtime configuration for the backend service."""

    db_url: str
    rules: Rules
    cors_origins: list[str]
    debug: bool
    auto_assign: bool
    snapshot_retry_interval: int


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def load_settings() -> Settings:
    """Load backend configuration from environment variables."""

    db_url = os.getenv("CHARGE_DB_URL")
    if not db_url:
        raise RuntimeError("CHARGE_DB_URL must be configured")

    default_rules = Rules()
    rules = Rules(
        low_power_watts=float(
            os.getenv("CHARGE_RULE_LOW_POWER_W", str(default_rules.low_power_watts))
        ),
        stability_window_min=float(
            os.getenv("CHARGE_RULE_STABILITY_MIN", str(default_rules.stability_window_min))
        ),
        buffer_window_min=float(
            os.getenv("CHARGE_RULE_BUFFER_MIN", str(default_rules.buffer_window_min))
        ),
        min_total_readings=int(
            os.getenv("CHARGE_RULE_MIN_READINGS", str(default_rules.min_total_readings))
        ),
    )

    cors_env = os.getenv("CHARGE_CORS_ORIGINS", "*")
    cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
    debug = _parse_bool(os.getenv("CHARGE_DEBUG"), False)
    auto_assign_enabled = _parse_bool(os.getenv("CHARGE_AUTO_ASSIGN"), True)
    retry_interval = int(os.getenv("CHARGE_SNAPSHOT_RETRY_INTERVAL", "30"))

    return Settings(
        db_url=db_url,
        rules=rules,
        cors_origins=cors_origins or ["*"],
        debug=debug,
        auto_assign=auto_assign_enabled,
        snapshot_retry_interval=retry_interval,
    )

_INITIAL_SETTINGS = load_settings()

app = FastAPI(title="Charge Watcher API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=_INITIAL_SETTINGS.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)


class LabelUpdate(BaseModel):
    name: str
    bulk: bool = False


class MergeRequest(BaseModel):
    target_id: str


class SessionName(BaseModel):
    name: str


def _connect_db(settings: Settings):
    try:
        return storage.connect(settings.db_url)
    except OperationalError as exc:
        logger.exception("Failed to connect to MySQL")
        raise HTTPException(
            status_code=503,
            detail=(
                "Unable to connect to the Charge Watcher database. "
                "Verify that the MySQL service is reachable and credentials are valid."
            ),
        ) from exc


def _http_error(exc: ChargeWatcherError) -> HTTPException:
    if isinstance(exc, NotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, Conflict):
        return HTTPException(
            status_code=409,
            detail={
                "error": str(exc),
                "should_merge": exc.should_merge,
                "target_pattern_id": exc.existing_id,
            },
        )
    if isinstance(exc, (InvalidInput, InsufficientData)):
        return HTTPException(status_code=422, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _require_settings() -> Settings:
    settings = getattr(app.state, "settings", None)
    if settings is None:  # pragma: no cover - startup should populate
        raise HTTPException(status_code=503, detail="Service not initialised")
    return settings


def _store() -> ClusterStore:
    return app.state.store


def _load_store(settings: Settings) -> ClusterStore:
    conn = _connect_db(settings)
    try:
        return storage.load_patterns_snapshot(conn)
    finally:
        conn.close()


def _load_sessions(settings: Settings) -> Dict[str, Session]:
    conn = _connect_db(settings)
    try:
        return {s.id: s for s in storage.load_sessions(conn)}
    finally:
        conn.close()


def _load_session(settings: Settings, session_id: str) -> Session:
    conn = _connect_db(settings)
    try:
        session = storage.load_session(conn, session_id)
    finally:
        conn.close()
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session {session_id} not found")
    return session


def _write_names(settings: Settings, names: Dict[str, str | None]) -> None:
    if not names:
        return
    conn = _connect_db(settings)
    try:
        storage.update_session_names(conn, names)
    finally:
        conn.close()


def _write_name(settings: Settings, session_id: str, name: str | None) -> None:
    conn = _connect_db(settings)
    try:
        storage.update_session_name(conn, session_id, name)
    finally:
        conn.close()


def _write_snapshot(settings: Settings, store: ClusterStore) -> None:
    conn = _connect_db(settings)
    try:
        storage.save_patterns_snapshot(conn, store)
    finally:
        conn.close()


async def _persist(settings: Settings) -> bool:
    """Snapshot the in-memory store; failures are retried in the background."""
    store = ClusterStore(_store().snapshot())
    try:
        await asyncio.to_thread(_write_snapshot, settings, store)
    except Exception:
        logger.exception("Saving pattern snapshot failed; keeping in-memory state and retrying")
        app.state.snapshot_dirty = True
        return False
    app.state.snapshot_dirty = False
    app.state.last_snapshot = datetime.now().astimezone().isoformat(timespec="seconds")
    return True


async def _snapshot_retry_loop(settings: Settings) -> None:
    interval = max(settings.snapshot_retry_interval, 1)
    logger.info("Starting snapshot retry loop with interval %ss", interval)
    try:
        while True:
            await asyncio.sleep(interval)
            if not getattr(app.state, "snapshot_dirty", False):
                continue
            async with app.state.store_lock:
                if app.state.snapshot_dirty:
                    await _persist(settings)
    except asyncio.CancelledError:  # pragma: no cover - shutdown cleanup
        logger.debug("Snapshot retry loop cancelled")
        raise


async def _read_patterns():
    async with app.state.store_lock:
        return _store().snapshot()


@app.on_event("startup")
async def on_startup() -> None:
    settings = load_settings()
    setup_logging(settings.debug)
    logger.debug("Loaded settings: %s", settings)
    app.state.settings = settings
    if settings.cors_origins != _INITIAL_SETTINGS.cors_origins:
        logger.warning(
            "CORS origin configuration changed to %s after startup; restart required for changes to apply.",
            settings.cors_origins,
        )
    app.state.store_lock = asyncio.Lock()
    app.state.snapshot_dirty = False
    app.state.last_snapshot = None
    app.state.store = await asyncio.to_thread(_load_store, settings)
    app.state.retry_task = asyncio.create_task(_snapshot_retry_loop(settings))


@app.on_event("shutdown")
async def on_shutdown() -> None:
    task: asyncio.Task | None = getattr(app.state, "retry_task", None)
    if task is not None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        finally:
            app.state.retry_task = None
    if getattr(app.state, "snapshot_dirty", False):
        await _persist(app.state.settings)


@app.get("/healthz")
async def healthz() -> Dict[str, Any]:
    _require_settings()
    return {
        "status": "ok",
        "patterns": len(_store()),
        "snapshot_dirty": getattr(app.state, "snapshot_dirty", False),
        "last_snapshot": getattr(app.state, "last_snapshot", None),
    }


@app.get("/api/patterns")
async def list_patterns() -> Dict[str, Any]:
    _require_settings()
    patterns = await _read_patterns()
    return {
        "patterns": [p.to_dict() for p in patterns],
        "summary": stats_mod.from_patterns(patterns),
    }


@app.post("/api/patterns/recluster")
async def trigger_recluster(wipe: bool = Query(False)) -> Dict[str, Any]:
    settings = _require_settings()
    async with app.state.store_lock:
        sessions = await asyncio.to_thread(_load_sessions, settings)
        previous = [] if wipe else _store().snapshot()
        app.state.store = await asyncio.to_thread(recluster, list(sessions.values()), previous)
        await _persist(settings)
        patterns = _store().snapshot()
    return {"patterns": [p.to_dict() for p in patterns], "wiped": wipe}


@app.put("/api/patterns/{pattern_id}/label")
async def update_pattern_label(pattern_id: str, body: LabelUpdate) -> Dict[str, Any]:
    settings = _require_settings()
    async with app.state.store_lock:
        working = ClusterStore(_store().snapshot())
        sessions: Dict[str, Session] = {}
        if body.bulk:
            sessions = await asyncio.to_thread(_load_sessions, settings)
        try:
            pattern = working.relabel_group(pattern_id, body.name, bulk=body.bulk, sessions=sessions)
        except ChargeWatcherError as exc:
            raise _http_error(exc) from exc
        if body.bulk:
            names = {pid: pattern.device_name for pid in pattern.process_ids if pid in sessions}
            await asyncio.to_thread(_write_names, settings, names)
            # Renamed sessions can now group differently on label grounds
            working = await asyncio.to_thread(recluster, list(sessions.values()), working.patterns)
        app.state.store = working
        await _persist(settings)
        result = working.find_by_name(body.name.strip())
    return {"pattern": result.to_dict() if result else None, "bulk": body.bulk}


@app.post("/api/patterns/{source_id}/merge")
async def merge_patterns(source_id: str, body: MergeRequest) -> Dict[str, Any]:
    settings = _require_settings()
    async with app.state.store_lock:
        working = ClusterStore(_store().snapshot())
        sessions = await asyncio.to_thread(_load_sessions, settings)
        try:
            source_ids = list(working.get(source_id).process_ids)
            target = working.merge(source_id, body.target_id, sessions=sessions)
        except ChargeWatcherError as exc:
            raise _http_error(exc) from exc
        names = {pid: target.device_name for pid in source_ids if pid in sessions}
        await asyncio.to_thread(_write_names, settings, names)
        app.state.store = working
        await _persist(settings)
    return {"pattern": target.to_dict(), "removed_pattern_id": source_id}


@app.delete("/api/patterns/{pattern_id}")
async def delete_pattern(pattern_id: str) -> Dict[str, Any]:
    settings = _require_settings()
    async with app.state.store_lock:
        working = ClusterStore(_store().snapshot())
        try:
            removed = working.delete(pattern_id)
        except ChargeWatcherError as exc:
            raise _http_error(exc) from exc
        app.state.store = working
        await _persist(settings)
    return {"deleted": removed.to_dict()}


@app.put("/api/sessions/{session_id}/name")
async def update_session_name(session_id: str, body: SessionName) -> Dict[str, Any]:
    settings = _require_settings()
    async with app.state.store_lock:
        session = await asyncio.to_thread(_load_session, settings, session_id)
        working = ClusterStore(_store().snapshot())
        try:
            pattern = working.relabel_single(session, body.name)
        except ChargeWatcherError as exc:
            raise _http_error(exc) from exc
        await asyncio.to_thread(_write_name, settings, session.id, session.device_name)
        app.state.store = working
        await _persist(settings)
    return {
        "session_id": session.id,
        "device_name": session.device_name,
        "pattern": pattern.to_dict() if pattern else None,
    }


@app.post("/api/sessions/{session_id}/complete")
async def complete_session(session_id: str) -> Dict[str, Any]:
    """Group a session the host has just closed, naming it when confident."""
    settings = _require_settings()
    async with app.state.store_lock:
        session = await asyncio.to_thread(_load_session, settings, session_id)
        if not session.completed:
            raise HTTPException(status_code=422, detail=f"Session {session_id} is still active")
        working = ClusterStore(_store().snapshot())
        match = auto_assign(session, working) if settings.auto_assign else None
        try:
            profile = require_profile(session)
            # A name given while charging decides the group, as in a recluster
            pattern = working.match_or_create(session, profile, respect_labels=True)
        except ChargeWatcherError as exc:
            raise _http_error(exc) from exc
        if match is not None:
            await asyncio.to_thread(_write_name, settings, session.id, session.device_name)
        app.state.store = working
        await _persist(settings)
    return {
        "session_id": session.id,
        "device_name": session.device_name,
        "auto_assigned": match.to_dict() if match else None,
        "pattern": pattern.to_dict(),
    }


@app.get("/api/sessions/{session_id}/guess")
async def session_guess(session_id: str) -> Dict[str, Any]:
    settings = _require_settings()
    session = await asyncio.to_thread(_load_session, settings, session_id)
    patterns = await _read_patterns()
    matches = ranked_matches(session, patterns)
    return {"session_id": session_id, "guess": matches[0].to_dict() if matches else None}


@app.get("/api/sessions/{session_id}/guesses")
async def session_guesses(
    session_id: str,
    exclude: List[str] = Query(default=[]),
) -> Dict[str, Any]:
    settings = _require_settings()
    session = await asyncio.to_thread(_load_session, settings, session_id)
    patterns = await _read_patterns()
    matches = ranked_matches(session, patterns, exclude=exclude)
    return {"session_id": session_id, "guesses": [m.to_dict() for m in matches]}


@app.get("/api/sessions/{session_id}/completion")
async def session_completion(session_id: str) -> Dict[str, Any]:
    settings = _require_settings()
    session = await asyncio.to_thread(_load_session, settings, session_id)
    return {
        "session_id": session_id,
        "finishing": is_finishing(session, rules=settings.rules),
        "rules": asdict(settings.rules),
    }


@app.get("/api/sessions/{session_id}/estimate")
async def session_estimate(session_id: str) -> Dict[str, Any]:
    settings = _require_settings()
    session = await asyncio.to_thread(_load_session, settings, session_id)
    patterns = await _read_patterns()
    estimate = estimate_remaining(session, patterns, rules=settings.rules)
    return {"session_id": session_id, "estimate": estimate.to_dict() if estimate else None}


@app.get("/api/diagnostics")
async def diagnostics() -> Dict[str, Any]:
    settings = _require_settings()
    sessions = await asyncio.to_thread(_load_sessions, settings)
    patterns = await _read_patterns()
    return {"sessions": diagnose(sessions.values(), patterns)}


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    import uvicorn

    uvicorn.run(
        "charge_watcher.api:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", "8000")),
    )
