import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List
import requests

logger = logging.getLogger(__name__)

# Optional remote export of charging sessions
SESSIONS_URL = os.getenv("CHARGE_SESSIONS_URL")

POWER_EVENT_TYPES = {"power_consumption", "power"}

# Field aliases seen in older session exports
_CHARGER_ID_KEYS = ("charger_id", "chargerId", "deviceId", "device_id")
_CHARGER_NAME_KEYS = ("charger_name", "chargerName")
_DEVICE_NAME_KEYS = ("device_name", "deviceName")
_START_KEYS = ("start", "startTime", "start_time")
_END_KEYS = ("end", "endTime", "end_time")


@dataclass
class Reading:
    """Single power measurement within a session."""

    timestamp: datetime | None
    watts: float


@dataclass
class Session:
    """One charge cycle as seen by the pattern engine."""

    id: str
    charger_id: str
    start: datetime | None = None
    end: datetime | None = None
    device_name: str | None = None
    charger_name: str | None = None
    readings: List[Reading] = field(default_factory=list)

    @property
    def completed(self) -> bool:
        return self.end is not None

    @property
    def power_values(self) -> List[float]:
        return [r.watts for r in self.readings]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "charger_id": self.charger_id,
            "charger_name": self.charger_name,
            "device_name": self.device_name,
            "start": format_ts(self.start),
            "end": format_ts(self.end),
            "readings": [
                {"timestamp": format_ts(r.timestamp), "watts": r.watts}
                for r in self.readings
            ],
        }


def parse_ts(value: Any) -> datetime | None:
    """Parse an ISO timestamp, treating naive values as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(text)
        except ValueError:
            logger.debug("Unable to parse timestamp '%s'", value)
            return None
    else:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def format_ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _first(entry: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = entry.get(key)
        if value is not None:
            return value
    return None


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_readings(entry: Dict[str, Any]) -> List[Reading]:
    readings: List[Reading] = []
    raw_readings = entry.get("readings")
    if isinstance(raw_readings, list):
        for item in raw_readings:
            if isinstance(item, dict):
                value = _first(item, ("watts", "value", "power"))
                ts = item.get("timestamp") or item.get("ts")
            elif isinstance(item, (int, float)):
                value, ts = item, None
            else:
                continue
            try:
                readings.append(Reading(parse_ts(ts), float(value)))
            except (TypeError, ValueError):
                logger.debug("Skipping invalid reading: %s", item)
        return readings

    # Legacy exports keep readings as typed events next to relay on/off events
    for event in entry.get("events") or []:
        if not isinstance(event, dict):
            continue
        if event.get("type") not in POWER_EVENT_TYPES:
            continue
        try:
            readings.append(Reading(parse_ts(event.get("timestamp")), float(event.get("value"))))
        except (TypeError, ValueError):
            logger.debug("Skipping invalid power event: %s", event)
    return readings


def parse_session(entry: Dict[str, Any]) -> Session:
    """Normalise one exported session into a :class:`Session`."""
    session_id = _optional_str(entry.get("id"))
    if session_id is None:
        raise ValueError("session entry without an id")
    charger_id = _optional_str(_first(entry, _CHARGER_ID_KEYS)) or "unknown"
    return Session(
        id=session_id,
        charger_id=charger_id,
        charger_name=_optional_str(_first(entry, _CHARGER_NAME_KEYS)),
        device_name=_optional_str(_first(entry, _DEVICE_NAME_KEYS)),
        start=parse_ts(_first(entry, _START_KEYS)),
        end=parse_ts(_first(entry, _END_KEYS)),
        readings=_parse_readings(entry),
    )


def parse_sessions(data: Any) -> List[Session]:
    """Return the sessions contained in an export payload."""
    items: List[Dict[str, Any]]
    if isinstance(data, dict):
        items = data.get("sessions") or data.get("processes") or data.get("data") or []
    elif isinstance(data, list):
        items = data
    else:
        items = []
    sessions: List[Session] = []
    seen: set[str] = set()
    for it in items:
        if not isinstance(it, dict):
            continue
        try:
            session = parse_session(it)
        except ValueError:
            logger.debug("Skipping session without id: %s", it)
            continue
        if session.id in seen:
            logger.warning("Duplicate session id %s in export; keeping the first", session.id)
            continue
        seen.add(session.id)
        sessions.append(session)
    logger.debug("Parsed %d sessions", len(sessions))
    return sessions


def fetch_sessions(path: Path | None = None, url: str | None = None) -> List[Session]:
    """Fetch sessions either from a local export or the remote endpoint."""
    if path:
        logger.debug("Loading sessions from %s", path)
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
        return parse_sessions(data)
    url = url or SESSIONS_URL
    if not url:
        raise ValueError("No session export file or URL configured")
    logger.debug("Fetching sessions from %s", url)
    resp = requests.get(url, timeout=30)
    resp.raise_for_status()
    logger.debug("Fetched %d bytes from remote", len(resp.content))
    return parse_sessions(resp.json())
