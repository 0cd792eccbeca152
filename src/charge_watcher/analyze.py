from typing import Any, Dict, Iterable, List
import logging

from .data import Session
from .names import manual_session_name
from .patterns import Pattern
from .profile import MIN_READINGS, session_profile

logger = logging.getLogger(__name__)


def _reason(session: Session, positive: int, has_profile: bool, pattern: Pattern | None) -> str | None:
    if not has_profile:
        return f"insufficient data: {positive} positive readings, need {MIN_READINGS}+"
    if not session.completed:
        return "still charging; grouped once the session completes"
    if pattern is None:
        return "not grouped yet; run a recluster"
    if pattern.is_default_named and manual_session_name(session) is None:
        return "grouped under a default name; label the pattern to name the device"
    return None


def diagnose(sessions: Iterable[Session], patterns: Iterable[Pattern]) -> List[Dict[str, Any]]:
    """Explain, per session, its profile and group status."""
    by_session: Dict[str, Pattern] = {}
    for p in patterns:
        for pid in p.process_ids:
            by_session.setdefault(pid, p)

    report: List[Dict[str, Any]] = []
    for s in sessions:
        positive = len([v for v in s.power_values if v > 0])
        profile = session_profile(s)
        pattern = by_session.get(s.id)
        report.append(
            {
                "session_id": s.id,
                "charger_id": s.charger_id,
                "device_name": s.device_name,
                "status": "completed" if s.completed else "active",
                "readings": len(s.readings),
                "positive_readings": positive,
                "manual_name": manual_session_name(s) is not None,
                "profile": profile.to_dict() if profile else None,
                "pattern_id": pattern.id if pattern else None,
                "pattern_name": pattern.device_name if pattern else None,
                "reason": _reason(s, positive, profile is not None, pattern),
            }
        )
    logger.debug(
        "Diagnosed %d sessions, %d without a pattern",
        len(report),
        len([r for r in report if r["pattern_id"] is None]),
    )
    return report
