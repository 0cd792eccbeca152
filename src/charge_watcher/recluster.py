"""Rebuild the whole pattern collection from the session history."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Tuple

from . import stats as stats_mod
from .data import Session
from .names import manual_session_name
from .patterns import ClusterStore, Pattern
from .profile import Profile, session_duration, session_profile

logger = logging.getLogger(__name__)


def _start_key(session: Session) -> float:
    if session.start is None:
        return float("inf")
    return session.start.timestamp()


def analysable_sessions(sessions: Iterable[Session]) -> List[Tuple[Session, Profile]]:
    """Completed sessions with a usable profile, oldest first."""
    result: List[Tuple[Session, Profile]] = []
    for session in sorted(sessions, key=_start_key):
        if not session.completed:
            continue
        profile = session_profile(session)
        if profile is None:
            continue
        result.append((session, profile))
    return result


def _keeps_prior_identity(session: Session, prior: Pattern) -> bool:
    # A manual name that differs from the old pattern is a deliberate rename
    manual = manual_session_name(session)
    return manual is None or manual == prior.device_name


def _carries_prior_name(session: Session, prior: Pattern | None) -> bool:
    return prior is not None and session.device_name == prior.device_name


def recluster(
    sessions: Iterable[Session],
    previous: Iterable[Pattern] | None = None,
) -> ClusterStore:
    """Group every completed session into device patterns from scratch.

    Identities (id and name) of ``previous`` patterns are carried over when
    a session that belonged to one still carries the name it had, so
    repeated analysis of unchanged data is stable. Sessions still recorded
    under their previous group's name rejoin it, which keeps merges. Manual
    labels decide grouping before profile similarity does.
    """
    sessions = list(sessions)
    previous = list(previous or [])
    logger.info("Pattern analysis: starting with %d sessions", len(sessions))

    candidates = analysable_sessions(sessions)
    logger.info("Pattern analysis: %d completed sessions with valid profiles", len(candidates))

    prior_by_session: Dict[str, Pattern] = {}
    for pattern in previous:
        for pid in pattern.process_ids:
            prior_by_session.setdefault(pid, pattern)

    eligible: Dict[str, Pattern] = {}
    for session, _ in candidates:
        prior = prior_by_session.get(session.id)
        if prior is not None and _keeps_prior_identity(session, prior):
            eligible[session.id] = prior
    reserved = {p.device_name for p in eligible.values()}

    # Sessions still named after their previous group go last so the group
    # is seeded by profile before they rejoin it
    carried = [c for c in candidates if _carries_prior_name(c[0], eligible.get(c[0].id))]
    carried_ids = {s.id for s, _ in carried}
    ordered = [c for c in candidates if c[0].id not in carried_ids] + carried

    store = ClusterStore()
    for session, profile in ordered:
        store.match_or_create(
            session,
            profile,
            respect_labels=True,
            prior=eligible.get(session.id),
            reserved=reserved,
        )

    by_id = {s.id: s for s, _ in candidates}
    for pattern in store:
        durations = [session_duration(by_id[pid]) for pid in pattern.process_ids]
        pattern.statistics = stats_mod.from_durations(durations)
        logger.debug(
            "Pattern %s '%s': %d sessions [%s]",
            pattern.id,
            pattern.device_name,
            pattern.count,
            ", ".join(pattern.process_ids),
        )

    store.sort_by_count()
    logger.info("Pattern analysis complete: found %d patterns", len(store))
    return store
