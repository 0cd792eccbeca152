"""Device patterns and the store that groups sessions into them."""
from __future__ import annotations

import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Collection, Dict, Iterable, Iterator, List, Mapping, Tuple

from . import stats as stats_mod
from .data import Session, format_ts, parse_ts
from .errors import Conflict, InvalidInput, NotFound
from .names import clean_label, is_default_name, is_manual_name, manual_session_name, next_default_name
from .profile import Profile, combine_profiles, fold_profile, session_duration, session_profile, unfold_profile
from .similarity import SIMILARITY_THRESHOLD, similarity
from .stats import DurationStats

logger = logging.getLogger(__name__)


def new_pattern_id() -> str:
    return f"pattern_{uuid.uuid4().hex[:12]}"


@dataclass
class Pattern:
    """A group of sessions believed to come from the same device."""

    id: str
    device_name: str
    average_profile: Profile
    charger_id: str | None = None
    charger_name: str | None = None
    process_ids: List[str] = field(default_factory=list)
    statistics: DurationStats | None = None
    first_seen: datetime | None = None
    last_seen: datetime | None = None

    @property
    def count(self) -> int:
        return len(self.process_ids)

    @property
    def is_default_named(self) -> bool:
        return is_default_name(self.device_name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "charger_id": self.charger_id,
            "charger_name": self.charger_name,
            "device_name": self.device_name,
            "count": self.count,
            "process_ids": list(self.process_ids),
            "average_profile": self.average_profile.to_dict(),
            "statistics": self.statistics.to_dict() if self.statistics else None,
            "first_seen": format_ts(self.first_seen),
            "last_seen": format_ts(self.last_seen),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Pattern":
        process_ids: List[str] = []
        for pid in data.get("process_ids") or []:
            pid = str(pid)
            if pid not in process_ids:
                process_ids.append(pid)
        statistics = data.get("statistics")
        return cls(
            id=str(data["id"]),
            device_name=str(data["device_name"]),
            average_profile=Profile.from_dict(data["average_profile"]),
            charger_id=data.get("charger_id"),
            charger_name=data.get("charger_name"),
            process_ids=process_ids,
            statistics=DurationStats.from_dict(statistics) if statistics else None,
            first_seen=parse_ts(data.get("first_seen")),
            last_seen=parse_ts(data.get("last_seen")),
        )


def _earliest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _latest(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return max(a, b)


def _check_id(value: Any, kind: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidInput(f"Malformed {kind} id: {value!r}")
    return value


class ClusterStore:
    """Mutable collection of device patterns.

    Not thread safe: hosts must serialise every mutating call. Iteration
    order is insertion order, which also decides ties between equally
    similar patterns (the first one wins).
    """

    def __init__(self, patterns: Iterable[Pattern] | None = None) -> None:
        self._patterns: List[Pattern] = list(patterns or [])

    def __len__(self) -> int:
        return len(self._patterns)

    def __iter__(self) -> Iterator[Pattern]:
        return iter(list(self._patterns))

    @property
    def patterns(self) -> List[Pattern]:
        return list(self._patterns)

    def names(self) -> set[str]:
        return {p.device_name for p in self._patterns}

    def ids(self) -> set[str]:
        return {p.id for p in self._patterns}

    def _by_id(self, pattern_id: str) -> Pattern | None:
        for p in self._patterns:
            if p.id == pattern_id:
                return p
        return None

    def get(self, pattern_id: str) -> Pattern:
        _check_id(pattern_id, "pattern")
        pattern = self._by_id(pattern_id)
        if pattern is not None:
            return pattern
        raise NotFound(f"Pattern {pattern_id} not found")

    def find_by_name(self, name: str) -> Pattern | None:
        for p in self._patterns:
            if p.device_name == name:
                return p
        return None

    def pattern_for_session(self, session_id: str) -> Pattern | None:
        for p in self._patterns:
            if session_id in p.process_ids:
                return p
        return None

    def best_match(
        self,
        profile: Profile,
        candidates: Iterable[Pattern] | None = None,
        threshold: float = SIMILARITY_THRESHOLD,
    ) -> Tuple[Pattern | None, float]:
        """Strictly best scoring pattern at or above ``threshold``."""
        best: Pattern | None = None
        best_score = 0.0
        for pattern in self._patterns if candidates is None else candidates:
            score = similarity(profile, pattern.average_profile)
            if score > best_score and score >= threshold:
                best, best_score = pattern, score
        return best, best_score

    def sort_by_count(self) -> None:
        self._patterns.sort(key=lambda p: p.count, reverse=True)

    def snapshot(self) -> List[Pattern]:
        """Deep copy for readers running outside the writer's lock."""
        return copy.deepcopy(self._patterns)

    def to_dicts(self) -> List[Dict[str, Any]]:
        return [p.to_dict() for p in self._patterns]

    @classmethod
    def from_dicts(cls, items: Iterable[Dict[str, Any]]) -> "ClusterStore":
        patterns: List[Pattern] = []
        claimed: set[str] = set()
        names: set[str] = set()
        for item in items:
            pattern = Pattern.from_dict(item)
            duplicates = [pid for pid in pattern.process_ids if pid in claimed]
            if duplicates:
                logger.warning(
                    "Pattern %s lists sessions already grouped elsewhere: %s",
                    pattern.id,
                    ", ".join(duplicates),
                )
                pattern.process_ids = [pid for pid in pattern.process_ids if pid not in claimed]
            if not pattern.process_ids:
                logger.warning("Dropping empty pattern %s from snapshot", pattern.id)
                continue
            if pattern.device_name in names:
                logger.warning(
                    "Pattern %s reuses device name '%s'", pattern.id, pattern.device_name
                )
            claimed.update(pattern.process_ids)
            names.add(pattern.device_name)
            patterns.append(pattern)
        return cls(patterns)

    # -- membership -----------------------------------------------------

    def _create(
        self,
        session: Session,
        profile: Profile,
        name: str,
        pattern_id: str | None = None,
    ) -> Pattern:
        duration = session_duration(session)
        pattern = Pattern(
            id=pattern_id or new_pattern_id(),
            device_name=name,
            average_profile=profile.copy(),
            charger_id=session.charger_id,
            charger_name=session.charger_name or session.charger_id,
            process_ids=[session.id],
            statistics=stats_mod.from_durations([duration]),
            first_seen=session.start,
            last_seen=session.end,
        )
        self._patterns.append(pattern)
        logger.debug("Created pattern %s '%s' from session %s", pattern.id, name, session.id)
        return pattern

    def _add_member(self, pattern: Pattern, session: Session, profile: Profile) -> None:
        pattern.process_ids.append(session.id)
        fold_profile(pattern.average_profile, profile, pattern.count)
        duration = session_duration(session)
        if duration is not None:
            pattern.statistics = stats_mod.add_duration(pattern.statistics, duration)
        pattern.first_seen = _earliest(pattern.first_seen, session.start)
        pattern.last_seen = _latest(pattern.last_seen, session.end)

    def _remove_member(self, pattern: Pattern, session: Session, profile: Profile | None) -> None:
        previous_count = pattern.count
        pattern.process_ids.remove(session.id)
        if not pattern.process_ids:
            self._patterns.remove(pattern)
            logger.info("Removed pattern %s '%s' after its last session left", pattern.id, pattern.device_name)
            return
        if profile is not None:
            unfold_profile(pattern.average_profile, profile, previous_count)
        duration = session_duration(session)
        if duration is not None:
            pattern.statistics = stats_mod.remove_duration(pattern.statistics, duration)

    def match_or_create(
        self,
        session: Session,
        profile: Profile,
        *,
        respect_labels: bool = False,
        prior: Pattern | None = None,
        reserved: Collection[str] = (),
    ) -> Pattern:
        """Assign ``session`` to its best pattern, creating one if needed.

        With ``respect_labels`` a manually named session only considers the
        pattern carrying that name. ``prior`` is an identity from an earlier
        analysis to reuse when a new pattern has to be created, and
        ``reserved`` holds names that fresh default names must avoid.
        A session still recorded under the ``prior`` name rejoins that
        identity directly once it exists, so merges and group renames
        survive re-analysis.
        """
        _check_id(session.id, "session")
        current = self.pattern_for_session(session.id)
        if current is not None:
            return current

        if prior is not None and session.device_name == prior.device_name:
            kept = self._by_id(prior.id)
            if kept is not None:
                self._add_member(kept, session, profile)
                logger.debug("Session %s rejoined pattern %s '%s'", session.id, kept.id, kept.device_name)
                return kept

        manual = manual_session_name(session)
        candidates: Iterable[Pattern] = self._patterns
        if respect_labels and manual:
            candidates = [p for p in self._patterns if p.device_name == manual]
        match, score = self.best_match(profile, candidates)
        if match is None and manual:
            # Names stay unique, so a known label wins over a weak profile match
            match = self.find_by_name(manual)

        if match is not None:
            self._add_member(match, session, profile)
            if (
                manual
                and match.device_name != manual
                and not is_manual_name(match.device_name)
                and self.find_by_name(manual) is None
            ):
                logger.info(
                    "Pattern %s renamed from '%s' to '%s' after matching session %s",
                    match.id,
                    match.device_name,
                    manual,
                    session.id,
                )
                match.device_name = manual
            logger.debug(
                "Session %s matched pattern %s '%s' (similarity %.3f)",
                session.id,
                match.id,
                match.device_name,
                score,
            )
            return match

        taken = self.names()
        pattern_id = None
        if prior is not None and prior.id not in self.ids():
            pattern_id = prior.id
        if manual:
            name = manual
        elif prior is not None and prior.device_name not in taken:
            name = prior.device_name
        else:
            name = next_default_name(len(self._patterns), taken | set(reserved))
        return self._create(session, profile, name, pattern_id)

    # -- label management -----------------------------------------------

    def relabel_single(
        self,
        session: Session,
        new_name: str,
        profile: Profile | None = None,
    ) -> Pattern | None:
        """Move one session to the pattern called ``new_name``.

        The session leaves its current pattern (which disappears if that
        empties it) and joins the named pattern, or becomes the first member
        of a new one. Returns ``None`` when the session has no usable profile
        and so can only lose its old membership, or when it is still
        charging: only its name changes then, and it is grouped with its
        full readings once it completes.
        """
        name = clean_label(new_name)
        _check_id(session.id, "session")
        if not session.completed and self.pattern_for_session(session.id) is None:
            session.device_name = name
            logger.info("Active session %s named '%s'; grouping waits for completion", session.id, name)
            return None
        if profile is None:
            profile = session_profile(session)

        current = self.pattern_for_session(session.id)
        session.device_name = name
        if current is not None:
            if current.device_name == name:
                return current
            self._remove_member(current, session, profile)

        if profile is None:
            logger.info("Session %s renamed to '%s' without a usable profile", session.id, name)
            return None

        target = self.find_by_name(name)
        if target is not None:
            self._add_member(target, session, profile)
            logger.info("Session %s moved to pattern %s '%s'", session.id, target.id, name)
            return target
        pattern = self._create(session, profile, name)
        logger.info("Session %s split into new pattern %s '%s'", session.id, pattern.id, name)
        return pattern

    def relabel_group(
        self,
        pattern_id: str,
        new_name: str,
        *,
        bulk: bool = False,
        sessions: Mapping[str, Session] | None = None,
    ) -> Pattern:
        """Rename a pattern, refusing names already used elsewhere.

        With ``bulk`` the new name is also written to every member session
        found in ``sessions``; hosts should recluster afterwards.
        """
        name = clean_label(new_name)
        pattern = self.get(pattern_id)
        existing = self.find_by_name(name)
        if existing is not None and existing.id != pattern.id:
            raise Conflict(
                f"Label '{name}' is already used by pattern {existing.id}",
                existing.id,
            )
        old_name = pattern.device_name
        pattern.device_name = name
        if bulk and sessions:
            for pid in pattern.process_ids:
                session = sessions.get(pid)
                if session is not None:
                    session.device_name = name
        logger.info("Pattern %s relabelled from '%s' to '%s' (bulk=%s)", pattern.id, old_name, name, bulk)
        return pattern

    def merge(
        self,
        source_id: str,
        target_id: str,
        *,
        sessions: Mapping[str, Session] | None = None,
    ) -> Pattern:
        """Fold the source pattern into the target and drop the source."""
        _check_id(source_id, "pattern")
        _check_id(target_id, "pattern")
        if source_id == target_id:
            raise InvalidInput("Cannot merge a pattern into itself")
        source = self.get(source_id)
        target = self.get(target_id)

        target_weight = target.count
        source_weight = source.count
        for pid in source.process_ids:
            if pid not in target.process_ids:
                target.process_ids.append(pid)
        combine_profiles(target.average_profile, source.average_profile, target_weight, source_weight)
        target.first_seen = _earliest(target.first_seen, source.first_seen)
        target.last_seen = _latest(target.last_seen, source.last_seen)
        target.statistics = stats_mod.combine(target.statistics, source.statistics)
        self._patterns.remove(source)

        if sessions:
            for pid in source.process_ids:
                session = sessions.get(pid)
                if session is not None:
                    session.device_name = target.device_name
        logger.info(
            "Merged pattern %s '%s' into %s '%s' (%d sessions)",
            source.id,
            source.device_name,
            target.id,
            target.device_name,
            target.count,
        )
        return target

    def delete(self, pattern_id: str) -> Pattern:
        """Forget a pattern; its sessions keep their names."""
        pattern = self.get(pattern_id)
        self._patterns.remove(pattern)
        logger.info("Deleted pattern %s '%s'", pattern.id, pattern.device_name)
        return pattern
