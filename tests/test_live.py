from datetime import datetime, timedelta, timezone

import pytest

from charge_watcher.data import Reading, Session
from charge_watcher.live import (
    auto_assign,
    best_match,
    estimate_remaining,
    is_finishing,
    ranked_matches,
)
from charge_watcher.patterns import Pattern
from charge_watcher.profile import power_profile
from charge_watcher.recluster import recluster
from charge_watcher.rules import Rules

BASE = datetime(2026, 1, 1, 10, tzinfo=timezone.utc)

LAPTOP = [45, 43, 40, 38]
LAPTOP_AGAIN = [46, 44, 41, 39]
PHONE = [15, 12, 10, 8]
EARBUDS = [5, 5.5, 5.2, 5]


@pytest.fixture
def known(make_session):
    """Laptop seen twice (120 and 100 minutes) and a phone seen once."""
    return recluster(
        [
            make_session("s1", LAPTOP, minutes=120),
            make_session("s2", LAPTOP_AGAIN, day=1, minutes=100),
            make_session("s3", PHONE, day=2, minutes=60),
        ]
    )


def _at(minutes):
    return BASE + timedelta(minutes=minutes)


def test_best_match_for_active_session(make_session, known):
    live = make_session("live", LAPTOP, day=0, active=True)
    match = best_match(live, known)
    assert match.pattern.device_name == "Hugo"
    assert match.similarity >= 0.95


def test_best_match_none_below_threshold(make_session, known):
    assert best_match(make_session("live", EARBUDS, active=True), known) is None
    assert best_match(make_session("live", [40, 41], active=True), known) is None


def test_ranked_matches_with_exclusions(make_session):
    patterns = [
        Pattern(id="pattern_a", device_name="MacBook", average_profile=power_profile(LAPTOP), process_ids=["a"]),
        Pattern(id="pattern_b", device_name="ThinkPad", average_profile=power_profile(LAPTOP_AGAIN), process_ids=["b"]),
    ]
    live = make_session("live", LAPTOP, active=True)

    ranked = ranked_matches(live, patterns)
    assert [m.pattern.id for m in ranked] == ["pattern_a", "pattern_b"]
    assert ranked[0].similarity == 1.0
    assert ranked[0].similarity >= ranked[1].similarity

    assert [m.pattern.id for m in ranked_matches(live, patterns, exclude={"pattern_a"})] == ["pattern_b"]
    assert [m.pattern.id for m in ranked_matches(live, patterns, exclude={"ThinkPad"})] == ["pattern_a"]


def test_guessing_does_not_modify_anything(make_session, known):
    before = known.to_dicts()
    live = make_session("live", LAPTOP, active=True)
    ranked_matches(live, known)
    estimate_remaining(live, known, now=_at(30))
    assert known.to_dicts() == before
    assert live.device_name is None


def test_auto_assign_names_confident_match(make_session, known):
    session = make_session("s9", LAPTOP, day=5)
    match = auto_assign(session, known)
    assert match is not None
    assert session.device_name == "Hugo"


def test_auto_assign_respects_manual_name(make_session, known):
    session = make_session("s9", LAPTOP, day=5, name="Work laptop")
    assert auto_assign(session, known) is None
    assert session.device_name == "Work laptop"


def test_auto_assign_skips_weak_match(make_session, known):
    session = make_session("s9", EARBUDS, day=5)
    assert auto_assign(session, known) is None
    assert session.device_name is None


def test_steady_charging_is_not_finishing(make_session):
    session = make_session("live", [20] * 25, minutes=25, active=True)
    assert not is_finishing(session, now=_at(25))


def test_trickle_charging_is_finishing(make_session):
    session = make_session("live", [20] * 20 + [2] * 10, minutes=30, active=True)
    assert is_finishing(session, now=_at(30))


def test_trickle_after_gap_in_readings_is_finishing():
    readings = [Reading(_at(m), 20.0) for m in range(20)]
    readings += [Reading(_at(m), 2.0) for m in range(22, 30)]
    session = Session(id="live", charger_id="charger1", start=BASE, readings=readings)
    assert is_finishing(session, now=_at(30))

def test_rising_power_is_not_finishing(make_session):
    session = make_session("live", [1] * 20 + [3] * 10, minutes=30, active=True)
    assert not is_finishing(session, now=_at(30))


def test_finishing_needs_enough_readings(make_session):
    session = make_session("live", [2] * 15, minutes=15, active=True)
    assert not is_finishing(session, now=_at(15))


def test_completed_session_is_never_finishing(make_session):
    session = make_session("done", [20] * 20 + [2] * 10, minutes=30)
    assert not is_finishing(session, now=_at(30))


def test_custom_rules(make_session):
    session = make_session("live", [20] * 20 + [6] * 10, minutes=30, active=True)
    assert not is_finishing(session, now=_at(30))
    assert is_finishing(session, now=_at(30), rules=Rules(low_power_watts=10))


def test_estimate_for_finished_session(make_session, known):
    session = make_session("live", [20] * 20 + [2] * 10, minutes=30, active=True)
    estimate = estimate_remaining(session, known, now=_at(30))
    assert estimate.finished
    assert estimate.remaining_minutes == 0
    assert estimate.confidence == 0.95
    assert estimate.elapsed_minutes == 30


def test_estimate_early_in_session(make_session, known):
    live = make_session("live", LAPTOP, minutes=30, active=True)
    estimate = estimate_remaining(live, known, now=_at(30))
    assert not estimate.finished
    assert estimate.device_name == "Hugo"
    assert estimate.remaining_minutes == 80
    assert estimate.confidence == round(min(estimate.similarity * 0.9, 0.95), 3)


def test_estimate_within_usual_range(make_session, known):
    live = make_session("live", LAPTOP, minutes=30, active=True)
    estimate = estimate_remaining(live, known, now=_at(105))
    assert estimate.remaining_minutes == 5
    assert estimate.confidence == 0.95


def test_estimate_past_average_duration(make_session, known):
    live = make_session("live", LAPTOP, minutes=30, active=True)
    estimate = estimate_remaining(live, known, now=_at(115))
    assert estimate.remaining_minutes == 5
    assert estimate.confidence == round(estimate.similarity * 0.7, 3)

    late = estimate_remaining(live, known, now=_at(200))
    assert late.remaining_minutes == 0


def test_estimate_without_match_or_statistics(make_session, known):
    assert estimate_remaining(make_session("live", EARBUDS, active=True), known, now=_at(10)) is None

    bare = Pattern(id="pattern_a", device_name="MacBook", average_profile=power_profile(LAPTOP), process_ids=["a"])
    live = make_session("live", LAPTOP, active=True)
    assert estimate_remaining(live, [bare], now=_at(10)) is None
