import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from charge_watcher import storage
from charge_watcher.data import Reading, Session

TEST_DB_URL = os.getenv("CHARGE_TEST_DB_URL")

BASE = datetime(2026, 1, 1, 10, tzinfo=timezone.utc)


@pytest.fixture
def make_session():
    """Build a session whose readings are spread evenly over its duration."""

    def _make(
        session_id,
        watts,
        *,
        day=0,
        minutes=120,
        name=None,
        charger_id="charger1",
        charger_name="Office Charger",
        active=False,
    ):
        start = BASE + timedelta(days=day)
        end = start + timedelta(minutes=minutes)
        step = timedelta(minutes=minutes) / max(len(watts), 1)
        readings = [Reading(start + step * i, float(w)) for i, w in enumerate(watts)]
        return Session(
            id=str(session_id),
            charger_id=charger_id,
            charger_name=charger_name,
            device_name=name,
            start=start,
            end=None if active else end,
            readings=readings,
        )

    return _make


@pytest.fixture(scope="module")
def db_url():
    if not TEST_DB_URL:
        pytest.skip("CHARGE_TEST_DB_URL not configured", allow_module_level=True)
    return TEST_DB_URL


@pytest.fixture
def conn(db_url):
    connection = storage.connect(db_url)
    with connection.cursor() as cur:
        cur.execute("DELETE FROM pattern_snapshots")
        cur.execute("DELETE FROM power_readings")
        cur.execute("DELETE FROM charging_sessions")
    connection.commit()
    yield connection
    connection.close()
