from charge_watcher.analyze import diagnose
from charge_watcher.recluster import recluster


def test_diagnose_explains_each_session(make_session):
    sessions = [
        make_session("grouped", [45, 43, 40, 38]),
        make_session("named", [15, 12, 10, 8], day=1, name="Pixel"),
        make_session("short", [10, 0], day=2),
        make_session("live", [20, 20, 20], day=3, active=True),
        make_session("late", [5, 5.5, 5.2, 5], day=4),
    ]
    store = recluster(sessions[:4])
    report = {row["session_id"]: row for row in diagnose(sessions, store)}

    assert report["grouped"]["pattern_name"] == "Hugo"
    assert "default name" in report["grouped"]["reason"]
    assert report["grouped"]["profile"]["mean"] == 41.5

    assert report["named"]["manual_name"]
    assert report["named"]["pattern_name"] == "Pixel"
    assert report["named"]["reason"] is None

    assert report["short"]["positive_readings"] == 1
    assert report["short"]["profile"] is None
    assert report["short"]["reason"].startswith("insufficient data")

    assert report["live"]["status"] == "active"
    assert report["live"]["pattern_id"] is None
    assert report["live"]["reason"].startswith("still charging")

    assert report["late"]["reason"].startswith("not grouped yet")
