from datetime import timedelta

from audit import ActivationEvent, ActivationLogSink, network_info_from_headers
from models import ActivationLog


def test_sink_writes_rows(session_factory, clock):
    sink = ActivationLogSink(session_factory, clock=clock)
    sink(ActivationEvent(
        code="CARMASTER-DEMO-A1B2C3D4-ABCD",
        device_id="dev-1",
        timestamp=clock.now,
        network_info={"ip": "10.1.2.3", "user_agent": "CarMaster/2.1", "country": "IT"},
    ))

    with session_factory() as db:
        [row] = db.query(ActivationLog).all()
    assert row.device_id == "dev-1"
    assert row.ip == "10.1.2.3"
    assert row.user_agent == "CarMaster/2.1"
    assert row.country == "IT"


def test_sink_prunes_past_retention(session_factory, clock):
    sink = ActivationLogSink(session_factory, retention_days=30, prune_every=3, clock=clock)
    old = clock.now - timedelta(days=45)
    sink(ActivationEvent(code="C1", device_id="dev-1", timestamp=old))
    sink(ActivationEvent(code="C2", device_id="dev-2", timestamp=old))

    with session_factory() as db:
        assert db.query(ActivationLog).count() == 2

    # Third write triggers the prune.
    sink(ActivationEvent(code="C3", device_id="dev-3", timestamp=clock.now))
    with session_factory() as db:
        assert [r.code for r in db.query(ActivationLog).all()] == ["C3"]


def test_network_info_from_headers():
    headers = {"x-forwarded-for": "203.0.113.9, 10.0.0.1", "user-agent": "ua", "cf-ipcountry": "DE"}
    assert network_info_from_headers(headers, "127.0.0.1") == {
        "ip": "203.0.113.9",
        "user_agent": "ua",
        "country": "DE",
    }
    assert network_info_from_headers({}, "127.0.0.1") == {
        "ip": "127.0.0.1",
        "user_agent": None,
        "country": "unknown",
    }
