from datetime import UTC, datetime, timedelta

from cluster.clusterer import assign_incident_to_group, group_incidents
from models.incident import CallTypeCategory, Incident
from store.db import Database
from store.incidents import get_incident, insert_incident


T0 = datetime(2030, 5, 1, 12, 0, tzinfo=UTC)


def _insert(
    db: Database,
    external_id: str,
    received: datetime,
    *,
    address: str = "1 main st",
    call_type: str = "SF",
) -> str:
    return insert_incident(
        db,
        Incident(
            tenant_id="t1",
            external_id=external_id,
            call_type=call_type,
            call_type_category=CallTypeCategory.FIRE,
            full_address=address,
            normalized_address=address,
            call_received_time=received,
        ),
    )


def _group_of(db: Database, incident_id: str) -> str | None:
    incident = get_incident(db, incident_id)
    assert incident is not None
    return incident.group_id


def test_single_incident_stays_ungrouped(db: Database) -> None:
    a = _insert(db, "a", T0 + timedelta(minutes=3))
    result = assign_incident_to_group(db, a)
    assert result.action == "ungrouped"
    assert _group_of(db, a) is None


def test_incidents_within_window_share_group(db: Database) -> None:
    a = _insert(db, "a", T0 + timedelta(minutes=3))
    assert assign_incident_to_group(db, a).action == "ungrouped"

    b = _insert(db, "b", T0 + timedelta(minutes=8))
    result = assign_incident_to_group(db, b)
    assert result.action == "created"
    assert set(result.attached_ids) == {a, b}
    assert _group_of(db, a) == _group_of(db, b) is not None

    with db.lock:
        row = db.conn.execute(
            "SELECT merge_key, merge_reason, window_start, window_end FROM incident_groups;"
        ).fetchone()
    assert row["merge_key"] == "1 main st|sf|2030-05-01T12:00:00.000Z"
    assert row["merge_reason"] == "auto_address_time"
    assert row["window_start"] == "2030-05-01T12:00:00.000Z"
    assert row["window_end"] == "2030-05-01T12:10:00.000Z"


def test_window_match_crosses_floor_boundary(db: Database) -> None:
    a = _insert(db, "a", T0 + timedelta(minutes=8))
    b = _insert(db, "b", T0 + timedelta(minutes=13))
    assert group_incidents(db, [a, b]) == 2
    assert _group_of(db, a) == _group_of(db, b) is not None


def test_later_incident_attaches_to_existing_group(db: Database) -> None:
    a = _insert(db, "a", T0 + timedelta(minutes=1))
    b = _insert(db, "b", T0 + timedelta(minutes=2))
    group_incidents(db, [a, b])

    c = _insert(db, "c", T0 + timedelta(minutes=9))
    result = assign_incident_to_group(db, c)
    assert result.action == "attached"
    assert _group_of(db, c) == _group_of(db, a)


def test_incidents_more_than_ten_minutes_apart_stay_separate(db: Database) -> None:
    a = _insert(db, "a", T0)
    b = _insert(db, "b", T0 + timedelta(minutes=10, seconds=30))
    group_incidents(db, [a, b])
    assert _group_of(db, a) is None
    assert _group_of(db, b) is None


def test_different_address_or_type_stay_separate(db: Database) -> None:
    a = _insert(db, "a", T0 + timedelta(minutes=1))
    b = _insert(db, "b", T0 + timedelta(minutes=2), address="2 main st")
    c = _insert(db, "c", T0 + timedelta(minutes=3), call_type="ME")
    group_incidents(db, [a, b, c])
    assert all(_group_of(db, i) is None for i in (a, b, c))


def test_call_type_match_is_case_insensitive(db: Database) -> None:
    a = _insert(db, "a", T0 + timedelta(minutes=1), call_type="sf")
    b = _insert(db, "b", T0 + timedelta(minutes=2), call_type="SF")
    group_incidents(db, [b])
    assert _group_of(db, a) == _group_of(db, b) is not None


def test_grouped_incident_is_left_unchanged(db: Database) -> None:
    a = _insert(db, "a", T0 + timedelta(minutes=1))
    b = _insert(db, "b", T0 + timedelta(minutes=2))
    group_incidents(db, [a])
    assert assign_incident_to_group(db, b).action == "unchanged"
