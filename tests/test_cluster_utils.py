from datetime import UTC, datetime, timedelta

from cluster.changes import has_incident_changed
from cluster.clusterer import collapse_grouped_incidents, merge_key_for, window_floor
from models.incident import (
    CallTypeCategory,
    Incident,
    IncidentStatus,
    UnitStatus,
)


T0 = datetime(2030, 5, 1, 12, 0, tzinfo=UTC)


def _incident(
    external_id: str,
    received: datetime,
    *,
    address: str = "1 main st",
    call_type: str = "ME",
    units: list[UnitStatus] | None = None,
    group_id: str | None = None,
) -> Incident:
    statuses = units or []
    return Incident(
        tenant_id="t1",
        external_id=external_id,
        incident_id=f"id-{external_id}",
        call_type=call_type,
        call_type_category=CallTypeCategory.MEDICAL,
        full_address=address,
        normalized_address=address,
        call_received_time=received,
        units=[u.unit_id for u in statuses],
        unit_statuses=statuses,
        group_id=group_id,
    )


def test_window_floor_uses_incident_time() -> None:
    assert window_floor(T0 + timedelta(minutes=9, seconds=59)) == T0
    assert window_floor(T0 + timedelta(minutes=10)) == T0 + timedelta(minutes=10)
    assert window_floor(T0) == T0


def test_merge_key_format() -> None:
    key = merge_key_for("1 main st", "Medical", T0 + timedelta(minutes=4))
    assert key == "1 main st|medical|2030-05-01T12:00:00.000Z"
    assert key == merge_key_for("1 main st", "MEDICAL", T0 + timedelta(minutes=7))
    assert key != merge_key_for("1 main st", "MEDICAL", T0 + timedelta(minutes=11))


def test_change_detector_identical_records() -> None:
    units = [UnitStatus("E1", "DP", time_dispatched=T0)]
    a = _incident("1", T0, units=units)
    b = _incident("1", T0, units=list(units))
    assert has_incident_changed(a, b) is False


def test_change_detector_single_unit_status_advance() -> None:
    a = _incident(
        "1",
        T0,
        units=[
            UnitStatus("E1", "DP", time_dispatched=T0),
            UnitStatus("M2", "DP", time_dispatched=T0),
        ],
    )
    b = _incident(
        "1",
        T0,
        units=[
            UnitStatus("E1", "DP", time_dispatched=T0),
            UnitStatus(
                "M2",
                "OS",
                time_dispatched=T0,
                time_on_scene=T0 + timedelta(minutes=6),
            ),
        ],
    )
    assert has_incident_changed(a, b) is True


def test_change_detector_other_fields() -> None:
    base = _incident("1", T0)

    moved = _incident("1", T0)
    moved.latitude, moved.longitude = 35.0, -78.0
    assert has_incident_changed(base, moved) is True

    jitter = _incident("1", T0)
    jitter.latitude, jitter.longitude = 35.00005, -78.0
    assert has_incident_changed(moved, jitter) is False

    closed = _incident("1", T0)
    closed.status = IncidentStatus.CLOSED
    closed.call_closed_time = T0 + timedelta(minutes=30)
    assert has_incident_changed(base, closed) is True

    readdressed = _incident("1", T0, address="2 main st")
    assert has_incident_changed(base, readdressed) is True

    with_unit = _incident("1", T0, units=[UnitStatus("E1", "DP")])
    assert has_incident_changed(base, with_unit) is True


def test_collapse_persisted_group_merges_units() -> None:
    first = _incident(
        "1",
        T0,
        units=[UnitStatus("E1", "DP", time_dispatched=T0)],
        group_id="g1",
    )
    second = _incident(
        "2",
        T0 + timedelta(minutes=3),
        units=[
            UnitStatus("E1", "OS", time_on_scene=T0 + timedelta(minutes=8)),
            UnitStatus("M4", "ER", time_enroute=T0 + timedelta(minutes=4)),
        ],
        group_id="g1",
    )
    out = collapse_grouped_incidents([second, first])
    assert len(out) == 1
    merged = out[0]
    assert merged.external_id == "1"
    assert merged.units == ["E1", "M4"]
    statuses = {u.unit_id: u.status for u in merged.unit_statuses}
    assert statuses == {"E1": "OS", "M4": "ER"}


def test_collapse_buckets_ungrouped_by_merge_key() -> None:
    a = _incident("a", T0 + timedelta(minutes=1))
    b = _incident("b", T0 + timedelta(minutes=8))
    c = _incident("c", T0 + timedelta(minutes=25))
    d = _incident("d", T0 + timedelta(minutes=2), address="9 elm st")
    out = collapse_grouped_incidents([a, b, c, d])
    assert [i.external_id for i in out] == ["c", "d", "a"]


def test_collapse_never_overrides_existing_group() -> None:
    grouped = _incident("g", T0 + timedelta(minutes=1), group_id="g1")
    loose = _incident("l", T0 + timedelta(minutes=2))
    out = collapse_grouped_incidents([grouped, loose])
    assert sorted(i.external_id for i in out) == ["g", "l"]
