from __future__ import annotations

from datetime import UTC, datetime


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC ISO string, so stored values sort chronologically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def utc_now_iso() -> str:
    return to_iso(utc_now())


def parse_iso(ts: str) -> datetime:
    if ts.endswith("Z"):
        ts = ts.removesuffix("Z") + "+00:00"
    dt = datetime.fromisoformat(ts)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def parse_iso_or_none(ts: str | None) -> datetime | None:
    if ts is None:
        return None
    return parse_iso(str(ts))


def parse_feed_time(value: object) -> datetime | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 1e11:
            seconds = seconds / 1000.0
        try:
            return datetime.fromtimestamp(seconds, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None
    if not isinstance(value, str):
        return None
    raw = value.strip()
    if not raw:
        return None
    if raw.isdigit():
        return parse_feed_time(int(raw))
    try:
        parsed = parse_iso(raw.replace(" ", "T", 1) if "T" not in raw else raw)
    except ValueError:
        return None
    # drop sub-millisecond precision so stored and fetched values compare equal
    return parsed.replace(microsecond=(parsed.microsecond // 1000) * 1000)
