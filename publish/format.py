from __future__ import annotations

import re
from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from models.weather import AlertSeverity, WeatherAlert


SEVERITY_EMOJI: dict[AlertSeverity, str] = {
    AlertSeverity.EXTREME: "\U0001f534",
    AlertSeverity.SEVERE: "\U0001f7e0",
    AlertSeverity.MODERATE: "\U0001f7e1",
    AlertSeverity.MINOR: "\U0001f7e2",
    AlertSeverity.UNKNOWN: "⚠️",
}

_SECTION_RE = re.compile(
    r"\*\s*(WHAT|WHERE|WHEN|IMPACTS|ADDITIONAL DETAILS)\.{3}([^*]*)", re.IGNORECASE
)
_SENTENCE_SPLIT_RE = re.compile(r"(?<=[.!?])\s+")
_ZONE_STATE_RE = re.compile(r"/([A-Z]{2})Z\d{3}$")
_NWS_OFFICE_RE = re.compile(r"NWS\s+([\w-]+)", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


def parse_nws_description(description: str) -> dict[str, str]:
    sections: dict[str, str] = {}
    for match in _SECTION_RE.finditer(description):
        key = match.group(1).lower().replace(" details", "")
        sections[key] = _WHITESPACE_RE.sub(" ", match.group(2)).strip()
    return sections


def truncate_instructions(instruction: str, max_sentences: int = 2) -> str:
    sentences = [s for s in _SENTENCE_SPLIT_RE.split(instruction.strip()) if s.strip()]
    if len(sentences) <= max_sentences:
        return instruction.strip()
    return " ".join(sentences[:max_sentences]).strip()


def state_hashtags(zones: list[str]) -> list[str]:
    states: list[str] = []
    for zone in zones:
        match = _ZONE_STATE_RE.search(zone)
        if match and match.group(1) not in states:
            states.append(match.group(1))
    return [f"#{state}wx" for state in states]


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("America/New_York")


def _format_day(dt: datetime, tz: ZoneInfo) -> str:
    local = dt.astimezone(tz)
    return f"{local:%A}, {local:%b} {local.day}"


def format_weather_post(alert: WeatherAlert, *, timezone: str = "America/New_York") -> str:
    tz = _zone(timezone)
    sections = parse_nws_description(alert.description) if alert.description else {}

    lines = [f"{SEVERITY_EMOJI[alert.severity]} {alert.event.upper()}"]
    if "where" in sections:
        lines.append(f"\U0001f4cd WHERE: {sections['where']}")
    lines.append("")

    if "what" in sections:
        lines.append(f"WHAT: {sections['what']}")
        lines.append("")

    if "when" in sections:
        when = f"⏰ WHEN: {sections['when']}"
        ends = alert.ends or alert.expires
        if alert.onset is not None and ends is not None:
            when += f" ({_format_day(alert.onset, tz)} - {_format_day(ends, tz)})"
        lines.append(when)
        lines.append("")

    if "impacts" in sections:
        lines.append("⚠️ IMPACTS:")
        lines.append(sections["impacts"])
        lines.append("")

    if alert.instruction:
        lines.append("\U0001f4cb INSTRUCTIONS:")
        lines.append(truncate_instructions(alert.instruction, 2))
        lines.append("")

    hashtags = state_hashtags(alert.affected_zones)
    hashtags.append("#" + _WHITESPACE_RE.sub("", alert.event))
    if alert.headline:
        office = _NWS_OFFICE_RE.search(alert.headline)
        if office:
            hashtags.append("#NWS" + re.sub(r"[^a-zA-Z]", "", office.group(1)))
    lines.append(" ".join(hashtags))
    return "\n".join(lines)
