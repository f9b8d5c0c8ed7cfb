from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from models.weather import (
    AlertCertainty,
    AlertSeverity,
    AlertStatus,
    AlertUrgency,
    WeatherAlert,
)
from normalize.times import utc_now


SEVERITY_SCORES: dict[AlertSeverity, int] = {
    AlertSeverity.EXTREME: 40,
    AlertSeverity.SEVERE: 30,
    AlertSeverity.MODERATE: 20,
    AlertSeverity.MINOR: 10,
    AlertSeverity.UNKNOWN: 5,
}

URGENCY_SCORES: dict[AlertUrgency, int] = {
    AlertUrgency.IMMEDIATE: 30,
    AlertUrgency.EXPECTED: 20,
    AlertUrgency.FUTURE: 10,
    AlertUrgency.UNKNOWN: 5,
}

CERTAINTY_SCORES: dict[AlertCertainty, int] = {
    AlertCertainty.OBSERVED: 30,
    AlertCertainty.LIKELY: 25,
    AlertCertainty.POSSIBLE: 15,
    AlertCertainty.UNLIKELY: 5,
    AlertCertainty.UNKNOWN: 5,
}

ALWAYS_POST_EVENTS = frozenset(
    {
        "Tornado Warning",
        "Tornado Watch",
        "Severe Thunderstorm Warning",
        "Flash Flood Warning",
        "Hurricane Warning",
        "Extreme Wind Warning",
        "Storm Surge Warning",
        "Tsunami Warning",
    }
)

DEFAULT_THRESHOLD = 55
DEFAULT_COOLDOWN = timedelta(hours=6)


@dataclass(frozen=True)
class PostingDecision:
    should_post: bool
    reason: str
    score: int

    def to_dict(self) -> dict:
        return {"should_post": self.should_post, "reason": self.reason, "score": self.score}


def threat_score(alert: WeatherAlert) -> int:
    return (
        SEVERITY_SCORES[alert.severity]
        + URGENCY_SCORES[alert.urgency]
        + CERTAINTY_SCORES[alert.certainty]
    )


def evaluate_alert_for_posting(
    alert: WeatherAlert,
    *,
    now: datetime | None = None,
    threshold: int = DEFAULT_THRESHOLD,
    cooldown: timedelta = DEFAULT_COOLDOWN,
) -> PostingDecision:
    now = now or utc_now()
    score = threat_score(alert)

    if alert.status != AlertStatus.ACTIVE:
        return PostingDecision(False, "Alert is not active", score)
    if alert.expires is not None and alert.expires <= now:
        return PostingDecision(False, "Alert has expired", score)
    if alert.last_facebook_post_time is not None:
        since_post = now - alert.last_facebook_post_time
        if since_post < cooldown:
            minutes = int(since_post.total_seconds() // 60)
            return PostingDecision(False, f"Posted {minutes} minutes ago", score)

    if alert.event in ALWAYS_POST_EVENTS:
        return PostingDecision(True, f"Critical event: {alert.event}", score)
    if alert.severity == AlertSeverity.EXTREME:
        return PostingDecision(True, "Extreme severity alert", score)
    if score >= threshold:
        return PostingDecision(True, f"Threat score {score} >= {threshold}", score)
    return PostingDecision(False, f"Threat score {score} < {threshold}", score)
