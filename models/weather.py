from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from normalize.times import to_iso


class AlertSeverity(StrEnum):
    EXTREME = "Extreme"
    SEVERE = "Severe"
    MODERATE = "Moderate"
    MINOR = "Minor"
    UNKNOWN = "Unknown"


class AlertUrgency(StrEnum):
    IMMEDIATE = "Immediate"
    EXPECTED = "Expected"
    FUTURE = "Future"
    UNKNOWN = "Unknown"


class AlertCertainty(StrEnum):
    OBSERVED = "Observed"
    LIKELY = "Likely"
    POSSIBLE = "Possible"
    UNLIKELY = "Unlikely"
    UNKNOWN = "Unknown"


class AlertStatus(StrEnum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class MessageType(StrEnum):
    ALERT = "Alert"
    UPDATE = "Update"
    CANCEL = "Cancel"


def _coerce(enum_cls, value: object, default):
    if isinstance(value, str):
        for member in enum_cls:
            if member.value.casefold() == value.strip().casefold():
                return member
    return default


def parse_severity(value: object) -> AlertSeverity:
    return _coerce(AlertSeverity, value, AlertSeverity.UNKNOWN)


def parse_urgency(value: object) -> AlertUrgency:
    return _coerce(AlertUrgency, value, AlertUrgency.UNKNOWN)


def parse_certainty(value: object) -> AlertCertainty:
    return _coerce(AlertCertainty, value, AlertCertainty.UNKNOWN)


def parse_message_type(value: object) -> MessageType:
    return _coerce(MessageType, value, MessageType.ALERT)


@dataclass
class WeatherAlert:
    tenant_id: str
    nws_id: str
    event: str
    headline: str | None = None
    description: str = ""
    instruction: str | None = None
    category: str | None = None
    severity: AlertSeverity = AlertSeverity.UNKNOWN
    urgency: AlertUrgency = AlertUrgency.UNKNOWN
    certainty: AlertCertainty = AlertCertainty.UNKNOWN
    onset: datetime | None = None
    expires: datetime | None = None
    ends: datetime | None = None
    affected_zones: list[str] = field(default_factory=list)
    message_type: MessageType = MessageType.ALERT
    references: list[str] = field(default_factory=list)
    status: AlertStatus = AlertStatus.ACTIVE
    last_facebook_post_time: datetime | None = None
    facebook_post_id: str | None = None
    alert_id: str | None = None

    def to_dict(self) -> dict:
        def _iso(dt: datetime | None) -> str | None:
            return to_iso(dt) if dt is not None else None

        return {
            "alert_id": self.alert_id,
            "tenant_id": self.tenant_id,
            "nws_id": self.nws_id,
            "event": self.event,
            "headline": self.headline,
            "severity": str(self.severity),
            "urgency": str(self.urgency),
            "certainty": str(self.certainty),
            "onset": _iso(self.onset),
            "expires": _iso(self.expires),
            "ends": _iso(self.ends),
            "affected_zones": list(self.affected_zones),
            "message_type": str(self.message_type),
            "status": str(self.status),
            "last_facebook_post_time": _iso(self.last_facebook_post_time),
            "facebook_post_id": self.facebook_post_id,
        }
