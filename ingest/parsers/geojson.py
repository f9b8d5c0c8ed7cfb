from __future__ import annotations

from ingest.errors import ParseError


def parse_alert_features(doc: object) -> list[dict]:
    if not isinstance(doc, dict) or doc.get("type") != "FeatureCollection":
        raise ParseError("alerts response is not a GeoJSON FeatureCollection")
    features = doc.get("features") or []
    return [f for f in features if isinstance(f, dict)]
