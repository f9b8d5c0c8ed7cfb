from __future__ import annotations

import re

from models.incident import CallTypeCategory


# Vendor call-type codes grouped by their ICAW reference group.
_CALL_TYPE_GROUPS: dict[str, dict[str, str]] = {
    "Aid": {"AA": "Auto Aid", "MU": "Mutual Aid", "ST": "Strike Team/Task Force"},
    "Aircraft": {
        "AC": "Aircraft Crash",
        "AE": "Aircraft Emergency",
        "AES": "Aircraft Emergency Standby",
        "LZ": "Landing Zone",
    },
    "Alarm": {
        "AED": "AED Alarm",
        "OA": "Alarm",
        "CMA": "Carbon Monoxide Alarm",
        "FA": "Fire Alarm",
        "MA": "Manual Alarm",
        "SD": "Smoke Detector",
        "TRBL": "Trouble Alarm",
        "WFA": "Waterflow Alarm",
    },
    "Assist": {
        "FL": "Flooding",
        "LR": "Ladder Request",
        "LA": "Lift Assist",
        "PA": "Police Assist",
        "PS": "Public Service",
        "SH": "Sheared Hydrant",
    },
    "Explosion": {
        "EX": "Explosion",
        "PE": "Pipeline Emergency",
        "TE": "Transformer Explosion",
    },
    "Fire": {
        "AF": "Appliance Fire",
        "CHIM": "Chimney Fire",
        "CF": "Commercial Fire",
        "WSF": "Confirmed Structure Fire",
        "WVEG": "Confirmed Vegetation Fire",
        "CB": "Controlled Burn/Prescribed Fire",
        "ELF": "Electrical Fire",
        "EF": "Extinguished Fire",
        "FIRE": "Fire",
        "FULL": "Full Assignment",
        "IF": "Illegal Fire",
        "MF": "Marine Fire",
        "OF": "Outside Fire",
        "PF": "Pole Fire",
        "GF": "Refuse/Garbage Fire",
        "RF": "Residential Fire",
        "SF": "Structure Fire",
        "TF": "Tank Fire",
        "VEG": "Vegetation Fire",
        "VF": "Vehicle Fire",
        "WF": "Confirmed Fire",
        "WCF": "Working Commercial Fire",
        "WRF": "Working Residential Fire",
    },
    "Hazard": {
        "BT": "Bomb Threat",
        "EE": "Electrical Emergency",
        "EM": "Emergency",
        "ER": "Emergency Response",
        "GAS": "Gas Leak",
        "HC": "Hazardous Condition",
        "HMR": "Hazardous Response",
        "TD": "Tree Down",
        "WE": "Water Emergency",
    },
    "Investigation": {
        "AI": "Arson Investigation",
        "FWI": "Fireworks Investigation",
        "HMI": "Hazmat Investigation",
        "INV": "Investigation",
        "OI": "Odor Investigation",
        "SI": "Smoke Investigation",
    },
    "Lockout": {
        "CL": "Commercial Lockout",
        "LO": "Lockout",
        "RL": "Residential Lockout",
        "VL": "Vehicle Lockout",
    },
    "Medical": {
        "CP": "Community Paramedicine",
        "IFT": "Interfacility Transfer",
        "ME": "Medical Emergency",
        "MCI": "Multi Casualty Incident",
    },
    "Natural Disaster": {
        "EQ": "Earthquake",
        "FLW": "Flood Warning",
        "TOW": "Tornado Warning",
        "TSW": "Tsunami Warning",
        "WX": "Weather Incident",
    },
    "Rescue": {
        "AR": "Animal Rescue",
        "CR": "Cliff Rescue",
        "CSR": "Confined Space Rescue",
        "ELR": "Elevator Rescue",
        "EER": "Elevator/Escalator Rescue",
        "IR": "Ice Rescue",
        "IA": "Industrial Accident",
        "RES": "Rescue",
        "RR": "Rope Rescue",
        "SC": "Structural Collapse",
        "TR": "Technical Rescue",
        "TNR": "Trench Rescue",
        "USAR": "Urban Search and Rescue",
        "VS": "Vessel Sinking",
        "WR": "Water Rescue",
    },
    "Vehicle": {
        "TCP": "Collision Involving Pedestrian",
        "TCS": "Collision Involving Structure",
        "TCT": "Collision Involving Train",
        "TCE": "Expanded Traffic Collision",
        "RTE": "Railroad/Train Emergency",
        "TC": "Traffic Collision",
        "MVA": "Motor Vehicle Accident",
        "MVC": "Motor Vehicle Collision",
    },
    "Wires": {
        "PLE": "Powerline Emergency",
        "WA": "Wires Arcing",
        "WD": "Wires Down",
        "WDA": "Wires Down/Arcing",
    },
    "Other": {
        "BP": "Burn Permit",
        "CA": "Community Activity",
        "FW": "Fire Watch",
        "MC": "Move-up/Cover",
        "NO": "Notification",
        "STBY": "Standby",
        "TEST": "Test",
        "TRNG": "Training",
    },
    "Alert": {"NEWS": "News", "CERT": "CERT", "DISASTER": "Disaster"},
    "Unknown": {"UNK": "Unknown Call Type"},
}

_GROUP_CATEGORY: dict[str, CallTypeCategory] = {
    "Aid": CallTypeCategory.OTHER,
    "Aircraft": CallTypeCategory.TRAFFIC,
    "Alarm": CallTypeCategory.FIRE,
    "Assist": CallTypeCategory.OTHER,
    "Explosion": CallTypeCategory.FIRE,
    "Fire": CallTypeCategory.FIRE,
    "Hazard": CallTypeCategory.HAZMAT,
    "Investigation": CallTypeCategory.OTHER,
    "Lockout": CallTypeCategory.OTHER,
    "Medical": CallTypeCategory.MEDICAL,
    "Natural Disaster": CallTypeCategory.OTHER,
    "Rescue": CallTypeCategory.RESCUE,
    "Vehicle": CallTypeCategory.TRAFFIC,
    "Wires": CallTypeCategory.HAZMAT,
    "Other": CallTypeCategory.OTHER,
    "Alert": CallTypeCategory.OTHER,
    "Unknown": CallTypeCategory.OTHER,
}

CALL_TYPE_DESCRIPTIONS: dict[str, str] = {
    code: description
    for codes in _CALL_TYPE_GROUPS.values()
    for code, description in codes.items()
}

CALL_TYPE_CATEGORIES: dict[str, CallTypeCategory] = {
    code: _GROUP_CATEGORY[group]
    for group, codes in _CALL_TYPE_GROUPS.items()
    for code in codes
}

# Free-text call types seen from agencies that do not send ICAW codes. Matched
# whole, then as a word-bounded phrase inside the call type.
_F = CallTypeCategory.FIRE
_M = CallTypeCategory.MEDICAL
_R = CallTypeCategory.RESCUE
_T = CallTypeCategory.TRAFFIC
_H = CallTypeCategory.HAZMAT

CALL_TYPE_PHRASES: dict[str, CallTypeCategory] = {
    "FIRE": _F,
    "STRUCTURE FIRE": _F,
    "RESIDENTIAL FIRE": _F,
    "COMMERCIAL FIRE": _F,
    "VEHICLE FIRE": _F,
    "BRUSH FIRE": _F,
    "WILDLAND FIRE": _F,
    "GRASS FIRE": _F,
    "TRASH FIRE": _F,
    "DUMPSTER FIRE": _F,
    "FIRE ALARM": _F,
    "SMOKE INVESTIGATION": _F,
    "ODOR INVESTIGATION": _F,
    "GAS LEAK": _F,
    "CARBON MONOXIDE": _F,
    "CO": _F,
    "MEDICAL": _M,
    "MEDICAL EMERGENCY": _M,
    "CARDIAC ARREST": _M,
    "CHEST PAIN": _M,
    "DIFFICULTY BREATHING": _M,
    "BREATHING PROBLEMS": _M,
    "STROKE": _M,
    "SEIZURE": _M,
    "DIABETIC EMERGENCY": _M,
    "ALLERGIC REACTION": _M,
    "FALL VICTIM": _M,
    "FALL": _M,
    "OVERDOSE": _M,
    "DRUG OVERDOSE": _M,
    "SICK PERSON": _M,
    "UNCONSCIOUS PERSON": _M,
    "ABDOMINAL PAIN": _M,
    "BACK PAIN": _M,
    "HEADACHE": _M,
    "HEMORRHAGE": _M,
    "BLEEDING": _M,
    "PSYCHIATRIC EMERGENCY": _M,
    "BEHAVIORAL EMERGENCY": _M,
    "ASSAULT": _M,
    "ASSAULT VICTIM": _M,
    "STABBING": _M,
    "GUNSHOT": _M,
    "SHOOTING": _M,
    "ELECTROCUTION": _M,
    "HEAT EMERGENCY": _M,
    "COLD EMERGENCY": _M,
    "PREGNANCY": _M,
    "CHILDBIRTH": _M,
    "CHOKING": _M,
    "DROWNING": _M,
    "NEAR DROWNING": _M,
    "ANIMAL BITE": _M,
    "BEE STING": _M,
    "EMS": _M,
    "RESCUE": _R,
    "WATER RESCUE": _R,
    "SWIFT WATER RESCUE": _R,
    "TECHNICAL RESCUE": _R,
    "HIGH ANGLE RESCUE": _R,
    "CONFINED SPACE RESCUE": _R,
    "TRENCH RESCUE": _R,
    "BUILDING COLLAPSE": _R,
    "ELEVATOR RESCUE": _R,
    "ENTRAPMENT": _R,
    "PERSON TRAPPED": _R,
    "LOCK INOUT": _R,
    "LOCKOUT": _R,
    "SEARCH AND RESCUE": _R,
    "MISSING PERSON": _R,
    "TRAFFIC ACCIDENT": _T,
    "MOTOR VEHICLE ACCIDENT": _T,
    "MVA": _T,
    "MVC": _T,
    "VEHICLE ACCIDENT": _T,
    "CAR ACCIDENT": _T,
    "AUTO ACCIDENT": _T,
    "TRAFFIC COLLISION": _T,
    "HIT AND RUN": _T,
    "PEDESTRIAN STRUCK": _T,
    "BICYCLE ACCIDENT": _T,
    "MOTORCYCLE ACCIDENT": _T,
    "BUS ACCIDENT": _T,
    "TRAIN ACCIDENT": _T,
    "AIRCRAFT EMERGENCY": _T,
    "PLANE CRASH": _T,
    "ROLLOVER": _T,
    "EXTRICATION": _T,
    "VEHICLE EXTRICATION": _T,
    "ACCIDENT WITH INJURIES": _T,
    "ACCIDENT WITH ENTRAPMENT": _T,
    "HAZMAT": _H,
    "HAZARDOUS MATERIALS": _H,
    "HAZ MAT": _H,
    "CHEMICAL SPILL": _H,
    "FUEL SPILL": _H,
    "OIL SPILL": _H,
    "PROPANE LEAK": _H,
    "NATURAL GAS LEAK": _H,
    "UNKNOWN SUBSTANCE": _H,
    "SUSPICIOUS PACKAGE": _H,
    "BIOLOGICAL HAZARD": _H,
    "RADIATION": _H,
    "TRANSFORMER FIRE": _H,
    "ELECTRICAL HAZARD": _H,
    "POWERLINE DOWN": _H,
    "WIRES DOWN": _H,
}

_PHRASE_STRIP_RE = re.compile(r"[^A-Z0-9\s]")
_PHRASE_SPACE_RE = re.compile(r"\s+")


def _phrase_key(text: str) -> str:
    return _PHRASE_SPACE_RE.sub(" ", _PHRASE_STRIP_RE.sub("", text.upper())).strip()


def match_call_type_phrase(text: str) -> CallTypeCategory | None:
    key = _phrase_key(text)
    if not key:
        return None
    category = CALL_TYPE_PHRASES.get(key)
    if category is not None:
        return category
    padded = f" {key} "
    for phrase, candidate in CALL_TYPE_PHRASES.items():
        if f" {phrase} " in padded:
            return candidate
    return None


# Checked in order; the first category with a matching keyword wins.
_CATEGORY_KEYWORDS: list[tuple[CallTypeCategory, tuple[str, ...]]] = [
    (CallTypeCategory.FIRE, ("fire", "smoke", "alarm", "explosion")),
    (
        CallTypeCategory.MEDICAL,
        (
            "medical",
            "ems",
            "ambulance",
            "cardiac",
            "breathing",
            "unconscious",
            "injury",
            "sick",
            "casualty",
        ),
    ),
    (CallTypeCategory.RESCUE, ("rescue", "trapped", "missing", "collapse")),
    (
        CallTypeCategory.TRAFFIC,
        (
            "accident",
            "collision",
            "mva",
            "mvc",
            "vehicle",
            "traffic",
            "aircraft",
            "train",
        ),
    ),
    (
        CallTypeCategory.HAZMAT,
        (
            "hazmat",
            "hazardous",
            "spill",
            "chemical",
            "leak",
            "gas",
            "wires",
            "powerline",
            "electrical",
        ),
    ),
]


def describe_call_type(call_type: str) -> str:
    return CALL_TYPE_DESCRIPTIONS.get(call_type.strip().upper(), call_type)


def map_call_type_to_category(
    call_type: object, description: object = None
) -> CallTypeCategory:
    """Resolve a vendor call type to one of the six categories.

    Exact code lookup first, then the free-text phrase table over the code and
    its description, then keyword matching over both. Never raises: anything
    unrecognized is ``other``.
    """
    code = call_type.strip().upper() if isinstance(call_type, str) else ""
    category = CALL_TYPE_CATEGORIES.get(code)
    if category is not None:
        return category

    for value in (call_type, description):
        if isinstance(value, str):
            phrase_category = match_call_type_phrase(value)
            if phrase_category is not None:
                return phrase_category

    text_parts = [p for p in (call_type, description) if isinstance(p, str)]
    text = " ".join(text_parts).casefold()
    if not text:
        return CallTypeCategory.OTHER

    for candidate, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return candidate
    return CallTypeCategory.OTHER
