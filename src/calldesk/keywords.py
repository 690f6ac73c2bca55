"""Keyword vocabulary used by the intent classifier.

Everything here is immutable. A tenant that needs its own vocabulary builds a
new ``KeywordRuleset`` (``dataclasses.replace`` works) and hands it to
``IntentClassifier``; the classifier's control flow never changes.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from calldesk.states import CallType


def _freeze(table: dict[str, tuple[str, ...]]) -> Mapping[str, tuple[str, ...]]:
    return MappingProxyType(dict(table))


EMERGENCY_KEYWORDS = _freeze({
    "heating": (
        "no heat", "heat not working", "furnace not working", "boiler not working",
        "heat pump not working", "cold house", "freezing", "furnace making noise",
        "gas smell", "carbon monoxide", "furnace won't start", "pilot light out",
        "heater broken", "no hot air", "thermostat not working",
    ),
    "cooling": (
        "no ac", "air conditioning not working", "ac not working", "no cold air",
        "air conditioner broken", "ac unit not working", "hot house", "overheating",
        "ac making noise", "ac leaking water", "compressor not working", "fan not working",
        "ac won't start", "condenser not working",
    ),
    "plumbing": (
        "water leak", "flooding", "pipe burst", "water damage", "water everywhere",
        "basement flooding", "pipe leaking", "water heater leaking", "sewage backup",
        "toilet overflowing", "drain backing up",
    ),
    "electrical": (
        "electrical smell", "burning smell", "sparks", "electrical fire", "power out",
        "breaker tripping", "electrical emergency", "wires sparking", "outlet smoking",
        "electrical shock",
    ),
    "general": (
        "emergency", "urgent", "asap", "right now", "immediately", "help",
        "broken", "not working", "stopped working", "emergency service",
    ),
})

APPOINTMENT_KEYWORDS = (
    "appointment", "schedule", "book", "visit", "come out",
    "service call", "technician", "when can you", "available",
)

PRICE_KEYWORDS = (
    "cost", "price", "estimate", "quote", "how much", "fee",
    "charge", "rate", "pricing", "affordable", "cheap", "expensive",
)

SERVICE_KEYWORDS = (
    "repair", "fix", "maintenance", "service", "install", "replace",
    "tune-up", "cleaning", "inspection", "hvac", "air conditioner",
    "furnace", "heat pump", "thermostat",
)

# Order matters: the first rule whose vocabulary matches decides the call type.
# EMERGENCY is resolved from the emergency table before these rules run.
CALL_TYPE_RULES = (
    (CallType.APPOINTMENT_BOOKING, APPOINTMENT_KEYWORDS),
    (CallType.PRICE_ESTIMATE, PRICE_KEYWORDS),
    (CallType.SERVICE_REQUEST, SERVICE_KEYWORDS),
)

SERVICE_TYPE_KEYWORDS = _freeze({
    "heating": ("heat", "furnace", "boiler", "heating", "heater"),
    "cooling": ("ac", "air conditioning", "cooling", "air conditioner", "central air"),
    "heat_pump": ("heat pump",),
    "thermostat": ("thermostat",),
    "ductwork": ("duct", "ductwork", "vents"),
    "maintenance": ("tune-up", "maintenance", "cleaning", "service"),
    "installation": ("install", "new", "replacement"),
})

GENERAL_SERVICE_TYPE = "general_hvac"

POSITIVE_WORDS = ("thank", "great", "excellent", "perfect", "satisfied", "happy")
NEGATIVE_WORDS = ("angry", "frustrated", "terrible", "awful", "disappointed", "upset")

SUMMARY_KEYWORDS = ("emergency", "appointment", "price", "cost", "repair", "install", "maintenance")

EMERGENCY_RESPONSES = _freeze({
    "heating": (
        "I understand you're having a heating emergency. We'll dispatch a technician "
        "immediately - this is a priority call especially in cold weather."
    ),
    "cooling": (
        "I see you're having an air conditioning emergency. We'll get someone out to "
        "you as soon as possible - comfort is essential."
    ),
    "plumbing": (
        "This sounds like a water emergency. I'm prioritizing your call and we'll have "
        "someone there right away to prevent further damage."
    ),
    "electrical": (
        "This appears to be an electrical emergency. For your safety, please turn off "
        "power at the main breaker if safe to do so. We're dispatching someone immediately."
    ),
})

DEFAULT_EMERGENCY_RESPONSE = (
    "I understand this is an emergency situation. We're treating this as a priority "
    "call and will dispatch a technician immediately."
)


@dataclass(frozen=True)
class KeywordRuleset:
    emergency: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: EMERGENCY_KEYWORDS)
    call_type_rules: tuple = CALL_TYPE_RULES
    service_types: Mapping[str, tuple[str, ...]] = field(default_factory=lambda: SERVICE_TYPE_KEYWORDS)
    general_service_type: str = GENERAL_SERVICE_TYPE
    positive_words: tuple[str, ...] = POSITIVE_WORDS
    negative_words: tuple[str, ...] = NEGATIVE_WORDS
    summary_keywords: tuple[str, ...] = SUMMARY_KEYWORDS
    emergency_responses: Mapping[str, str] = field(default_factory=lambda: EMERGENCY_RESPONSES)
    default_emergency_response: str = DEFAULT_EMERGENCY_RESPONSE

    def all_emergency_keywords(self) -> list[str]:
        return [kw for keywords in self.emergency.values() for kw in keywords]


DEFAULT_RULESET = KeywordRuleset()
