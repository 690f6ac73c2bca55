from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from calldesk.business_hours import BusinessHours, is_after_hours, next_business_day_label
from calldesk.keywords import DEFAULT_RULESET, KeywordRuleset
from calldesk.records import ServiceCatalogEntry
from calldesk.states import CallType, Sentiment


EMERGENCY_RATE_NOTE = " (emergency service rates apply)"
AFTER_HOURS_RATE_NOTE = " (after-hours rates apply)"
UPFRONT_PRICING_NOTE = (
    ". The final price depends on the specific issue and parts needed. "
    "We provide upfront pricing before any work begins."
)
DEFAULT_AFTER_HOURS_MULTIPLIER = 1.25

DEFAULT_CATALOG = {
    "heating": ServiceCatalogEntry("heating", "heating", 150, 800),
    "cooling": ServiceCatalogEntry("cooling", "cooling", 125, 600),
    "thermostat": ServiceCatalogEntry("thermostat", "thermostat", 200, 400),
    "maintenance": ServiceCatalogEntry("maintenance", "maintenance", 125, 250),
    "installation": ServiceCatalogEntry("installation", "installation", 2000, 8000),
    "general_hvac": ServiceCatalogEntry("general_hvac", "general hvac", 125, 500),
}


@dataclass(frozen=True)
class Classification:
    is_emergency: bool
    call_type: CallType
    service_types: list[str] = field(default_factory=list)
    matched_keyword: str | None = None


@dataclass(frozen=True)
class PriceEstimate:
    service: str
    min_price: int
    max_price: int
    emergency_applied: bool
    after_hours_applied: bool
    text: str


def round_dollars(value: Decimal) -> int:
    """Round half-up to whole dollars (281.5 -> 282), matching how quotes are read out."""
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _contains_any(lower_text: str, keywords) -> str | None:
    for keyword in keywords:
        if keyword in lower_text:
            return keyword
    return None


class IntentClassifier:
    """Keyword-driven intent classification for HVAC calls.

    Pure and synchronous: all vocabulary lives in the injected ruleset, so a
    single instance is safe to share between concurrent calls.
    """

    def __init__(self, ruleset: KeywordRuleset = DEFAULT_RULESET):
        self.ruleset = ruleset

    def matched_emergency_keyword(self, text: str) -> str | None:
        lower = (text or "").lower()
        for keywords in self.ruleset.emergency.values():
            hit = _contains_any(lower, keywords)
            if hit:
                return hit
        return None

    def detect_emergency(self, text: str) -> bool:
        return self.matched_emergency_keyword(text) is not None

    def classify_call_type(self, text: str) -> CallType:
        if self.detect_emergency(text):
            return CallType.EMERGENCY
        lower = (text or "").lower()
        for call_type, keywords in self.ruleset.call_type_rules:
            if _contains_any(lower, keywords):
                return call_type
        return CallType.GENERAL_INQUIRY

    def extract_service_types(self, text: str) -> list[str]:
        lower = (text or "").lower()
        services = [
            service
            for service, keywords in self.ruleset.service_types.items()
            if _contains_any(lower, keywords)
        ]
        return services or [self.ruleset.general_service_type]

    def specific_service_types(self, service_types: list[str]) -> list[str]:
        """Drop the catch-all category so it never accumulates next to real ones."""
        return [s for s in service_types if s != self.ruleset.general_service_type]

    def classify(self, text: str) -> Classification:
        keyword = self.matched_emergency_keyword(text)
        return Classification(
            is_emergency=keyword is not None,
            call_type=CallType.EMERGENCY if keyword else self.classify_call_type(text),
            service_types=self.extract_service_types(text),
            matched_keyword=keyword,
        )

    def analyze_sentiment(self, text: str) -> Sentiment:
        lower = (text or "").lower()
        positive = sum(1 for word in self.ruleset.positive_words if word in lower)
        negative = sum(1 for word in self.ruleset.negative_words if word in lower)
        if positive > negative:
            return Sentiment.POSITIVE
        if negative > positive:
            return Sentiment.NEGATIVE
        return Sentiment.NEUTRAL

    def emergency_response(self, service_types: list[str]) -> str:
        primary = service_types[0] if service_types else "general"
        return self.ruleset.emergency_responses.get(primary, self.ruleset.default_emergency_response)

    def summarize(self, transcript: str) -> str:
        if not transcript or len(transcript) < 10:
            return "Call completed - no transcript available"
        lower = transcript.lower()
        found = [kw for kw in self.ruleset.summary_keywords if kw in lower]
        if not found:
            return "General inquiry call"
        return f"Call regarding: {', '.join(found)}"

    def estimate_price(
        self,
        service_types: list[str],
        is_emergency: bool,
        is_after_hours: bool,
        catalog: dict[str, ServiceCatalogEntry] | None = None,
        after_hours_multiplier: float = DEFAULT_AFTER_HOURS_MULTIPLIER,
    ) -> PriceEstimate:
        return estimate_price(
            service_types,
            is_emergency,
            is_after_hours,
            catalog=catalog,
            after_hours_multiplier=after_hours_multiplier,
            general_service_type=self.ruleset.general_service_type,
        )


def estimate_price(
    service_types: list[str],
    is_emergency: bool,
    is_after_hours: bool,
    catalog: dict[str, ServiceCatalogEntry] | None = None,
    after_hours_multiplier: float = DEFAULT_AFTER_HOURS_MULTIPLIER,
    general_service_type: str = "general_hvac",
) -> PriceEstimate:
    """Quote a price range for the first service type.

    Surcharges compose multiplicatively: emergency (per catalog entry, 1.5x by
    default) and then after-hours (1.25x by default).
    """
    catalog = catalog or DEFAULT_CATALOG
    service = service_types[0] if service_types else general_service_type
    entry = catalog.get(service) or catalog.get(general_service_type) or DEFAULT_CATALOG["general_hvac"]

    multiplier = Decimal(1)
    if is_emergency:
        multiplier *= Decimal(str(entry.emergency_multiplier))
    if is_after_hours:
        multiplier *= Decimal(str(after_hours_multiplier))

    low = round_dollars(Decimal(entry.min_price) * multiplier)
    high = round_dollars(Decimal(entry.max_price) * multiplier)

    text = f"For {service.replace('_', ' ')} service, our typical range is ${low}-${high}"
    if is_emergency:
        text += EMERGENCY_RATE_NOTE
    if is_after_hours:
        text += AFTER_HOURS_RATE_NOTE
    text += UPFRONT_PRICING_NOTE

    return PriceEstimate(
        service=service,
        min_price=low,
        max_price=high,
        emergency_applied=is_emergency,
        after_hours_applied=is_after_hours,
        text=text,
    )


def availability_message(hours: BusinessHours, now: datetime, is_emergency: bool) -> str:
    if is_emergency:
        return (
            "Since this is an emergency, we can dispatch a technician immediately. "
            "Emergency service is available 24/7."
        )
    if is_after_hours(hours, now):
        next_day = next_business_day_label(hours, now)
        return (
            f"We're currently closed. Our next available appointment is {next_day}. "
            "For emergencies, we do offer 24/7 emergency service."
        )
    return "We're currently open and have appointments available today. Our earliest slot is within the next 2-3 hours."
