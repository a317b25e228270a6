import re
from dataclasses import dataclass
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

KIND_VIP = "vip"
KIND_RAINBOW = "rainbow"
KINDS = (KIND_VIP, KIND_RAINBOW)

PERMANENT = "perm"
DEFAULT_DURATION = "30d"
TEST_SKU = "test"
TEST_TARGETS = ("vip_30d", "rainbow_30d")

REASON_EMPTY_SKU = "empty_sku"
REASON_UNSUPPORTED = "unsupported_product"
REASON_INVALID_DURATION = "invalid_duration"
REASON_NON_POSITIVE = "non_positive_duration"
REASON_TEST_TARGET = "test_target_required"

# Caps per unit; "mo" is a 30-day month.
DURATION_CAPS: Dict[str, int] = {"m": 43200, "h": 720, "d": 30, "w": 4, "mo": 1}
UNIT_DELTAS: Dict[str, timedelta] = {
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
    "mo": timedelta(days=30),
}

SKU_ALIASES: Dict[str, str] = {
    "vip_30": "vip_30d",
    "vip_month": "vip_30d",
    "vip_monthly": "vip_30d",
    "vipmonthly": "vip_30d",
    "monthly_vip": "vip_30d",
    "rainbow_30": "rainbow_30d",
    "rainbow_month": "rainbow_30d",
    "rainbow_monthly": "rainbow_30d",
    "rainbowmonthly": "rainbow_30d",
    "rainbow_name": "rainbow_30d",
}

_TOKEN_RE = re.compile(r"^(?P<kind>vip|rainbow)(?:_?(?P<duration>[^_]+))?$")
_DURATION_RE = re.compile(r"^(?P<value>\d+)(?P<unit>mo|m|h|d|w)$")


@dataclass(frozen=True)
class GrantDescriptor:
    kind: str
    duration: str
    effective_sku: str

    @property
    def is_permanent(self) -> bool:
        return self.duration == PERMANENT

    @property
    def duration_delta(self) -> Optional[timedelta]:
        if self.is_permanent:
            return None
        match = _DURATION_RE.match(self.duration)
        return UNIT_DELTAS[match.group("unit")] * int(match.group("value"))


@dataclass(frozen=True)
class SkuResolution:
    descriptor: Optional[GrantDescriptor]
    reason: str = ""
    raw: str = ""

    @property
    def ok(self) -> bool:
        return self.descriptor is not None


def normalize_token(value: Any) -> str:
    if value is None:
        return ""
    text = str(value).strip().lower()
    text = re.sub(r"[\s-]+", "_", text)
    text = re.sub(r"_+", "_", text)
    return text.strip("_")


def parse_duration(token: Optional[str]) -> tuple[Optional[str], str]:
    """Returns ``(canonical_duration, reason)``; reason is empty on success."""
    if not token:
        return DEFAULT_DURATION, ""
    if token in ("perm", "permanent"):
        return PERMANENT, ""

    if token.isdigit():
        value, unit = int(token), "d"
    else:
        match = _DURATION_RE.match(token)
        if not match:
            return None, REASON_INVALID_DURATION
        value, unit = int(match.group("value")), match.group("unit")

    if value <= 0:
        return None, REASON_NON_POSITIVE
    value = min(value, DURATION_CAPS[unit])
    return f"{value}{unit}", ""


def parse_amount(value: Any) -> Optional[Decimal]:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    # NaN and sNaN refuse comparison; infinities are never a real charge.
    return amount if amount.is_finite() else None


class SkuNormalizer:
    def __init__(
        self,
        aliases: Optional[Dict[str, str]] = None,
        test_amount: Optional[Decimal] = Decimal("1"),
        test_target: str = "",
    ):
        self.aliases = dict(SKU_ALIASES if aliases is None else aliases)
        self.test_amount = test_amount
        self.test_target = normalize_token(test_target)

    def resolve(self, *candidates: Any, amount: Any = None) -> SkuResolution:
        tokens = [normalize_token(candidate) for candidate in candidates]
        tokens = [token for token in tokens if token]

        if self._is_test_charge(tokens, amount):
            return SkuResolution(GrantDescriptor(KIND_RAINBOW, DEFAULT_DURATION, "rainbow_30d"), raw=tokens[0])

        if not tokens:
            return SkuResolution(None, REASON_EMPTY_SKU)

        raw = tokens[0]
        token = self.aliases.get(raw, raw)
        if token == TEST_SKU:
            if self.test_target not in TEST_TARGETS:
                return SkuResolution(None, REASON_TEST_TARGET, raw)
            token = self.test_target

        return self.parse(token, raw=raw)

    def parse(self, token: str, raw: str = "") -> SkuResolution:
        match = _TOKEN_RE.match(token)
        if not match:
            return SkuResolution(None, REASON_UNSUPPORTED, raw or token)

        kind = match.group("kind")
        duration, reason = parse_duration(match.group("duration"))
        if duration is None:
            return SkuResolution(None, reason, raw or token)
        return SkuResolution(GrantDescriptor(kind, duration, f"{kind}_{duration}"), raw=raw or token)

    def _is_test_charge(self, tokens: Iterable[str], amount: Any) -> bool:
        if self.test_amount is None:
            return False
        paid = parse_amount(amount)
        if paid is None or paid != self.test_amount:
            return False
        return any(KIND_RAINBOW in token for token in tokens)
