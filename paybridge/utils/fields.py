"""Prioritized field extraction for vendor callback payloads.

Payment processors have renamed their callback fields several times, so each
logical field is described by an ordered list of candidate keys. Sources are
probed in order (body before query string) and the first non-empty value wins.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence


@dataclass(frozen=True)
class FieldRule:
    name: str
    keys: Sequence[str]


PLAYER_RULE = FieldRule("steamid64", ("steamid64", "steam_id", "steamid", "userid", "contact", "customer_id"))
SKU_RULE = FieldRule(
    "sku",
    ("custom2", "pdesc", "product", "product_id", "item", "plan", "description", "product_description"),
)
STATUS_RULE = FieldRule("status", ("status", "payment_status", "result", "resp", "response"))
RESPONSE_CODE_RULE = FieldRule("response_code", ("response_code", "resp_code", "responseCode", "Response"))
TXN_RULE = FieldRule(
    "txn_id",
    ("txn_id", "txnId", "transaction_id", "order_id", "index", "confirmation_code", "ConfirmationCode"),
)
AMOUNT_RULE = FieldRule("amount", ("amount", "sum", "price", "total"))
SECRET_RULE = FieldRule("secret", ("secret", "api_secret", "token"))


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def pick_first(source: Optional[Mapping[str, Any]], keys: Iterable[str]) -> str:
    if not source:
        return ""
    for key in keys:
        value = _clean(source.get(key))
        if value:
            return value
    return ""


def pick_first_from_sources(sources: Sequence[Optional[Mapping[str, Any]]], keys: Iterable[str]) -> str:
    keys = tuple(keys)
    for source in sources:
        value = pick_first(source, keys)
        if value:
            return value
    return ""


def pick_all_from_sources(sources: Sequence[Optional[Mapping[str, Any]]], keys: Iterable[str]) -> List[str]:
    """Every non-empty value in priority order: keys first, then sources."""
    keys = tuple(keys)
    values: List[str] = []
    for key in keys:
        for source in sources:
            if not source:
                continue
            value = _clean(source.get(key))
            if value:
                values.append(value)
    return values


@dataclass
class NotifyFields:
    steamid64: str = ""
    sku_candidates: List[str] = field(default_factory=list)
    status: str = ""
    response_code: str = ""
    txn_id: str = ""
    amount: str = ""
    secret: str = ""

    @property
    def product(self) -> str:
        return self.sku_candidates[0] if self.sku_candidates else ""

    def summary(self, max_length: int = 80) -> dict[str, str]:
        return {
            "steamid64": truncate_log(self.steamid64, max_length),
            "product": truncate_log(self.product, max_length),
            "status": truncate_log(self.status, max_length),
            "response_code": truncate_log(self.response_code, max_length),
            "txn_id": truncate_log(self.txn_id, max_length),
            "amount": truncate_log(self.amount, max_length),
        }


def extract_notify_fields(
    sources: Sequence[Optional[Mapping[str, Any]]],
    headers: Optional[Mapping[str, str]] = None,
) -> NotifyFields:
    secret = pick_first(headers, ("x-api-key",)) or pick_first_from_sources(sources, SECRET_RULE.keys)
    return NotifyFields(
        steamid64=pick_first_from_sources(sources, PLAYER_RULE.keys),
        sku_candidates=pick_all_from_sources(sources, SKU_RULE.keys),
        status=pick_first_from_sources(sources, STATUS_RULE.keys),
        response_code=pick_first_from_sources(sources, RESPONSE_CODE_RULE.keys),
        txn_id=pick_first_from_sources(sources, TXN_RULE.keys),
        amount=pick_first_from_sources(sources, AMOUNT_RULE.keys),
        secret=secret,
    )


def truncate_log(value: Any, max_length: int = 80) -> str:
    text = _clean(value)
    if len(text) <= max_length:
        return text
    return f"{text[:max_length]}..."
