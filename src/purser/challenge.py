"""
Payment challenge codec.

Encodes and decodes the machine-readable payment requirement carried by a
402 response, either as a JSON body or as a base64 ``PAYMENT-REQUIRED``
header. Two top-level shapes circulate (``paymentRequirements[]`` and
``accepts[]``); both decode to the same ``PaymentRequirement``.

Wire validation goes through the x402 SDK's ``PaymentRequirements`` model.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from pydantic import ValidationError, field_validator
from x402.encoding import safe_base64_decode, safe_base64_encode
from x402.types import PaymentRequirements

from .errors import MalformedChallenge
from .money import asset_decimals, base_units_to_usd

logger = logging.getLogger(__name__)


X402_VERSION = 1
PAYMENT_REQUIRED_HEADER = "PAYMENT-REQUIRED"
REQUIREMENTS_KEY = "paymentRequirements"
ACCEPTS_KEY = "accepts"
VARIANTS = (REQUIREMENTS_KEY, ACCEPTS_KEY)

# Fields some merchants leave out; the SDK model requires them.
WIRE_DEFAULTS: dict[str, Any] = {
    "scheme": "exact",
    "network": "",
    "asset": "USDC",
    "resource": "",
    "description": "",
    "mimeType": "application/json",
    "maxTimeoutSeconds": 60,
}


class WireRequirement(PaymentRequirements):
    """SDK requirement model with CAIP-2 network ids allowed."""

    network: str

    @field_validator("max_amount_required", mode="before")
    @classmethod
    def _non_negative_integer(cls, v: Any) -> str:
        text = "" if v is None or isinstance(v, bool) else str(v).strip()
        if not text.isdigit():
            raise ValueError(f"maxAmountRequired must be a non-negative integer string, got {v!r}")
        return text


def _parse_price_hint(raw: Any) -> Decimal:
    try:
        value = Decimal(str(raw))
    except InvalidOperation as e:
        raise MalformedChallenge(f"extra.priceUSD is not a number: {raw!r}") from e
    if not value.is_finite() or value < 0:
        raise MalformedChallenge(f"extra.priceUSD must be a finite non-negative number, got {raw!r}")
    return value


@dataclass(frozen=True)
class PaymentRequirement:
    """What a server demands before serving a metered resource."""

    scheme: str
    network: str
    asset: str
    max_amount_required: str
    pay_to: str
    resource: str
    description: str = ""
    extra: dict[str, Any] = field(default_factory=dict)
    mime_type: str = "application/json"
    max_timeout_seconds: int = 60

    @property
    def amount_base_units(self) -> int:
        return int(self.max_amount_required)

    @property
    def price_usd_hint(self) -> Optional[Decimal]:
        raw = self.extra.get("priceUSD")
        if raw is None:
            return None
        try:
            return _parse_price_hint(raw)
        except MalformedChallenge:
            return None

    def to_model(self) -> WireRequirement:
        return WireRequirement(
            scheme=self.scheme,
            network=self.network,
            asset=self.asset,
            max_amount_required=self.max_amount_required,
            pay_to=self.pay_to,
            resource=self.resource,
            description=self.description,
            mime_type=self.mime_type,
            max_timeout_seconds=self.max_timeout_seconds,
            extra=dict(self.extra),
        )

    def to_wire(self) -> dict[str, Any]:
        return self.to_model().model_dump(by_alias=True, exclude_none=True)

    @classmethod
    def from_wire(cls, raw: Mapping[str, Any]) -> "PaymentRequirement":
        if not isinstance(raw, Mapping):
            raise MalformedChallenge("Payment requirement must be an object")

        try:
            model = WireRequirement.model_validate({**WIRE_DEFAULTS, **raw})
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise MalformedChallenge(f"Invalid payment requirement: {problems}") from e

        extra = dict(model.extra or {})
        if extra.get("priceUSD") is not None:
            _parse_price_hint(extra["priceUSD"])

        return cls(
            scheme=model.scheme,
            network=model.network,
            asset=model.asset,
            max_amount_required=model.max_amount_required,
            pay_to=model.pay_to,
            resource=model.resource,
            description=model.description,
            extra=extra,
            mime_type=model.mime_type,
            max_timeout_seconds=model.max_timeout_seconds,
        )


def requirement_price_usd(requirement: PaymentRequirement) -> Decimal:
    """
    USD price to check against limits.

    The signed intent commits to ``maxAmountRequired``, so a declared
    ``priceUSD`` hint can only raise the price, never lower it.
    """
    derived = base_units_to_usd(requirement.amount_base_units, asset_decimals(requirement.asset))
    hint = requirement.price_usd_hint
    if hint is None:
        return derived
    if hint != derived:
        logger.warning(
            "priceUSD %s disagrees with maxAmountRequired %s %s (= $%s) for %s; using the higher",
            hint, requirement.max_amount_required, requirement.asset, derived, requirement.resource,
        )
    return max(hint, derived)


def encode_body(
    requirements: list[PaymentRequirement],
    variant: str = REQUIREMENTS_KEY,
) -> dict[str, Any]:
    if variant not in VARIANTS:
        raise ValueError(f"Unknown challenge variant: {variant}")
    return {
        "x402Version": X402_VERSION,
        variant: [r.to_wire() for r in requirements],
    }


def encode_header(body: Mapping[str, Any]) -> str:
    return safe_base64_encode(json.dumps(body, sort_keys=True, separators=(",", ":")))


def encode_challenge(
    requirement: PaymentRequirement,
    variant: str = REQUIREMENTS_KEY,
) -> tuple[dict[str, Any], str]:
    """Body and header value for a single-requirement challenge."""
    body = encode_body([requirement], variant=variant)
    return body, encode_header(body)


def decode_body(body: Mapping[str, Any] | bytes | str) -> list[PaymentRequirement]:
    if isinstance(body, (bytes, str)):
        try:
            body = json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedChallenge(f"Challenge body is not valid JSON: {e}") from e
    if not isinstance(body, Mapping):
        raise MalformedChallenge("Challenge body must be a JSON object")

    for key in VARIANTS:
        items = body.get(key)
        if items is None:
            continue
        if not isinstance(items, list) or not items:
            raise MalformedChallenge(f"Challenge {key} must be a non-empty array")
        return [PaymentRequirement.from_wire(item) for item in items]

    raise MalformedChallenge("Challenge has neither paymentRequirements nor accepts")


def decode_header(value: str) -> list[PaymentRequirement]:
    try:
        raw = safe_base64_decode(value.strip())
    except ValueError as e:
        raise MalformedChallenge(f"{PAYMENT_REQUIRED_HEADER} header is not base64: {e}") from e
    return decode_body(raw)


def decode_challenge(
    body: Mapping[str, Any] | bytes | str | None,
    headers: Optional[Mapping[str, str]] = None,
) -> PaymentRequirement:
    """First requirement from a 402 body, falling back to the header."""
    body_error: Optional[MalformedChallenge] = None
    if body:
        try:
            return decode_body(body)[0]
        except MalformedChallenge as e:
            body_error = e

    header_value = _header_lookup(headers or {}, PAYMENT_REQUIRED_HEADER)
    if header_value:
        return decode_header(header_value)[0]

    if body_error is not None:
        raise body_error
    raise MalformedChallenge("402 response carried no payment requirement")


def _header_lookup(headers: Mapping[str, str], name: str) -> Optional[str]:
    target = name.lower()
    for k, v in headers.items():
        if k.lower() == target:
            return v
    return None
