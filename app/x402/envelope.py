# app/x402/envelope.py
"""
Encoding and decoding of x402 payment headers.

Inbound (client -> gateway):
- PAYMENT-SIGNATURE: x402 v2 header. Either base64-encoded JSON or plain JSON,
  wrapping {x402Version, scheme, network, payload}; older clients send the
  bare envelope {network, authorization, signature} as plain JSON.
- X-PAYMENT: deprecated, plain JSON bare envelope only.

Decoding runs an ordered list of decoder attempts and returns a tagged
DecodeResult (absent / decoded / malformed) instead of raising.

Outbound (gateway -> client):
- PAYMENT-REQUIRED: base64 JSON {x402Version: 2, accepts, defaultNetwork}
- PAYMENT-RESPONSE: base64 JSON {success, transactionHash, network}
"""
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import ValidationError
from x402.encoding import safe_base64_decode, safe_base64_encode

from app.x402.models import X402_VERSION, PaymentEnvelope, PaymentRequirements, SettlementResult

logger = logging.getLogger(__name__)

PAYMENT_SIGNATURE_HEADER = "payment-signature"
X_PAYMENT_HEADER = "x-payment"
PAYMENT_REQUIRED_HEADER = "payment-required"
PAYMENT_RESPONSE_HEADER = "payment-response"


class DecodeStatus(Enum):
    ABSENT = "absent"
    DECODED = "decoded"
    MALFORMED = "malformed"


class WireFormat(Enum):
    BASE64_WRAPPED = "base64_wrapped"
    JSON_WRAPPED = "json_wrapped"
    LEGACY_JSON = "legacy_json"


@dataclass(frozen=True)
class DecodeResult:
    status: DecodeStatus
    envelope: Optional[PaymentEnvelope] = None
    header_name: Optional[str] = None
    wire_format: Optional[WireFormat] = None
    error: Optional[str] = None

    @property
    def is_decoded(self) -> bool:
        return self.status is DecodeStatus.DECODED


class EnvelopeDecodeError(ValueError):
    """A single decoder attempt did not match the header value."""


def _parse_json_object(text: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        raise EnvelopeDecodeError(f"not JSON: {e}")
    if not isinstance(parsed, dict):
        raise EnvelopeDecodeError("JSON value is not an object")
    return parsed


def _validate_envelope(data: Dict[str, Any]) -> PaymentEnvelope:
    try:
        return PaymentEnvelope.model_validate(data)
    except ValidationError as e:
        raise EnvelopeDecodeError(f"invalid envelope: {e.error_count()} validation error(s)")


def _unwrap(wrapper: Dict[str, Any]) -> PaymentEnvelope:
    payload = wrapper.get("payload")
    if not isinstance(payload, dict):
        raise EnvelopeDecodeError("wrapper has no payload object")
    data = dict(payload)
    # Older v2 clients only set the network on the wrapper
    if not data.get("network") and wrapper.get("network"):
        data["network"] = wrapper["network"]
    return _validate_envelope(data)


def decode_base64_wrapped(value: str) -> PaymentEnvelope:
    try:
        decoded = safe_base64_decode(value)
    except (ValueError, TypeError, UnicodeDecodeError) as e:
        raise EnvelopeDecodeError(f"not base64: {e}")
    if not decoded:
        raise EnvelopeDecodeError("empty base64 payload")
    return _unwrap(_parse_json_object(decoded))


def decode_json_wrapped(value: str) -> PaymentEnvelope:
    return _unwrap(_parse_json_object(value))


def decode_legacy_json(value: str) -> PaymentEnvelope:
    data = _parse_json_object(value)
    if "payload" in data and "authorization" not in data:
        raise EnvelopeDecodeError("wrapped payload is not a legacy envelope")
    return _validate_envelope(data)


Decoder = Tuple[WireFormat, Callable[[str], PaymentEnvelope]]

# Header name -> decoder attempts, in priority order
HEADER_DECODERS: Sequence[Tuple[str, Sequence[Decoder]]] = (
    (PAYMENT_SIGNATURE_HEADER, (
        (WireFormat.BASE64_WRAPPED, decode_base64_wrapped),
        (WireFormat.JSON_WRAPPED, decode_json_wrapped),
        (WireFormat.LEGACY_JSON, decode_legacy_json),
    )),
    (X_PAYMENT_HEADER, (
        (WireFormat.LEGACY_JSON, decode_legacy_json),
    )),
)


def _get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    value = headers.get(name)
    if value is None:
        # Plain dicts are case-sensitive
        for key, candidate in headers.items():
            if key.lower() == name:
                value = candidate
                break
    if value is None or not value.strip():
        return None
    return value.strip()


def decode_payment_header(headers: Mapping[str, str]) -> DecodeResult:
    """
    Extract the payment envelope from request headers.

    The first payment header present is decoded; a later header is never
    consulted once an earlier one is found, even if it is malformed.

    Args:
        headers: Request headers (case-insensitive mapping or plain dict)

    Returns:
        DecodeResult tagged absent, decoded or malformed
    """
    for header_name, decoders in HEADER_DECODERS:
        value = _get_header(headers, header_name)
        if value is None:
            continue

        errors: List[str] = []
        for wire_format, decoder in decoders:
            try:
                envelope = decoder(value)
            except EnvelopeDecodeError as e:
                errors.append(f"{wire_format.value}: {e}")
                continue

            if header_name == X_PAYMENT_HEADER:
                logger.info("x402: Client used deprecated X-PAYMENT header")
            logger.debug(f"x402: Decoded {header_name} header as {wire_format.value}")
            return DecodeResult(
                status=DecodeStatus.DECODED,
                envelope=envelope,
                header_name=header_name,
                wire_format=wire_format,
            )

        error = "; ".join(errors)
        logger.warning(f"x402: Malformed {header_name} header ({error})")
        return DecodeResult(
            status=DecodeStatus.MALFORMED,
            header_name=header_name,
            error=error,
        )

    return DecodeResult(status=DecodeStatus.ABSENT)


def encode_json_header(data: Dict[str, Any]) -> str:
    return safe_base64_encode(json.dumps(data, separators=(",", ":")).encode("utf-8"))


def decode_json_header(value: str) -> Dict[str, Any]:
    """Decode a base64 JSON header (used by clients and tests)."""
    return json.loads(safe_base64_decode(value))


def encode_payment_required(
    requirements: Sequence[PaymentRequirements],
    default_network: str,
) -> str:
    """Encode the PAYMENT-REQUIRED header for a 402 response."""
    return encode_json_header({
        "x402Version": X402_VERSION,
        "accepts": [r.to_wire() for r in requirements],
        "defaultNetwork": default_network,
    })


def encode_payment_response(settlement: SettlementResult, network: str) -> str:
    """Encode the PAYMENT-RESPONSE header for a settled payment."""
    return encode_json_header({
        "success": settlement.success,
        "transactionHash": settlement.transaction_hash,
        "network": network,
    })
