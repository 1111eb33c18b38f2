# app/x402/gateway.py
"""
x402 payment gateway.

PaymentGateway.authorize() decides, for one inbound request to a route,
whether a valid and settled payment accompanies it:

1. Look up the route price. Unpriced routes are allowed with no further work.
   Priced routes are refused outright while no payout address is configured.
2. Decode the payment header. Missing or malformed -> 402 with a
   PAYMENT-REQUIRED header listing one requirement per supported network.
3. Local checks (supported network, recipient == payout address) before any
   network call.
4. Introspect the stablecoin for EIP-712 domain hints, then verify with the
   facilitator.
5. Settle with the same requirements (same domain hints) used to verify.
6. Return allowed=True with the payer and a PAYMENT-RESPONSE header.

The gateway works on a framework-independent PaymentRequest; translating
to and from HTTP framework types is done by app.x402.middleware.

Every payment failure resolves to a 402. Only unexpected faults propagate.
"""
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from app.x402 import audit
from app.x402.envelope import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    DecodeResult,
    DecodeStatus,
    decode_payment_header,
    encode_payment_required,
    encode_payment_response,
)
from app.x402.facilitator import FacilitatorClient, FacilitatorUnavailableError
from app.x402.models import PaymentEnvelope, PaymentRequirements
from app.x402.networks import NetworkCatalog
from app.x402.routes import PaymentRouteRegistry, normalize_route
from app.x402.tokens import TokenInfo, TokenIntrospector

logger = logging.getLogger(__name__)

# Every configured stablecoin is priced as a 6-decimal token: $1.00 = 1,000,000 units
STABLECOIN_DECIMALS = 6
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

SPONSOR_WALLET_MESSAGE = (
    "Payment settlement failed: No sponsor wallet configured for this payer. "
    "The facilitator requires a sponsor wallet to pay for gas fees. "
    "Please configure a sponsor wallet in the facilitator dashboard."
)
AUTHORIZATION_USED_MESSAGE = (
    "Payment authorization failed. The transaction could not be processed. "
    "Please try signing a new payment. If this persists, check your USDC "
    "balance and try again in a few seconds."
)


class DenialKind(Enum):
    """Why a payment was refused."""
    PAYMENT_MISSING = "payment_missing"
    PROTOCOL_DECODE_FAILURE = "protocol_decode_failure"
    LOCAL_VALIDATION_FAILURE = "local_validation_failure"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    REMOTE_REJECTION = "remote_rejection"


@dataclass(frozen=True)
class PaymentRequest:
    """What the gateway needs to know about an inbound HTTP request."""
    method: str
    path: str
    url: str
    headers: Mapping[str, str]
    client_ip: Optional[str] = None


@dataclass
class PaymentDenial:
    """An HTTP response the caller should send instead of serving the request."""
    kind: DenialKind
    code: str
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)
    status_code: int = 402

    @property
    def reason(self) -> Optional[str]:
        return self.body.get("reason")


@dataclass
class AuthorizationResult:
    allowed: bool
    denial: Optional[PaymentDenial] = None
    payer: Optional[str] = None
    settlement_header: Optional[str] = None
    transaction_hash: Optional[str] = None
    network: Optional[str] = None

    @property
    def response_headers(self) -> Dict[str, str]:
        """Headers the caller attaches to its own response."""
        if self.denial is not None:
            return dict(self.denial.headers)
        if self.settlement_header:
            return {PAYMENT_RESPONSE_HEADER: self.settlement_header}
        return {}


def usd_to_atomic(price_usd: Decimal, decimals: int = STABLECOIN_DECIMALS) -> int:
    """
    Convert a USD price to token atomic units.

    Uses exact decimal arithmetic: $0.05 -> 50000 for a 6-decimal token.
    """
    scaled = Decimal(price_usd) * (Decimal(10) ** decimals)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def classify_settlement_error(error: Optional[str]) -> str:
    """
    Rewrite known settlement failures into actionable messages.

    - missing sponsor wallet -> operator guidance
    - authorization already used/canceled -> ask the payer to sign again
    Anything else is passed through verbatim.
    """
    message = error or "Payment settlement failed"
    if "sponsor wallet" in message or "No sponsor" in message:
        return SPONSOR_WALLET_MESSAGE
    if "authorization is used or canceled" in message:
        return AUTHORIZATION_USED_MESSAGE
    return message


class PaymentGateway:
    """Composes the route registry, network catalog, token introspector and facilitator."""

    def __init__(
        self,
        registry: PaymentRouteRegistry,
        catalog: NetworkCatalog,
        introspector: TokenIntrospector,
        facilitator: FacilitatorClient,
        pay_to: Optional[str],
        resource_base_url: Optional[str] = None,
        max_timeout_seconds: int = 30,
    ):
        self.registry = registry
        self.catalog = catalog
        self.introspector = introspector
        self.facilitator = facilitator

        if not pay_to or pay_to.lower() == ZERO_ADDRESS:
            logger.error("x402: X402_PAY_TO_ADDRESS not configured, priced routes will be refused")
            pay_to = None
        self.pay_to = pay_to
        self.resource_base_url = resource_base_url.rstrip("/") if resource_base_url else None
        self.max_timeout_seconds = max_timeout_seconds

    @property
    def is_configured(self) -> bool:
        """False when there is no payout address to advertise."""
        return self.pay_to is not None


    # --- requirement building ---

    def resource_url(self, request: Optional[PaymentRequest], route_id: str) -> str:
        """Full URL of the protected resource."""
        if self.resource_base_url:
            return f"{self.resource_base_url}{normalize_route(route_id)}"
        if request is not None and request.url:
            return request.url
        return normalize_route(route_id)

    def default_domain(self, network: str) -> Dict[str, str]:
        """EIP-712 domain hints from the catalog, without any network I/O."""
        return {
            "name": self.catalog.token_name(network),
            "version": self.catalog.domain_version(network),
        }

    def resolve_domain(self, network: str) -> Tuple[Dict[str, str], Optional[TokenInfo]]:
        """
        EIP-712 domain hints for a network's stablecoin.

        Uses the name the token contract reports, falling back to catalog
        defaults when the contract cannot be read.
        """
        domain = self.default_domain(network)
        token_info = self.introspector.introspect(self.catalog.stablecoin_address(network), network)
        if token_info is None:
            logger.warning(
                f"x402: Using catalog domain for {network} "
                f"(name={domain['name']!r}, version={domain['version']!r})"
            )
        else:
            domain["name"] = token_info.name
        return domain, token_info

    def build_requirements(
        self,
        route_id: str,
        price_usd: Decimal,
        resource_url: str,
        network: str,
        domain: Optional[Dict[str, str]] = None,
    ) -> PaymentRequirements:
        legacy = self.catalog.to_legacy(network)
        extra: Dict[str, Any] = dict(domain or self.default_domain(legacy))
        extra["networkName"] = legacy
        return PaymentRequirements(
            scheme="exact",
            network=self.catalog.to_chain_id(legacy),
            max_amount_required=str(usd_to_atomic(price_usd)),
            resource=resource_url,
            description=f"Payment required for {normalize_route(route_id)}",
            mime_type="application/json",
            pay_to=self.pay_to,
            max_timeout_seconds=self.max_timeout_seconds,
            asset=self.catalog.stablecoin_address(legacy),
            extra=extra,
        )

    def payment_requirements(
        self,
        route_id: str,
        price_usd: Decimal,
        resource_url: str,
    ) -> List[PaymentRequirements]:
        """One requirement per supported network, using catalog-default domain hints."""
        return [
            self.build_requirements(route_id, price_usd, resource_url, network)
            for network in self.catalog.supported_networks
        ]

    # --- denials ---

    def _payment_required(
        self,
        request: PaymentRequest,
        route_id: str,
        price_usd: Decimal,
        decoded: DecodeResult,
    ) -> AuthorizationResult:
        resource_url = self.resource_url(request, route_id)
        requirements = self.payment_requirements(route_id, price_usd, resource_url)
        header = encode_payment_required(requirements, self.catalog.default_network)

        body: Dict[str, Any] = {
            "error": "Payment Required",
            "message": "Please include PAYMENT-SIGNATURE header with signed payment envelope.",
        }
        if decoded.status is DecodeStatus.MALFORMED:
            kind, code = DenialKind.PROTOCOL_DECODE_FAILURE, "malformed_payment_header"
            body["reason"] = f"Invalid {decoded.header_name} header format"
        else:
            kind, code = DenialKind.PAYMENT_MISSING, "payment_required"
        body["code"] = code
        body["kind"] = kind.value

        logger.info(f"x402: Returning 402 for {normalize_route(route_id)} (${price_usd}, {code})")
        audit.log_payment_required_sent(
            client_ip=request.client_ip,
            route=normalize_route(route_id),
            price_usd=str(price_usd),
            requirements=requirements,
            reason=code,
        )
        return AuthorizationResult(
            allowed=False,
            denial=PaymentDenial(
                kind=kind,
                code=code,
                body=body,
                headers={PAYMENT_REQUIRED_HEADER: header},
            ),
        )

    def _deny(
        self,
        request: PaymentRequest,
        kind: DenialKind,
        code: str,
        error: str,
        reason: str,
        payer: Optional[str] = None,
        details: Optional[str] = None,
    ) -> AuthorizationResult:
        body: Dict[str, Any] = {
            "error": error,
            "reason": reason,
            "code": code,
            "kind": kind.value,
        }
        if details is not None:
            body["details"] = details

        if kind is DenialKind.DEPENDENCY_UNAVAILABLE:
            logger.error(f"x402: {error}: {reason}")
        else:
            logger.warning(f"x402: {error} ({code}) for payer {payer}: {reason}")

        audit.log_payment_failed(
            client_ip=request.client_ip,
            kind=kind.value,
            code=code,
            reason=details or reason,
            wallet_address=payer,
        )
        return AuthorizationResult(
            allowed=False,
            denial=PaymentDenial(kind=kind, code=code, body=body),
            payer=payer,
        )

    # --- main entry point ---

    def authorize(self, request: PaymentRequest, route_id: str) -> AuthorizationResult:
        """
        Authorize one request to a route.

        Args:
            request: The inbound request descriptor
            route_id: Route identifier, e.g. "/api/chat/image" or "POST /api/chat/image"

        Returns:
            AuthorizationResult; when allowed is False, denial holds the 402
            response to send
        """
        price_usd = self.registry.price_for(route_id)
        if price_usd is None:
            logger.debug(f"x402: Route {route_id} not configured for payment, allowing through")
            return AuthorizationResult(allowed=True)

        if not self.is_configured:
            return self._deny(
                request,
                DenialKind.DEPENDENCY_UNAVAILABLE,
                code="payment_not_configured",
                error="Payment unavailable",
                reason="This server has no payout address configured",
            )

        decoded = decode_payment_header(request.headers)

        if not decoded.is_decoded:
            return self._payment_required(request, route_id, price_usd, decoded)

        envelope: PaymentEnvelope = decoded.envelope
        payer = envelope.payer
        logger.info(
            f"x402: Payment envelope for {normalize_route(route_id)} from {payer} "
            f"on {envelope.network} ({decoded.wire_format.value})"
        )
        audit.log_payment_received(
            client_ip=request.client_ip,
            envelope=envelope,
            wire_format=decoded.wire_format.value,
        )

        network = self.catalog.resolve(envelope.network)
        if network is None:
            return self._deny(
                request,
                DenialKind.LOCAL_VALIDATION_FAILURE,
                code="unsupported_network",
                error="Payment verification failed",
                reason=(
                    f"unsupported network: {envelope.network}. "
                    f"Supported: {', '.join(self.catalog.supported_networks)}"
                ),
                payer=payer,
            )

        if envelope.recipient.lower() != self.pay_to.lower():
            return self._deny(
                request,
                DenialKind.LOCAL_VALIDATION_FAILURE,
                code="recipient_mismatch",
                error="Payment verification failed",
                reason=f"recipient mismatch: expected {self.pay_to}, got {envelope.recipient}",
                payer=payer,
            )

        domain, token_info = self.resolve_domain(network)
        if token_info is not None and token_info.decimals != STABLECOIN_DECIMALS:
            logger.error(
                f"x402: Stablecoin {token_info.address} on {network} reports "
                f"{token_info.decimals} decimals, prices assume {STABLECOIN_DECIMALS}"
            )
            return self._deny(
                request,
                DenialKind.LOCAL_VALIDATION_FAILURE,
                code="asset_precision_mismatch",
                error="Payment verification failed",
                reason=f"Payment asset on {network} is misconfigured; payments on this network are unavailable",
                payer=payer,
            )

        requirements = self.build_requirements(
            route_id,
            price_usd,
            self.resource_url(request, route_id),
            network,
            domain=domain,
        )

        try:
            verification = self.facilitator.verify(envelope, requirements)
        except FacilitatorUnavailableError as e:
            return self._deny(
                request,
                DenialKind.DEPENDENCY_UNAVAILABLE,
                code="facilitator_unavailable",
                error="Payment verification unavailable",
                reason=f"{e}. Please try again later.",
                payer=payer,
            )

        audit.log_payment_verified(
            client_ip=request.client_ip,
            verification=verification,
            payer=payer,
        )
        if not verification.is_valid:
            return self._deny(
                request,
                DenialKind.REMOTE_REJECTION,
                code="verification_failed",
                error="Payment verification failed",
                reason=verification.invalid_reason or "Verification failed",
                payer=verification.payer or payer,
            )

        payer = verification.payer or payer
        logger.info(f"x402: Payment verified for payer {payer}, settling on {network}")

        try:
            settlement = self.facilitator.settle(envelope, requirements)
        except FacilitatorUnavailableError as e:
            return self._deny(
                request,
                DenialKind.DEPENDENCY_UNAVAILABLE,
                code="facilitator_unavailable",
                error="Payment settlement unavailable",
                reason=f"{e}. Please try again later.",
                payer=payer,
            )

        if not settlement.success:
            return self._deny(
                request,
                DenialKind.REMOTE_REJECTION,
                code="settlement_failed",
                error="Payment settlement failed",
                reason=classify_settlement_error(settlement.error),
                payer=payer,
                details=settlement.error,
            )

        logger.info(f"x402: Payment settled for {payer}: tx={settlement.transaction_hash} network={network}")
        audit.log_payment_settled(
            client_ip=request.client_ip,
            settlement=settlement,
            network=envelope.network,
            payer=payer,
        )
        return AuthorizationResult(
            allowed=True,
            payer=payer,
            settlement_header=encode_payment_response(settlement, envelope.network),
            transaction_hash=settlement.transaction_hash,
            network=envelope.network,
        )
