# app/x402/middleware.py
"""
FastAPI middleware for x402 payment gating.

This module adapts PaymentGateway to Starlette:
1. Skips requests when X402_ENABLED is false or the path is not priced
2. Translates the Starlette request into a PaymentRequest
3. Runs PaymentGateway.authorize in the thread pool (it does blocking I/O)
4. Returns the 402 denial, or calls the endpoint and attaches the
   PAYMENT-RESPONSE header to its response

Payment is settled before the endpoint runs, so the endpoint only executes
for paid requests.
"""
import logging
from functools import lru_cache
from typing import Callable, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
from starlette.routing import Match

from app.core.config import Settings, settings
from app.x402.audit import log_error
from app.x402.facilitator import FacilitatorClient
from app.x402.gateway import AuthorizationResult, PaymentGateway, PaymentRequest
from app.x402.networks import build_network_catalog
from app.x402.routes import build_route_registry
from app.x402.tokens import TokenInfoCache, TokenIntrospector

logger = logging.getLogger(__name__)


def build_gateway(config: Settings) -> PaymentGateway:
    """Wire a PaymentGateway from application settings."""
    catalog = build_network_catalog(
        config.supported_network_list(),
        default_network=config.X402_NETWORK,
        rpc_urls=config.X402_RPC_URLS,
        domain_versions=config.X402_DOMAIN_VERSIONS,
    )
    introspector = TokenIntrospector(
        catalog,
        cache=TokenInfoCache(),
        timeout=config.X402_RPC_TIMEOUT_SECONDS,
    )
    facilitator = FacilitatorClient(
        base_url=config.X402_FACILITATOR_URL,
        timeout=config.X402_FACILITATOR_TIMEOUT_SECONDS,
    )
    return PaymentGateway(
        registry=build_route_registry(config.X402_ROUTE_PRICES),
        catalog=catalog,
        introspector=introspector,
        facilitator=facilitator,
        pay_to=config.X402_PAY_TO_ADDRESS,
        resource_base_url=config.X402_RESOURCE_BASE_URL,
        max_timeout_seconds=config.X402_MAX_TIMEOUT_SECONDS,
    )


@lru_cache()
def get_gateway() -> PaymentGateway:
    """Process-wide gateway; its token cache lives as long as the process."""
    return build_gateway(settings)


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def is_served(request: Request) -> bool:
    """True when a route of the app fully matches the request path and method."""
    routes = getattr(request.scope.get("app"), "routes", None)
    if routes is None:
        return True
    for route in routes:
        match, _ = route.matches(request.scope)
        if match is Match.FULL:
            return True
    return False


def to_payment_request(request: Request) -> PaymentRequest:
    return PaymentRequest(
        method=request.method,
        path=request.url.path,
        url=str(request.url),
        headers=request.headers,
        client_ip=get_client_ip(request),
    )


def denial_response(result: AuthorizationResult) -> JSONResponse:
    denial = result.denial
    return JSONResponse(
        status_code=denial.status_code,
        content=denial.body,
        headers=denial.headers,
    )


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment gate for FastAPI.

    When X402_ENABLED=false, all requests pass through unchanged.
    """

    def __init__(self, app, gateway: Optional[PaymentGateway] = None):
        super().__init__(app)
        self._gateway = gateway

    @property
    def gateway(self) -> PaymentGateway:
        """Lazy initialization of the gateway."""
        if self._gateway is None:
            self._gateway = get_gateway()
        return self._gateway

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not settings.X402_ENABLED:
            return await call_next(request)

        # CORS preflights never carry a payment
        if request.method == "OPTIONS":
            return await call_next(request)

        route_id = request.url.path
        if not self.gateway.registry.is_priced(route_id):
            return await call_next(request)

        # Never charge for a request the app would answer with 404/405
        if not is_served(request):
            logger.warning(f"x402: Priced route {request.method} {route_id} is not served by this app")
            return await call_next(request)

        # The worker thread is not interrupted if the client disconnects,
        # so a settle call that was already sent runs to completion.
        payment_request = to_payment_request(request)
        try:
            result = await run_in_threadpool(self.gateway.authorize, payment_request, route_id)
        except Exception as e:
            logger.exception(f"x402: Unexpected error authorizing {route_id}")
            log_error(
                client_ip=payment_request.client_ip,
                error_type=type(e).__name__,
                error_message=str(e),
                context={"route": route_id, "method": request.method},
            )
            raise

        if not result.allowed:
            return denial_response(result)

        response = await call_next(request)
        for header, value in result.response_headers.items():
            response.headers[header] = value
        return response
