# app/api/endpoints/payment.py
from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from typing import Any, Optional
import logging

from app.api.models.payment import (
    FacilitatorHealthResponse,
    PaymentRequirementsResponse,
    PricedRoute,
    PricedRoutesResponse,
    SupportedNetwork,
)
from app.x402.gateway import PaymentGateway, PaymentRequest, usd_to_atomic
from app.x402.middleware import get_gateway
from app.x402.routes import normalize_route

logger = logging.getLogger(__name__)

router = APIRouter()
admin_router = APIRouter()


@router.get(
    "/requirements",
    response_model=PaymentRequirementsResponse,
    response_model_exclude_none=True,
    summary="Get x402 payment requirements for an endpoint"
)
def get_payment_requirements(
    request: Request,
    endpoint: Optional[str] = Query(None, description="Endpoint path, e.g. /api/ai/summarize"),
    method: str = Query("POST", description="HTTP method of the endpoint"),
    gateway: PaymentGateway = Depends(get_gateway),
) -> Any:
    """
    Returns the requirements a client has to satisfy to call `endpoint`,
    one entry per supported network.

    Domain hints come from the network catalog; token introspection only
    happens when a payment is actually verified.
    """
    if not endpoint:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="endpoint parameter is required"
        )

    route = normalize_route(endpoint)
    price_usd = gateway.registry.price_for(route)
    if price_usd is None:
        return PaymentRequirementsResponse(
            accepts=[],
            error="Payment not required for this endpoint"
        )

    if not gateway.is_configured:
        logger.error(f"Payment requirements requested for {route} but no payout address is configured")
        return PaymentRequirementsResponse(
            accepts=[],
            error="Payments are not configured on this server"
        )

    resource_request = PaymentRequest(
        method=method.upper(),
        path=route,
        url=f"{str(request.base_url).rstrip('/')}{route}",
        headers={},
    )
    resource_url = gateway.resource_url(resource_request, route)
    requirements = gateway.payment_requirements(route, price_usd, resource_url)

    logger.info(f"Payment requirements requested for {method.upper()} {route} (${price_usd})")
    return PaymentRequirementsResponse(
        accepts=[r.to_wire() for r in requirements],
        defaultNetwork=gateway.catalog.default_network,
    )


@router.get(
    "/routes",
    response_model=PricedRoutesResponse,
    summary="List priced routes and supported networks"
)
def list_priced_routes(gateway: PaymentGateway = Depends(get_gateway)) -> Any:
    catalog = gateway.catalog
    return PricedRoutesResponse(
        routes=[
            PricedRoute(path=path, priceUsd=str(price), maxAmountRequired=str(usd_to_atomic(price)))
            for path, price in gateway.registry.routes().items()
        ],
        networks=[
            SupportedNetwork(
                name=name,
                network=catalog.to_chain_id(name),
                displayName=catalog.display_name(name),
                asset=catalog.stablecoin_address(name),
            )
            for name in catalog.supported_networks
        ],
        defaultNetwork=catalog.default_network,
        payTo=gateway.pay_to,
    )


@admin_router.get(
    "/facilitator/health",
    response_model=FacilitatorHealthResponse,
    response_model_exclude_none=True,
    summary="Check facilitator health"
)
def facilitator_health(gateway: PaymentGateway = Depends(get_gateway)) -> Any:
    """
    Server-side proxy for the facilitator health endpoint.

    Always answers 200; the `healthy` flag carries the result.
    """
    health = gateway.facilitator.health()
    if not health.get("healthy"):
        logger.warning(f"Facilitator health check failed: {health}")
    return FacilitatorHealthResponse(**health)
