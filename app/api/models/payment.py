from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class PaymentRequirementsResponse(BaseModel):
    """x402 v2 payment requirements for one endpoint."""
    x402Version: int = Field(2, description="x402 protocol version")
    accepts: List[Dict[str, Any]] = Field(
        default_factory=list,
        description="One payment requirement per supported network"
    )
    defaultNetwork: Optional[str] = Field(None, description="Legacy name of the preferred network")
    error: Optional[str] = Field(None, description="Set when the endpoint does not require payment")


class PricedRoute(BaseModel):
    """A route gated by x402 payment."""
    path: str
    priceUsd: str = Field(..., description="Price in USD, e.g. '0.05'")
    maxAmountRequired: str = Field(..., description="Price in stablecoin atomic units")


class SupportedNetwork(BaseModel):
    name: str = Field(..., description="Legacy network name, e.g. 'base'")
    network: str = Field(..., description="CAIP-2 id, e.g. 'eip155:8453'")
    displayName: str
    asset: str = Field(..., description="Stablecoin contract address")


class PricedRoutesResponse(BaseModel):
    """Priced routes and the networks payments are accepted on."""
    routes: List[PricedRoute]
    networks: List[SupportedNetwork]
    defaultNetwork: str
    payTo: Optional[str] = Field(None, description="Payout address; null when payments are not configured")


class FacilitatorHealthResponse(BaseModel):
    healthy: bool
    status: Optional[Any] = None
    statusText: Optional[str] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
