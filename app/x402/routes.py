# app/x402/routes.py
"""
Priced route registry for the x402 gateway.

Maps normalized request paths to a USD price. A route that is not in the
registry is unguarded; a route priced at 0 is still gated and must go
through the full payment flow.

Matching is exact on the normalized path. There is no pattern matching, so
every protected endpoint has to be listed here or in X402_ROUTE_PRICES.
"""
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Mapping, Optional, Union

logger = logging.getLogger(__name__)

# USD prices for the AI endpoints
DEFAULT_ROUTE_PRICES: Dict[str, Decimal] = {
    # Vision & audio
    "/api/ai/analyze": Decimal("0.05"),
    "/api/ai/generate": Decimal("0.15"),
    "/api/ai/transcribe": Decimal("0.04"),
    "/api/ai/synthesize": Decimal("0.04"),
    # NLP
    "/api/ai/summarize": Decimal("0.03"),
    "/api/ai/translate": Decimal("0.03"),
    "/api/ai/sentiment": Decimal("0.02"),
    "/api/ai/moderate": Decimal("0.01"),
    "/api/ai/simplify": Decimal("0.02"),
    "/api/ai/extract": Decimal("0.03"),
    # Business tools
    "/api/ai/email/generate": Decimal("0.02"),
    "/api/ai/product/describe": Decimal("0.03"),
    "/api/ai/seo/optimize": Decimal("0.05"),
    # Developer tools
    "/api/ai/code/generate": Decimal("0.08"),
    "/api/ai/code/review": Decimal("0.05"),
    "/api/ai/sql/generate": Decimal("0.03"),
    "/api/ai/regex/generate": Decimal("0.02"),
    "/api/ai/docs/generate": Decimal("0.05"),
    # Advanced
    "/api/ai/ocr": Decimal("0.04"),
    "/api/ai/quiz/generate": Decimal("0.05"),
    # Chat integration
    "/api/chat/image": Decimal("0.05"),
    "/api/chat/audio": Decimal("0.04"),
}


def normalize_route(route_id: str) -> str:
    """
    Normalize a route identifier to the registry key format.

    Accepts "POST /api/chat/image", "/api/chat/image/" or
    "/api/chat/image?x=1" and returns "/api/chat/image".
    """
    route = route_id.strip()
    if " " in route:
        route = route.split(" ", 1)[1].strip()
    route = route.split("?", 1)[0]
    if len(route) > 1:
        route = route.rstrip("/") or "/"
    return route


def _to_price(value: Union[Decimal, str, int, float]) -> Decimal:
    try:
        # str() first so floats keep their shortest repr (0.05, not 0.05000000000000000277)
        price = Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Invalid route price: {value!r}")
    if price < 0 or not price.is_finite():
        raise ValueError(f"Route price must be a non-negative number: {value!r}")
    return price


class PaymentRouteRegistry:
    """Static route -> USD price lookup."""

    def __init__(self, prices: Optional[Mapping[str, Union[Decimal, str, int, float]]] = None):
        self._prices: Dict[str, Decimal] = {}
        if prices:
            for route, price in prices.items():
                self.register(route, price)

    def register(self, route_id: str, price: Union[Decimal, str, int, float]) -> None:
        """Register (or replace) the price for a route."""
        self._prices[normalize_route(route_id)] = _to_price(price)

    def price_for(self, route_id: str) -> Optional[Decimal]:
        """
        Get the USD price for a route.

        Returns:
            The price, or None when the route is not guarded. A price of 0
            is returned as Decimal("0"), so callers must test for None.
        """
        return self._prices.get(normalize_route(route_id))

    def is_priced(self, route_id: str) -> bool:
        return self.price_for(route_id) is not None

    def routes(self) -> Dict[str, Decimal]:
        """All priced routes, sorted by path."""
        return dict(sorted(self._prices.items()))


def build_route_registry(overrides: Optional[Mapping[str, Union[Decimal, str]]] = None) -> PaymentRouteRegistry:
    """
    Build the registry from the default price table plus configured overrides.

    Args:
        overrides: Path -> USD price entries (from X402_ROUTE_PRICES). They
            replace defaults for the same path and may add new paths.
    """
    registry = PaymentRouteRegistry(DEFAULT_ROUTE_PRICES)
    for route, price in (overrides or {}).items():
        registry.register(route, price)
        logger.info(f"x402: Route price override {normalize_route(route)} = ${price}")
    return registry
