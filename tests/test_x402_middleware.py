# tests/test_x402_middleware.py
"""
Tests for the x402 FastAPI middleware.

The end-to-end tests run a real PaymentGateway behind the middleware. The
facilitator is mocked at requests.post, token reads at
TokenIntrospector._eth_call.
"""
import base64
import json
from unittest.mock import MagicMock, patch

import pytest
import requests
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from app.x402.envelope import (
    PAYMENT_REQUIRED_HEADER,
    PAYMENT_RESPONSE_HEADER,
    PAYMENT_SIGNATURE_HEADER,
    decode_json_header,
)
from app.x402.facilitator import FacilitatorClient
from app.x402.gateway import PaymentGateway
from app.x402.middleware import X402Middleware, build_gateway, get_client_ip
from app.x402.networks import build_network_catalog
from app.x402.routes import PaymentRouteRegistry
from app.x402.tokens import TokenInfoCache, TokenIntrospectionError, TokenIntrospector


PAYER = "0x1111111111111111111111111111111111111111"
PAY_TO = "0x2222222222222222222222222222222222222222"
FACILITATOR_URL = "https://facilitator.example.com/api/v2/x402"


def make_gateway(pay_to=PAY_TO) -> PaymentGateway:
    catalog = build_network_catalog(["base", "avalanche"], default_network="base")
    return PaymentGateway(
        registry=PaymentRouteRegistry({"/api/ai/sentiment": "0.02"}),
        catalog=catalog,
        introspector=TokenIntrospector(catalog, cache=TokenInfoCache()),
        facilitator=FacilitatorClient(FACILITATOR_URL),
        pay_to=pay_to,
    )


def create_test_app(gateway: PaymentGateway) -> FastAPI:
    """Create a FastAPI app with one priced and one free endpoint."""
    app = FastAPI()
    app.state.calls = 0
    app.add_middleware(X402Middleware, gateway=gateway)

    @app.post("/api/ai/sentiment")
    async def sentiment(request: Request):
        request.app.state.calls += 1
        return {"sentiment": "positive", "score": 0.93}

    @app.get("/api/conversations")
    async def conversations():
        return {"conversations": []}

    return app


def payment_header(network: str = "eip155:8453", value: str = "20000") -> dict:
    envelope = {
        "network": network,
        "authorization": {
            "from": PAYER,
            "to": PAY_TO,
            "value": value,
            "nonce": "0x" + "42" * 32,
            "validBefore": 1900000000,
            "validAfter": 0,
        },
        "signature": "0x" + "aa" * 65,
    }
    wrapper = {"x402Version": 2, "scheme": "exact", "network": network, "payload": envelope}
    return {PAYMENT_SIGNATURE_HEADER: base64.b64encode(json.dumps(wrapper).encode()).decode()}


def http_response(status_code: int, body: dict) -> MagicMock:
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.json.return_value = body
    return response


def facilitator_post(verify_body: dict, settle_body: dict):
    """requests.post side effect that answers /verify and /settle."""
    def _post(url, json=None, headers=None, timeout=None):
        if url.endswith("/verify"):
            return http_response(200, verify_body)
        if url.endswith("/settle"):
            return http_response(200, settle_body)
        raise AssertionError(f"unexpected POST {url}")
    return _post


class TestGetClientIP:
    """Test client IP extraction."""

    def test_forwarded_for_header(self):
        request = MagicMock(spec=Request)
        request.headers = {"X-Forwarded-For": "203.0.113.50, 70.41.3.18"}
        request.client = None

        assert get_client_ip(request) == "203.0.113.50"

    def test_real_ip_header(self):
        request = MagicMock(spec=Request)
        request.headers = {"X-Real-IP": "203.0.113.50"}
        request.client = None

        assert get_client_ip(request) == "203.0.113.50"

    def test_direct_connection(self):
        request = MagicMock(spec=Request)
        request.headers = {}
        request.client = MagicMock()
        request.client.host = "192.168.1.100"

        assert get_client_ip(request) == "192.168.1.100"

    def test_no_client_info(self):
        request = MagicMock(spec=Request)
        request.headers = {}
        request.client = None

        assert get_client_ip(request) == "unknown"


class TestBuildGateway:
    """Test gateway wiring from settings."""

    def test_build_from_settings(self):
        config = MagicMock()
        config.supported_network_list.return_value = ["celo", "base"]
        config.X402_NETWORK = "base"
        config.X402_RPC_URLS = {"base": "https://rpc.example.com"}
        config.X402_DOMAIN_VERSIONS = {}
        config.X402_RPC_TIMEOUT_SECONDS = 2.0
        config.X402_FACILITATOR_URL = FACILITATOR_URL + "/"
        config.X402_FACILITATOR_TIMEOUT_SECONDS = 4.0
        config.X402_ROUTE_PRICES = {"/api/custom": "0.07"}
        config.X402_PAY_TO_ADDRESS = PAY_TO
        config.X402_RESOURCE_BASE_URL = "https://aura.example.com"
        config.X402_MAX_TIMEOUT_SECONDS = 60

        gateway = build_gateway(config)

        assert gateway.catalog.supported_networks == ["celo", "base"]
        assert gateway.catalog.default_network == "base"
        assert gateway.catalog.rpc_url("base") == "https://rpc.example.com"
        assert gateway.introspector.timeout == 2.0
        assert gateway.facilitator.base_url == FACILITATOR_URL
        assert gateway.facilitator.timeout == 4.0
        assert gateway.registry.is_priced("/api/custom")
        assert gateway.registry.is_priced("/api/ai/analyze")
        assert gateway.pay_to == PAY_TO
        assert gateway.max_timeout_seconds == 60


class TestMiddlewarePassThrough:
    """Requests that never touch the payment flow."""

    @patch("app.x402.middleware.settings")
    def test_disabled(self, mock_settings):
        mock_settings.X402_ENABLED = False
        gateway = MagicMock(spec=PaymentGateway)
        client = TestClient(create_test_app(gateway))

        response = client.post("/api/ai/sentiment")

        assert response.status_code == 200
        gateway.authorize.assert_not_called()

    @patch("app.x402.middleware.settings")
    @patch("app.x402.facilitator.requests.post")
    def test_unpriced_route(self, mock_post, mock_settings):
        mock_settings.X402_ENABLED = True
        client = TestClient(create_test_app(make_gateway()))

        response = client.get("/api/conversations", headers=payment_header())

        assert response.status_code == 200
        assert PAYMENT_RESPONSE_HEADER not in response.headers
        mock_post.assert_not_called()

    @patch("app.x402.middleware.settings")
    def test_options_skipped(self, mock_settings):
        mock_settings.X402_ENABLED = True
        gateway = MagicMock(spec=PaymentGateway)
        client = TestClient(create_test_app(gateway))

        client.options("/api/ai/sentiment")

        gateway.authorize.assert_not_called()

    @patch("app.x402.middleware.settings")
    def test_priced_but_unmounted_route_not_charged(self, mock_settings):
        """A priced path with no endpoint gets a plain 404 and no payment flow."""
        mock_settings.X402_ENABLED = True
        gateway = MagicMock(spec=PaymentGateway)
        gateway.registry = PaymentRouteRegistry({"/api/ai/sentiment": "0.02", "/api/ai/ocr": "0.04"})
        client = TestClient(create_test_app(gateway))

        response = client.post("/api/ai/ocr", headers=payment_header())

        assert response.status_code == 404
        gateway.authorize.assert_not_called()

    @patch("app.x402.middleware.settings")
    def test_priced_route_wrong_method_not_charged(self, mock_settings):
        mock_settings.X402_ENABLED = True
        gateway = MagicMock(spec=PaymentGateway)
        gateway.registry = PaymentRouteRegistry({"/api/ai/sentiment": "0.02"})
        client = TestClient(create_test_app(gateway))

        response = client.get("/api/ai/sentiment", headers=payment_header())

        assert response.status_code == 405
        gateway.authorize.assert_not_called()


class TestMiddlewarePaymentFlow:
    """Full 402 -> pay -> 200 flow through the middleware."""

    @patch("app.x402.middleware.settings")
    def test_missing_payment_returns_402(self, mock_settings):
        mock_settings.X402_ENABLED = True
        app = create_test_app(make_gateway())
        client = TestClient(app)

        response = client.post("/api/ai/sentiment")

        assert response.status_code == 402
        assert response.json()["error"] == "Payment Required"
        assert response.json()["code"] == "payment_required"
        assert app.state.calls == 0

        required = decode_json_header(response.headers[PAYMENT_REQUIRED_HEADER])
        assert required["x402Version"] == 2
        assert required["defaultNetwork"] == "base"
        assert [a["network"] for a in required["accepts"]] == ["eip155:8453", "eip155:43114"]
        assert required["accepts"][0]["maxAmountRequired"] == "20000"
        assert required["accepts"][0]["resource"] == "http://testserver/api/ai/sentiment"

    @patch("app.x402.middleware.settings")
    @patch.object(TokenIntrospector, "_eth_call")
    @patch("app.x402.facilitator.requests.post")
    def test_paid_request_served(self, mock_facilitator_post, mock_eth_call, mock_settings):
        mock_settings.X402_ENABLED = True
        mock_eth_call.side_effect = TokenIntrospectionError("rpc down")
        mock_facilitator_post.side_effect = facilitator_post(
            {"isValid": True, "payer": PAYER},
            {"success": True, "transaction": "0xabc", "payer": PAYER, "network": "eip155:8453"},
        )
        app = create_test_app(make_gateway())
        client = TestClient(app)

        response = client.post("/api/ai/sentiment", headers=payment_header())

        assert response.status_code == 200
        assert response.json()["sentiment"] == "positive"
        assert app.state.calls == 1
        settlement = decode_json_header(response.headers[PAYMENT_RESPONSE_HEADER])
        assert settlement == {"success": True, "transactionHash": "0xabc", "network": "eip155:8453"}

        # verify then settle, with catalog domain hints since RPC was down
        urls = [c[0][0] for c in mock_facilitator_post.call_args_list]
        assert urls == [f"{FACILITATOR_URL}/verify", f"{FACILITATOR_URL}/settle"]
        body = mock_facilitator_post.call_args_list[0][1]["json"]
        assert body["paymentRequirements"]["extra"]["name"] == "USD Coin"
        assert body["paymentRequirements"]["maxAmountRequired"] == "20000"

    @patch("app.x402.middleware.settings")
    @patch.object(TokenIntrospector, "_eth_call")
    @patch("app.x402.facilitator.requests.post")
    def test_rejected_payment_not_served(self, mock_facilitator_post, mock_eth_call, mock_settings):
        mock_settings.X402_ENABLED = True
        mock_eth_call.side_effect = TokenIntrospectionError("rpc down")
        mock_facilitator_post.side_effect = facilitator_post(
            {"isValid": False, "invalidReason": "insufficient_funds"},
            {"success": True},
        )
        app = create_test_app(make_gateway())
        client = TestClient(app)

        response = client.post("/api/ai/sentiment", headers=payment_header())

        assert response.status_code == 402
        assert response.json()["reason"] == "insufficient_funds"
        assert response.json()["kind"] == "remote_rejection"
        assert app.state.calls == 0
        assert mock_facilitator_post.call_count == 1

    @patch("app.x402.middleware.settings")
    @patch.object(TokenIntrospector, "_eth_call")
    @patch("app.x402.facilitator.requests.post")
    def test_facilitator_down_returns_402(self, mock_facilitator_post, mock_eth_call, mock_settings):
        mock_settings.X402_ENABLED = True
        mock_eth_call.side_effect = TokenIntrospectionError("rpc down")
        mock_facilitator_post.side_effect = requests.exceptions.Timeout("timed out")
        app = create_test_app(make_gateway())
        client = TestClient(app)

        response = client.post("/api/ai/sentiment", headers=payment_header())

        assert response.status_code == 402
        assert response.json()["code"] == "facilitator_unavailable"
        assert response.json()["kind"] == "dependency_unavailable"
        assert app.state.calls == 0

    @patch("app.x402.middleware.settings")
    def test_unsupported_network(self, mock_settings):
        mock_settings.X402_ENABLED = True
        client = TestClient(create_test_app(make_gateway()))

        response = client.post("/api/ai/sentiment", headers=payment_header(network="eip155:42220"))

        assert response.status_code == 402
        assert response.json()["code"] == "unsupported_network"

    @patch("app.x402.middleware.settings")
    @patch("app.x402.facilitator.requests.post")
    def test_no_payout_address_refuses_priced_route(self, mock_facilitator_post, mock_settings):
        mock_settings.X402_ENABLED = True
        app = create_test_app(make_gateway(pay_to=None))
        client = TestClient(app)

        response = client.post("/api/ai/sentiment", headers=payment_header())

        assert response.status_code == 402
        assert response.json()["code"] == "payment_not_configured"
        assert PAYMENT_REQUIRED_HEADER not in response.headers
        assert app.state.calls == 0
        mock_facilitator_post.assert_not_called()


    @patch("app.x402.middleware.log_error")
    @patch("app.x402.middleware.settings")
    def test_unexpected_error_is_audited_and_raised(self, mock_settings, mock_log_error):
        mock_settings.X402_ENABLED = True
        gateway = MagicMock(spec=PaymentGateway)
        gateway.registry = PaymentRouteRegistry({"/api/ai/sentiment": "0.02"})
        gateway.authorize.side_effect = RuntimeError("boom")
        client = TestClient(create_test_app(gateway))

        with pytest.raises(RuntimeError):
            client.post("/api/ai/sentiment")

        mock_log_error.assert_called_once()
        assert mock_log_error.call_args[1]["error_type"] == "RuntimeError"
