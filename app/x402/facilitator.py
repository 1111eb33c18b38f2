# app/x402/facilitator.py
"""
HTTP client for the x402 facilitator.

The facilitator validates payment signatures (/verify) and executes the
on-chain transfer (/settle) on the gateway's behalf.

Failure classes are kept apart:
- FacilitatorUnavailableError is raised when the facilitator cannot be
  reached (timeout, connection refused, DNS) or answers any non-2xx status
  without a structured reason. That is an operator problem.
- A structured rejection in a 2xx/4xx body is returned as an invalid
  VerificationResult / failed SettlementResult. That is a payment problem.

There are no retries at this layer.
"""
import logging
from typing import Any, Dict, Optional

import requests
from requests.exceptions import RequestException

from app.x402.models import (
    X402_VERSION,
    PaymentEnvelope,
    PaymentRequirements,
    SettlementResult,
    VerificationResult,
)

logger = logging.getLogger(__name__)


class FacilitatorUnavailableError(Exception):
    """The facilitator could not be reached or failed without a usable answer."""

    def __init__(self, message: str, url: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.url = url
        self.status_code = status_code


def build_facilitator_request(
    envelope: PaymentEnvelope,
    requirements: PaymentRequirements,
) -> Dict[str, Any]:
    """Build the JSON body shared by /verify and /settle."""
    return {
        "x402Version": X402_VERSION,
        "paymentRequirements": requirements.to_wire(),
        "paymentPayload": {
            "x402Version": X402_VERSION,
            "scheme": requirements.scheme,
            "network": requirements.network,
            "payload": envelope.to_wire(),
        },
    }


def extract_transaction_hash(result: Dict[str, Any]) -> Optional[str]:
    """
    Pull the transaction hash out of a settle response.

    Facilitators disagree on where it lives: transactionHash, transaction
    (string or object), receipt.settlement.transaction or hash.
    """
    if isinstance(result.get("transactionHash"), str):
        return result["transactionHash"]

    transaction = result.get("transaction")
    if isinstance(transaction, str) and transaction:
        return transaction
    if isinstance(transaction, dict):
        for key in ("hash", "transactionHash"):
            if isinstance(transaction.get(key), str):
                return transaction[key]

    receipt = result.get("receipt")
    if isinstance(receipt, dict):
        settlement = receipt.get("settlement")
        if isinstance(settlement, dict) and isinstance(settlement.get("transaction"), str):
            return settlement["transaction"]

    if isinstance(result.get("hash"), str):
        return result["hash"]
    return None


def reason_text(value: Any) -> Optional[str]:
    """
    Reduce a facilitator error field to a string.

    Some facilitators send {"message": ...} objects or codes where a string
    is expected. Empty values become None.
    """
    if value is None or value == "" or value is False:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, dict):
        for key in ("message", "reason", "code"):
            if isinstance(value.get(key), str) and value[key]:
                return value[key]
    return str(value)


def optional_text(value: Any) -> Optional[str]:
    return value if isinstance(value, str) and value else None


class FacilitatorClient:
    """Blocking client for the facilitator's verify/settle/health endpoints."""

    def __init__(self, base_url: str, timeout: float = 8.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def _post(self, path: str, body: Dict[str, Any]) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            return requests.post(
                url,
                json=body,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout
            )
        except RequestException as e:
            logger.error(f"x402: Facilitator connection failed ({url}): {e}")
            raise FacilitatorUnavailableError(
                f"Facilitator unavailable at {self.base_url}",
                url=url,
            ) from e

    @staticmethod
    def _json_body(response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    def _raise_if_unavailable(self, response: requests.Response, reason: Optional[str], phase: str) -> None:
        if not response.ok and not reason:
            logger.error(f"x402: Facilitator {phase} returned HTTP {response.status_code}")
            raise FacilitatorUnavailableError(
                f"Facilitator {phase} failed with HTTP {response.status_code}",
                url=response.url,
                status_code=response.status_code,
            )

    def verify(
        self,
        envelope: PaymentEnvelope,
        requirements: PaymentRequirements,
    ) -> VerificationResult:
        """
        Ask the facilitator to verify a signed payment against requirements.

        Raises:
            FacilitatorUnavailableError: If the facilitator cannot be reached
                or fails without a reason
        """
        response = self._post("/verify", build_facilitator_request(envelope, requirements))
        data = self._json_body(response)
        reason = reason_text(data.get("invalidReason")) or reason_text(data.get("error"))

        self._raise_if_unavailable(response, reason, "verify")

        if not response.ok:
            return VerificationResult(
                is_valid=False,
                payer=optional_text(data.get("payer")),
                invalid_reason=reason,
            )

        result = VerificationResult(
            is_valid=bool(data.get("isValid")),
            payer=optional_text(data.get("payer")),
            invalid_reason=reason_text(data.get("invalidReason")),
        )
        if not result.is_valid and not result.invalid_reason:
            result.invalid_reason = "Verification failed"
        return result

    def settle(
        self,
        envelope: PaymentEnvelope,
        requirements: PaymentRequirements,
    ) -> SettlementResult:
        """
        Ask the facilitator to execute a verified payment on chain.

        `requirements.resource` must be the full resource URL; the
        facilitator derives the vendor domain from it.

        Raises:
            FacilitatorUnavailableError: If the facilitator cannot be reached
                or fails without a reason
        """
        response = self._post("/settle", build_facilitator_request(envelope, requirements))
        data = self._json_body(response)
        reason = reason_text(data.get("errorReason")) or reason_text(data.get("error"))

        self._raise_if_unavailable(response, reason, "settle")

        if not response.ok or not data.get("success"):
            error = reason or "Settlement failed"
            logger.warning(f"x402: Settlement rejected for {envelope.payer}: {error}")
            return SettlementResult(
                success=False,
                payer=optional_text(data.get("payer")),
                network=optional_text(data.get("network")),
                error=error,
            )

        return SettlementResult(
            success=True,
            transaction_hash=extract_transaction_hash(data),
            payer=optional_text(data.get("payer")),
            network=optional_text(data.get("network")),
        )

    def health(self) -> Dict[str, Any]:
        """
        Check facilitator health.

        Returns:
            Dict with healthy flag, plus status/data or error
        """
        url = f"{self.base_url}/health"
        try:
            response = requests.get(url, timeout=min(self.timeout, 5.0))
        except RequestException as e:
            logger.error(f"x402: Facilitator health check failed ({url}): {e}")
            return {"healthy": False, "error": str(e)}

        if not response.ok:
            return {
                "healthy": False,
                "status": response.status_code,
                "statusText": response.reason,
            }

        data = self._json_body(response)
        return {
            "healthy": True,
            "status": data.get("status", "healthy"),
            "data": data,
        }
