# app/x402/audit.py
"""
Payment audit trail for the x402 gateway.

Every authorize() outcome that touches money is appended to a JSON-lines
file so operators can reconcile settlements and tell a bad payment apart
from a broken dependency (the `kind` of a failure event).

Auditing is off unless X402_AUDIT_ENABLED is set; the file location comes
from X402_AUDIT_LOG_PATH. Write failures are logged and never fail the
request being audited.
"""
import json
import logging
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from app.core.config import settings
from app.x402.models import (
    PaymentEnvelope,
    PaymentRequirements,
    SettlementResult,
    VerificationResult,
)

logger = logging.getLogger(__name__)


class AuditEventType(Enum):
    """Types of audit events that can be logged."""
    PAYMENT_REQUIRED_SENT = "payment_required_sent"
    PAYMENT_RECEIVED = "payment_received"
    PAYMENT_VERIFIED = "payment_verified"
    PAYMENT_SETTLED = "payment_settled"
    PAYMENT_FAILED = "payment_failed"
    ERROR = "error"


def generate_request_id() -> str:
    return uuid.uuid4().hex[:8]


def get_audit_log_path() -> Path:
    return Path(settings.X402_AUDIT_LOG_PATH)


def create_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Dict[str, Any]:
    """Build one audit record. `wallet_address` is the payer, when known."""
    return {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type.value,
        "request_id": request_id or generate_request_id(),
        "client_ip": client_ip,
        "wallet_address": wallet_address,
        "data": data
    }


def log_audit_event(
    event_type: AuditEventType,
    data: Dict[str, Any],
    client_ip: Optional[str] = None,
    wallet_address: Optional[str] = None,
    request_id: Optional[str] = None
) -> Optional[str]:
    """
    Append an event to the audit file.

    Returns:
        The event's request_id, or None when auditing is off or the
        write failed
    """
    if not settings.X402_AUDIT_ENABLED:
        return None

    event = create_audit_event(event_type, data, client_ip, wallet_address, request_id)
    log_path = get_audit_log_path()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "a") as f:
            f.write(json.dumps(event, default=str) + "\n")
    except OSError as e:
        logger.error(f"x402: Could not write audit event to {log_path}: {e}")
        return None

    logger.debug(f"x402: Audit {event_type.value} [{event['request_id']}]")
    return event["request_id"]


def log_payment_required_sent(
    client_ip: Optional[str],
    route: str,
    price_usd: str,
    requirements: Sequence[PaymentRequirements],
    reason: Optional[str] = None,
) -> Optional[str]:
    """A 402 with a PAYMENT-REQUIRED header was returned."""
    first = requirements[0] if requirements else None
    return log_audit_event(
        AuditEventType.PAYMENT_REQUIRED_SENT,
        data={
            "route": route,
            "price_usd": price_usd,
            "amount": first.max_amount_required if first else None,
            "networks": [r.network for r in requirements],
            "pay_to": first.pay_to if first else None,
            "resource": first.resource if first else None,
            "reason": reason,
        },
        client_ip=client_ip,
    )


def log_payment_received(
    client_ip: Optional[str],
    envelope: PaymentEnvelope,
    wire_format: Optional[str] = None,
) -> Optional[str]:
    """A payment header decoded into an envelope."""
    return log_audit_event(
        AuditEventType.PAYMENT_RECEIVED,
        data={
            "amount": envelope.authorization.value,
            "network": envelope.network,
            "recipient": envelope.recipient,
            "nonce": envelope.authorization.nonce,
            "wire_format": wire_format,
        },
        client_ip=client_ip,
        wallet_address=envelope.payer,
    )


def log_payment_verified(
    client_ip: Optional[str],
    verification: VerificationResult,
    payer: Optional[str] = None,
) -> Optional[str]:
    return log_audit_event(
        AuditEventType.PAYMENT_VERIFIED,
        data={
            "is_valid": verification.is_valid,
            "invalid_reason": verification.invalid_reason,
        },
        client_ip=client_ip,
        wallet_address=verification.payer or payer,
    )


def log_payment_settled(
    client_ip: Optional[str],
    settlement: SettlementResult,
    network: str,
    payer: Optional[str] = None,
) -> Optional[str]:
    """A settlement succeeded; `network` is the one the client paid on."""
    return log_audit_event(
        AuditEventType.PAYMENT_SETTLED,
        data={
            "transaction_hash": settlement.transaction_hash,
            "network": network,
        },
        client_ip=client_ip,
        wallet_address=payer or settlement.payer,
    )


def log_payment_failed(
    client_ip: Optional[str],
    kind: str,
    code: str,
    reason: str,
    wallet_address: Optional[str] = None,
) -> Optional[str]:
    """A payment was refused after decoding (local check, facilitator or dependency)."""
    return log_audit_event(
        AuditEventType.PAYMENT_FAILED,
        data={"kind": kind, "code": code, "reason": reason},
        client_ip=client_ip,
        wallet_address=wallet_address,
    )


def log_error(
    client_ip: Optional[str],
    error_type: str,
    error_message: str,
    context: Optional[Dict[str, Any]] = None,
    wallet_address: Optional[str] = None,
) -> Optional[str]:
    """An unexpected fault escaped the gateway."""
    return log_audit_event(
        AuditEventType.ERROR,
        data={
            "error_type": error_type,
            "error_message": error_message,
            "context": context or {},
        },
        client_ip=client_ip,
        wallet_address=wallet_address,
    )


def read_audit_log(
    max_entries: int = 100,
    event_type: Optional[AuditEventType] = None,
    wallet_address: Optional[str] = None
) -> List[Dict[str, Any]]:
    """
    Read audit events, most recent first.

    Args:
        max_entries: Maximum number of events to return
        event_type: Only return events of this type
        wallet_address: Only return events for this payer (case-insensitive)
    """
    log_path = get_audit_log_path()
    if not log_path.exists():
        return []

    wanted_wallet = wallet_address.lower() if wallet_address else None
    events = []
    try:
        with open(log_path, "r") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    event = json.loads(line)
                except json.JSONDecodeError:
                    continue
                if event_type and event.get("event_type") != event_type.value:
                    continue
                if wanted_wallet and (event.get("wallet_address") or "").lower() != wanted_wallet:
                    continue
                events.append(event)
    except OSError as e:
        logger.error(f"x402: Could not read audit log {log_path}: {e}")
        return []

    events.reverse()
    return events[:max_entries]


def get_audit_stats() -> Dict[str, Any]:
    """
    Summarize the audit log.

    Besides per-type counts, failures are broken down by denial code so a
    facilitator outage (facilitator_unavailable) stands out from rejected
    payments.
    """
    log_path = get_audit_log_path()
    stats: Dict[str, Any] = {
        "total_events": 0,
        "events_by_type": {},
        "failures_by_code": {},
        "settled_transactions": 0,
        "first_event": None,
        "last_event": None,
        "log_path": str(log_path),
        "log_exists": log_path.exists(),
    }
    if not stats["log_exists"]:
        return stats

    # read_audit_log is newest first
    for event in reversed(read_audit_log(max_entries=10 ** 9)):
        stats["total_events"] += 1
        event_type = event.get("event_type", "unknown")
        stats["events_by_type"][event_type] = stats["events_by_type"].get(event_type, 0) + 1

        data = event.get("data") or {}
        if event_type == AuditEventType.PAYMENT_FAILED.value:
            code = data.get("code", "unknown")
            stats["failures_by_code"][code] = stats["failures_by_code"].get(code, 0) + 1
        elif event_type == AuditEventType.PAYMENT_SETTLED.value and data.get("transaction_hash"):
            stats["settled_transactions"] += 1

        timestamp = event.get("timestamp")
        if timestamp:
            if stats["first_event"] is None:
                stats["first_event"] = timestamp
            stats["last_event"] = timestamp

    return stats
