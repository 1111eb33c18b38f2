# app/x402/models.py
"""
x402 v2 wire models.

Field names follow the x402 JSON wire format (camelCase); Python attributes
use snake_case with aliases. Always serialize with by_alias=True.
"""
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, field_validator

X402_VERSION = 2


class Authorization(BaseModel):
    """EIP-3009 transferWithAuthorization parameters signed by the payer."""
    from_address: str = Field(..., alias="from")
    to: str
    value: str = Field(..., description="Amount in atomic units, as a decimal string.")
    nonce: str
    valid_before: Union[int, str] = Field(..., alias="validBefore")
    valid_after: Optional[Union[int, str]] = Field(None, alias="validAfter")

    class Config:
        populate_by_name = True
        extra = "allow"

    @field_validator("value", mode="before")
    @classmethod
    def validate_value(cls, v: Any) -> str:
        if isinstance(v, bool):
            raise ValueError("value must be a non-negative integer string")
        if isinstance(v, int):
            v = str(v)
        if not isinstance(v, str) or not v.isdigit():
            raise ValueError("value must be a non-negative integer string")
        return v


class PaymentEnvelope(BaseModel):
    """Signed payment authorization sent by the client."""
    network: str
    authorization: Authorization
    signature: str

    class Config:
        populate_by_name = True
        extra = "allow"

    @property
    def payer(self) -> str:
        return self.authorization.from_address

    @property
    def recipient(self) -> str:
        return self.authorization.to

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class PaymentRequirements(BaseModel):
    """One accepted way to pay for a resource (an entry of `accepts`)."""
    scheme: str = "exact"
    network: str = Field(..., description="CAIP-2 network id")
    max_amount_required: str = Field(..., alias="maxAmountRequired")
    resource: str
    description: str = ""
    mime_type: str = Field("application/json", alias="mimeType")
    pay_to: str = Field(..., alias="payTo")
    max_timeout_seconds: int = Field(30, alias="maxTimeoutSeconds")
    asset: str
    extra: Dict[str, Any] = Field(default_factory=dict)

    class Config:
        populate_by_name = True

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class VerificationResult(BaseModel):
    is_valid: bool = Field(..., alias="isValid")
    payer: Optional[str] = None
    invalid_reason: Optional[str] = Field(None, alias="invalidReason")

    class Config:
        populate_by_name = True


class SettlementResult(BaseModel):
    success: bool
    transaction_hash: Optional[str] = Field(None, alias="transactionHash")
    payer: Optional[str] = None
    network: Optional[str] = None
    error: Optional[str] = None

    class Config:
        populate_by_name = True
