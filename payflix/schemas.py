"""
Request bodies for the session and payment endpoints.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


class _Request(BaseModel):
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)


class CreateSessionRequest(_Request):
    user_wallet: str = Field(alias='userWallet', min_length=1)
    approved_amount: Decimal = Field(alias='approvedAmount')
    expires_in: Optional[int] = Field(default=None, alias='expiresIn')


class ConfirmSessionRequest(_Request):
    session_id: str = Field(alias='sessionId', min_length=1)
    approval_transaction: Optional[str] = Field(default=None, alias='approvalTransaction')
    transaction_signature: Optional[str] = Field(default=None, alias='transactionSignature')


class WithdrawRequest(_Request):
    user_wallet: str = Field(alias='userWallet', min_length=1)
    amount: Optional[Decimal] = None


class RevokeSessionRequest(_Request):
    session_id: str = Field(alias='sessionId', min_length=1)
    user_wallet: str = Field(alias='userWallet', min_length=1)


class SeamlessPaymentRequest(_Request):
    video_id: str = Field(alias='videoId', min_length=1)
    user_wallet: str = Field(alias='userWallet', min_length=1)


class FacilitatorRequest(_Request):
    payment_payload: Dict[str, Any] = Field(alias='paymentPayload')
    payment_requirements: Dict[str, Any] = Field(alias='paymentRequirements')
