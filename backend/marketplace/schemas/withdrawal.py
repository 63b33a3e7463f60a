"""Withdrawal and bank account schemas."""

from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import Field

from .base import Money, StandardizedModel, StrictRequestModel


class WithdrawalCreate(StrictRequestModel):
    amount: Decimal = Field(..., decimal_places=2)
    bank_account_id: str


class WithdrawalResponse(StandardizedModel):
    id: str
    user_id: str
    bank_account_id: Optional[str] = None
    amount: Money
    status: str
    transfer_id: Optional[str] = None
    failure_reason: Optional[str] = None
    processed_at: Optional[datetime] = None
    created_at: datetime


class TransferStatusUpdate(StrictRequestModel):
    status: Literal["processing", "completed", "failed"]
    failure_reason: Optional[str] = None


class BankAccountCreate(StrictRequestModel):
    bank_name: str = Field(..., min_length=1, max_length=120)
    account_type: Literal["checking", "savings"]
    account_number: str = Field(..., pattern=r"^[0-9-]{1,30}$")
    agency_number: str = Field(..., pattern=r"^[0-9-]{1,10}$")
    holder_name: str = Field(..., min_length=1, max_length=255)
    holder_cpf: str = Field(..., pattern=r"^\d{11}$")
    is_default: bool = False


class BankAccountResponse(StandardizedModel):
    id: str
    bank_name: str
    account_type: str
    account_number: str
    agency_number: str
    holder_name: str
    is_default: bool
    created_at: datetime
