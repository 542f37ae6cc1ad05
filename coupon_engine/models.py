from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Optional
from pydantic import BaseModel, Field, ConfigDict, StringConstraints


NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
PositiveAmount = Annotated[Decimal, Field(gt=0, allow_inf_nan=False)]


class EventType(str, Enum):
    CREATE = "create"
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    PAY = "pay"


CREDIT_EVENTS = (EventType.CREATE, EventType.DEPOSIT)


class Coupon(BaseModel):
    id: str
    label: str
    owner_wallet: str
    initial_amount_sol: Decimal
    remaining_amount_sol: Decimal
    expires_at: Optional[datetime] = None
    pool_address: str
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CouponEvent(BaseModel):
    coupon_id: str
    owner_wallet: str
    type: EventType
    amount_sol: Decimal
    to_address: str
    note: Optional[str] = None
    tx_sig: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

    def signed_amount(self) -> Decimal:
        if self.type in CREDIT_EVENTS:
            return self.amount_sol
        return -self.amount_sol


class CouponHistory(BaseModel):
    coupon: Coupon
    events: list[CouponEvent]

    def replayed_balance(self) -> Decimal:
        """Balance obtained by replaying every event from zero."""
        return sum((e.signed_amount() for e in self.events), Decimal("0"))


class CreateCouponRequest(BaseModel):
    wallet: NonEmptyStr
    label: NonEmptyStr
    amount_sol: PositiveAmount
    expiry: Optional[datetime] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "wallet": "9xQeWvG816bUx9EPjHmaT23yvVM2ZWbrrpZb9PusVFin",
            "label": "Lunch",
            "amount_sol": 2.5,
            "expiry": "2026-12-31T23:59:59Z"
        }
    })


class DepositRequest(BaseModel):
    wallet: NonEmptyStr
    amount_sol: PositiveAmount
    tx_sig: Optional[str] = Field(default=None, description="Signature of the deposit made from the owner's wallet")


class WithdrawRequest(BaseModel):
    wallet: NonEmptyStr
    amount_sol: PositiveAmount
    recipient: NonEmptyStr


class PayRequest(BaseModel):
    wallet: NonEmptyStr
    coupon_id: NonEmptyStr
    amount_sol: PositiveAmount
    merchant: NonEmptyStr
    note: Optional[str] = None


class CouponResponse(BaseModel):
    coupon: Coupon
    event: Optional[CouponEvent] = None
    message: str


class WithdrawResponse(CouponResponse):
    tx_sig: str


class CouponWithEvents(Coupon):
    events: list[CouponEvent]


class CouponListResponse(BaseModel):
    wallet: str
    pool_address: str
    coupons: list[CouponWithEvents]


class CouponHistoryResponse(BaseModel):
    coupon: Coupon
    events: list[CouponEvent]


class WithdrawalStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    RECORDED = "recorded"
    FAILED = "failed"
    UNCONFIRMED = "unconfirmed"


class WithdrawalRecord(BaseModel):
    """Journal entry tracking an on-chain withdrawal until it is in the ledger."""

    id: str
    coupon_id: str
    owner_wallet: str
    amount_sol: Decimal
    recipient: str
    status: WithdrawalStatus = WithdrawalStatus.PENDING
    tx_sig: Optional[str] = None
    created_at: datetime
    updated_at: datetime
