from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field

class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)

# payments

class VerifyPaymentRequest(BaseModel):
    gateway_order_id: str
    gateway_payment_id: str
    signature: str

# orders

class CreateOrderRequest(BaseModel):
    product_id: str
    customer_name: str = ""
    customer_email: str
    bump_accepted: bool = False
    booking_slot_start: Optional[str] = None
    coupon_code: Optional[str] = None

class LineItem(BaseModel):
    product_id: str
    title: str
    amount: int
    product_type: str

class OrderOut(ORMModel):
    id: str
    product_id: str
    creator_id: str
    line_items: List[LineItem]
    booking_slot_start: Optional[datetime] = None
    booking_slot_end: Optional[datetime] = None
    customer_name: str
    customer_email: str
    amount: int
    currency: str
    coupon_code: Optional[str] = None
    discount_amount: int = 0
    platform_fee: int = 0
    gateway_order_id: str
    gateway_payment_id: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None

class SubscriptionOut(ORMModel):
    id: str
    product_id: str
    creator_id: str
    customer_email: str
    amount: int
    currency: str
    interval: str
    gateway_subscription_id: str
    status: str
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    paid_count: int = 0
    total_count: int = 0

class DownloadOut(BaseModel):
    download_url: str

# wallet

class LedgerEntryOut(ORMModel):
    id: int
    amount: int
    direction: str
    source: str
    reference_id: str
    description: str
    created_at: datetime

class WalletOut(BaseModel):
    balance: int
    transactions: List[LedgerEntryOut]

# payouts

class PayoutSettingsRequest(BaseModel):
    account_holder_name: str
    account_number: str
    ifsc: str

class PayoutConfigOut(ORMModel):
    account_holder_name: Optional[str] = None
    account_number_masked: Optional[str] = None
    ifsc: Optional[str] = None
    is_verified: bool = False

class WithdrawRequest(BaseModel):
    amount: int = Field(..., gt=0)

class PayoutOut(ORMModel):
    id: str
    amount: int
    platform_fee: int
    net_amount: int
    gateway_payout_id: Optional[str] = None
    status: str
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

class BalanceSummaryOut(ORMModel):
    available_balance: int
    pending_payout: int
    total_earned: int
    total_withdrawn: int

# bookings

class SlotsOut(BaseModel):
    product_id: str
    date: str
    slots: List[datetime]

class BookingOut(ORMModel):
    id: str
    product_id: str
    order_id: str
    buyer_email: str
    buyer_name: str
    slot_start: datetime
    slot_end: datetime
    meeting_link: Optional[str] = None
    status: str

# coupons

class ValidateCouponRequest(BaseModel):
    creator_id: str
    code: str
    product_id: str
    order_amount: int = Field(..., ge=0)

class CouponValidationOut(ORMModel):
    valid: bool
    discount_amount: int = 0
    message: str = ""

class CreateCouponRequest(BaseModel):
    code: str
    discount_type: Literal["percentage", "fixed"]
    discount_value: int
    min_order_amount: int = 0
    max_uses: int = 0
    applicable_product_ids: List[str] = Field(default_factory=list)
    expires_at: Optional[datetime] = None

class UpdateCouponRequest(BaseModel):
    is_active: Optional[bool] = None
    max_uses: Optional[int] = None
    expires_at: Optional[datetime] = None

class CouponOut(ORMModel):
    id: str
    code: str
    discount_type: str
    discount_value: int
    min_order_amount: int
    max_uses: int
    times_used: int
    applicable_product_ids: List[str]
    is_active: bool
    expires_at: Optional[datetime] = None
