import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
from sqlalchemy.exc import IntegrityError

from common.error_handling import BusinessLogicError, ErrorCodes
from settlement_service.models import Coupon, DiscountType, utcnow
from settlement_service.repositories import CouponRepository

logger = logging.getLogger(__name__)

# the payable amount never drops below one rupee
MIN_PAYABLE_AMOUNT = 100

@dataclass
class CouponValidation:
    valid: bool
    discount_amount: int = 0
    message: str = ""
    coupon_id: Optional[str] = None

class CouponService:
    def __init__(self, session_factory, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def create_coupon(
        self,
        creator_id: str,
        code: str,
        discount_type: str,
        discount_value: int,
        min_order_amount: int = 0,
        max_uses: int = 0,
        applicable_product_ids: Optional[List[str]] = None,
        expires_at: Optional[datetime] = None,
    ) -> Coupon:
        code = (code or "").strip().upper()
        if not code:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "coupon code is required", field="code")
        if discount_type not in (DiscountType.PERCENTAGE, DiscountType.FIXED):
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR,
                                     "discount_type must be 'percentage' or 'fixed'", field="discount_type")
        if discount_value <= 0:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR, "discount_value must be positive", field="discount_value")
        if discount_type == DiscountType.PERCENTAGE and discount_value > 100:
            raise BusinessLogicError(ErrorCodes.VALIDATION_ERROR,
                                     "percentage discount cannot exceed 100", field="discount_value")

        with self.session_factory() as db:
            repo = CouponRepository(db)
            if repo.find_by_code(creator_id, code):
                raise BusinessLogicError(ErrorCodes.DUPLICATE_COUPON, f"coupon code '{code}' already exists", field="code")
            coupon = Coupon(
                creator_id=creator_id,
                code=code,
                discount_type=discount_type,
                discount_value=discount_value,
                min_order_amount=min_order_amount or 0,
                max_uses=max_uses or 0,
                times_used=0,
                applicable_product_ids=list(applicable_product_ids or []),
                is_active=True,
                expires_at=expires_at,
            )
            try:
                repo.add(coupon)
                db.commit()
            except IntegrityError:
                db.rollback()
                raise BusinessLogicError(ErrorCodes.DUPLICATE_COUPON, f"coupon code '{code}' already exists", field="code")
        logger.info(f"Coupon {code} created for creator {creator_id}")
        return coupon

    def list_coupons(self, creator_id: str) -> List[Coupon]:
        with self.session_factory() as db:
            return CouponRepository(db).list_by_creator(creator_id)

    def _owned(self, repo: CouponRepository, coupon_id: str, creator_id: str) -> Coupon:
        coupon = repo.get(coupon_id)
        if not coupon:
            raise BusinessLogicError(ErrorCodes.NOT_FOUND, "coupon not found")
        if coupon.creator_id != creator_id:
            raise BusinessLogicError(ErrorCodes.UNAUTHORIZED, "coupon belongs to another creator")
        return coupon

    def update_coupon(self, coupon_id: str, creator_id: str, is_active: Optional[bool] = None,
                      max_uses: Optional[int] = None, expires_at: Optional[datetime] = None) -> Coupon:
        with self.session_factory() as db:
            coupon = self._owned(CouponRepository(db), coupon_id, creator_id)
            if is_active is not None:
                coupon.is_active = is_active
            if max_uses is not None:
                coupon.max_uses = max_uses
            if expires_at is not None:
                coupon.expires_at = expires_at
            coupon.updated_at = utcnow()
            db.commit()
            return coupon

    def deactivate_coupon(self, coupon_id: str, creator_id: str) -> None:
        with self.session_factory() as db:
            coupon = self._owned(CouponRepository(db), coupon_id, creator_id)
            coupon.is_active = False
            coupon.updated_at = utcnow()
            db.commit()

    def validate_coupon(self, creator_id: str, code: str, product_id: str, order_amount: int) -> CouponValidation:
        """Check eligibility and compute the discount. Ineligibility is a result, not an error."""
        with self.session_factory() as db:
            coupon = CouponRepository(db).find_by_code(creator_id, code or "")

        if not coupon or not coupon.is_active:
            return CouponValidation(valid=False, message="Coupon not found or inactive")
        if coupon.expires_at is not None and self.clock() > coupon.expires_at:
            return CouponValidation(valid=False, message="Coupon has expired")
        if coupon.max_uses > 0 and coupon.times_used >= coupon.max_uses:
            return CouponValidation(valid=False, message="Coupon usage limit reached")
        if coupon.min_order_amount > 0 and order_amount < coupon.min_order_amount:
            return CouponValidation(
                valid=False,
                message=f"Minimum order amount is ₹{coupon.min_order_amount / 100:.2f}",
            )
        if coupon.applicable_product_ids and product_id not in coupon.applicable_product_ids:
            return CouponValidation(valid=False, message="Coupon is not applicable to this product")

        if coupon.discount_type == DiscountType.PERCENTAGE:
            discount = order_amount * coupon.discount_value // 100
        else:
            discount = coupon.discount_value
        discount = max(0, min(discount, order_amount - MIN_PAYABLE_AMOUNT))

        return CouponValidation(valid=True, discount_amount=discount, coupon_id=coupon.id)

    def increment_usage(self, coupon_id: str) -> None:
        with self.session_factory() as db:
            CouponRepository(db).increment_usage(coupon_id)
            db.commit()
