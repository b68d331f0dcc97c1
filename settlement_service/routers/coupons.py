from typing import List
from fastapi import APIRouter, Depends

from common.schemas import (
    ValidateCouponRequest, CouponValidationOut, CreateCouponRequest, UpdateCouponRequest, CouponOut,
)
from settlement_service.container import Services
from settlement_service.deps import get_services, require_creator

router = APIRouter()

@router.post("/coupons/validate", response_model=CouponValidationOut)
def validate_coupon(req: ValidateCouponRequest, services: Services = Depends(get_services)):
    return services.coupons.validate_coupon(req.creator_id, req.code, req.product_id, req.order_amount)

@router.post("/creator/coupons", response_model=CouponOut, status_code=201)
def create_coupon(req: CreateCouponRequest, creator_id: str = Depends(require_creator),
                  services: Services = Depends(get_services)):
    return services.coupons.create_coupon(
        creator_id,
        req.code,
        req.discount_type,
        req.discount_value,
        min_order_amount=req.min_order_amount,
        max_uses=req.max_uses,
        applicable_product_ids=req.applicable_product_ids,
        expires_at=req.expires_at,
    )

@router.get("/creator/coupons", response_model=List[CouponOut])
def list_coupons(creator_id: str = Depends(require_creator), services: Services = Depends(get_services)):
    return services.coupons.list_coupons(creator_id)

@router.patch("/creator/coupons/{coupon_id}", response_model=CouponOut)
def update_coupon(coupon_id: str, req: UpdateCouponRequest, creator_id: str = Depends(require_creator),
                  services: Services = Depends(get_services)):
    return services.coupons.update_coupon(
        coupon_id, creator_id, is_active=req.is_active, max_uses=req.max_uses, expires_at=req.expires_at)

@router.delete("/creator/coupons/{coupon_id}", status_code=204)
def deactivate_coupon(coupon_id: str, creator_id: str = Depends(require_creator),
                      services: Services = Depends(get_services)):
    services.coupons.deactivate_coupon(coupon_id, creator_id)
