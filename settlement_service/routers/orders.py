from typing import List, Optional
from fastapi import APIRouter, Depends

from common.schemas import CreateOrderRequest, OrderOut, SubscriptionOut, DownloadOut
from settlement_service.container import Services
from settlement_service.deps import get_services, require_creator, get_buyer_email

router = APIRouter()

@router.post("/orders", response_model=OrderOut, status_code=201)
def create_order(req: CreateOrderRequest, services: Services = Depends(get_services)):
    return services.orders.create_order(
        req.product_id,
        req.customer_name,
        req.customer_email,
        bump_accepted=req.bump_accepted,
        booking_slot_start=req.booking_slot_start,
        coupon_code=req.coupon_code,
    )

@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(order_id: str, services: Services = Depends(get_services)):
    return services.orders.get_order(order_id)

@router.get("/orders/{order_id}/download", response_model=DownloadOut)
def download_order(order_id: str, product_id: Optional[str] = None, services: Services = Depends(get_services)):
    return {"download_url": services.orders.get_order_download_url(order_id, product_id)}

@router.get("/creator/orders", response_model=List[OrderOut])
def creator_orders(creator_id: str = Depends(require_creator), services: Services = Depends(get_services)):
    return services.orders.list_creator_orders(creator_id)

@router.get("/buyer/orders", response_model=List[OrderOut])
def buyer_orders(email: str = Depends(get_buyer_email), services: Services = Depends(get_services)):
    return services.orders.list_buyer_orders(email)

@router.get("/buyer/subscriptions", response_model=List[SubscriptionOut])
def buyer_subscriptions(email: str = Depends(get_buyer_email), services: Services = Depends(get_services)):
    return services.orders.list_buyer_subscriptions(email)

@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionOut)
def cancel_subscription(subscription_id: str, email: str = Depends(get_buyer_email),
                        services: Services = Depends(get_services)):
    return services.orders.cancel_subscription(subscription_id, email)
