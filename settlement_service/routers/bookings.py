from typing import List
from fastapi import APIRouter, Depends, Query

from common.schemas import SlotsOut, BookingOut
from common.security import ROLE_CREATOR
from settlement_service.container import Services
from settlement_service.deps import get_services, get_current_user, require_creator, get_buyer_email

router = APIRouter()

@router.get("/products/{product_id}/slots", response_model=SlotsOut)
def available_slots(product_id: str, date: str = Query(..., description="YYYY-MM-DD in the product's timezone"),
                    services: Services = Depends(get_services)):
    slots = services.bookings.get_available_slots(product_id, date)
    return {"product_id": product_id, "date": date, "slots": slots}

@router.post("/bookings/{booking_id}/cancel", status_code=204)
def cancel_booking(booking_id: str, user: dict = Depends(get_current_user), services: Services = Depends(get_services)):
    is_creator = user.get("role") == ROLE_CREATOR
    services.bookings.cancel_booking(
        booking_id,
        user.get("email", ""),
        is_creator=is_creator,
        creator_id=user["sub"] if is_creator else None,
    )

@router.get("/creator/bookings", response_model=List[BookingOut])
def creator_bookings(creator_id: str = Depends(require_creator), services: Services = Depends(get_services)):
    return services.bookings.list_creator_bookings(creator_id)

@router.get("/buyer/bookings", response_model=List[BookingOut])
def buyer_bookings(email: str = Depends(get_buyer_email), services: Services = Depends(get_services)):
    return services.bookings.list_buyer_bookings(email)
