from typing import List, Optional
from fastapi import APIRouter, Depends

from common.schemas import (
    PayoutSettingsRequest, PayoutConfigOut, WithdrawRequest, PayoutOut, BalanceSummaryOut, WalletOut,
)
from settlement_service.container import Services
from settlement_service.deps import get_services, require_creator

router = APIRouter(prefix="/creator")

@router.get("/wallet", response_model=WalletOut)
def wallet(creator_id: str = Depends(require_creator), services: Services = Depends(get_services)):
    balance, entries = services.wallet.get_wallet_details(creator_id)
    return {"balance": balance, "transactions": entries}

@router.post("/payout-settings", response_model=PayoutConfigOut)
def save_payout_settings(req: PayoutSettingsRequest, creator_id: str = Depends(require_creator),
                         services: Services = Depends(get_services)):
    return services.payouts.save_payout_config(creator_id, req.account_holder_name, req.account_number, req.ifsc)

@router.get("/payout-settings", response_model=Optional[PayoutConfigOut])
def get_payout_settings(creator_id: str = Depends(require_creator), services: Services = Depends(get_services)):
    return services.payouts.get_payout_config(creator_id)

@router.post("/payouts/withdraw", response_model=PayoutOut, status_code=201)
def withdraw(req: WithdrawRequest, creator_id: str = Depends(require_creator),
             services: Services = Depends(get_services)):
    return services.payouts.withdraw_funds(creator_id, req.amount)

@router.get("/payouts", response_model=List[PayoutOut])
def payout_history(creator_id: str = Depends(require_creator), services: Services = Depends(get_services)):
    return services.payouts.get_payout_history(creator_id)

@router.get("/payouts/balance", response_model=BalanceSummaryOut)
def balance_summary(creator_id: str = Depends(require_creator), services: Services = Depends(get_services)):
    return services.payouts.get_balance_summary(creator_id)
