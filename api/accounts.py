"""
Account API Endpoints

帳戶的註冊與金流不在這個服務；這裡只提供餘額查詢
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
import logging

from database import get_db
from schemas import BalanceResponse
from core.ledger import Ledger
from core.exceptions import AccountNotFound

router = APIRouter(prefix="/api/accounts", tags=["accounts"])
logger = logging.getLogger(__name__)


@router.get("/{user_id}/balance", response_model=BalanceResponse)
def get_balance(user_id: str, db: Session = Depends(get_db)):
    """取得帳戶餘額"""
    try:
        balance = Ledger.get_balance(db, user_id)
        return BalanceResponse(user_id=user_id, balance=float(balance))

    except AccountNotFound:
        raise HTTPException(status_code=404, detail="Account not found")
    except Exception as e:
        logger.error(f"Failed to get balance: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
