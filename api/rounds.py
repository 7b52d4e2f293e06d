"""
Round API Endpoints

重點：
1. 所有業務邏輯集中在 RoundEngine，這裡只做轉換
2. 下注被拒絕時回傳 400 + 固定的 code，前端依 code 顯示訊息
3. 即時更新走 /ws/rounds，這裡的 GET 是斷線重連後的重新同步
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

import logging

from database import get_db
from models import WagerStatus
from schemas import (
    BetSubmit,
    CurrentRoundResponse,
    RoundHistoryResponse,
    UserStatsResponse,
    WagerHistoryResponse,
    WagerResponse,
    paginate,
)
from core.round_engine import RoundEngine
from core.exceptions import (
    AccountNotFound,
    BettingClosed,
    ColorGameException,
    InsufficientBalance,
    InvalidAmount,
    InvalidBetValue,
    NoActiveRound,
    StoreUnavailable,
)
from services.history_service import get_round_history, get_user_stats, get_wager_history
from api.dependencies import get_engine

router = APIRouter(prefix="/api/game", tags=["rounds"])
logger = logging.getLogger(__name__)


def _error_detail(e: ColorGameException) -> dict:
    return {"code": e.code, "message": str(e)}


@router.get("/current", response_model=CurrentRoundResponse)
def get_current_round(engine: RoundEngine = Depends(get_engine)):
    """
    取得目前回合

    返回：
        - period / status / open_time / close_time
        - time_remaining: 距離封盤秒數
        - betting_open: 是否還在可下注時間（封盤前 cutoff 秒內為 False）
        - outcome: 開獎後才有值
        - totals: 各選項的下注筆數與金額
    """
    try:
        snapshot = engine.status_snapshot()
        if not snapshot:
            raise HTTPException(status_code=404, detail="No active round")
        return CurrentRoundResponse(**snapshot)

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Failed to get current round: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/history", response_model=RoundHistoryResponse)
def get_history(
    limit: int = Query(50, ge=1, le=200),
    page: int = Query(1, ge=1),
    db: Session = Depends(get_db)
):
    """
    已開獎回合歷史（期數由新到舊）

    參數：
        limit: 每頁筆數
        page: 頁數（從 1 開始）
    """
    try:
        entries, total = get_round_history(db, limit=limit, page=page)
        return RoundHistoryResponse(
            rounds=entries,
            pagination=paginate(page, limit, len(entries), total)
        )

    except Exception as e:
        logger.error(f"Failed to get round history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.post("/bet", response_model=WagerResponse)
def place_bet(bet_data: BetSubmit, engine: RoundEngine = Depends(get_engine)):
    """
    下注

    參數：
        bet_data: user_id, category（color/number/size）, value, amount

    返回：
        新建立的下注（含凍結的賠率與可能派彩）

    錯誤：
        400 + code：NO_ACTIVE_ROUND / BETTING_CLOSED / INVALID_AMOUNT /
                    INSUFFICIENT_BALANCE / INVALID_BET_VALUE
        404：帳戶不存在
        503：資料庫無法使用
    """
    try:
        wager = engine.place_bet(
            bet_data.user_id,
            bet_data.category,
            bet_data.value,
            bet_data.amount
        )
        return WagerResponse.model_validate(wager)

    except (NoActiveRound, BettingClosed, InvalidAmount, InsufficientBalance, InvalidBetValue) as e:
        logger.info(f"Bet rejected for user {bet_data.user_id}: {e.code}")
        raise HTTPException(status_code=400, detail=_error_detail(e))
    except AccountNotFound as e:
        raise HTTPException(status_code=404, detail=_error_detail(e))
    except StoreUnavailable as e:
        logger.error(f"Store unavailable while placing bet: {e}")
        raise HTTPException(status_code=503, detail=_error_detail(e))
    except Exception as e:
        logger.error(f"Failed to place bet: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/my-bets", response_model=WagerHistoryResponse)
def get_my_bets(
    user_id: str = Query(...),
    limit: int = Query(20, ge=1, le=200),
    page: int = Query(1, ge=1),
    status: Optional[WagerStatus] = Query(None),
    round_id: Optional[str] = Query(None),
    db: Session = Depends(get_db)
):
    """
    使用者下注紀錄（由新到舊）

    參數：
        user_id: 使用者 id
        status: 只看 pending / won / lost
        round_id: 只看某一期
    """
    try:
        wagers, total = get_wager_history(
            db, user_id, limit=limit, page=page, status=status, round_id=round_id
        )
        return WagerHistoryResponse(
            wagers=[WagerResponse.model_validate(w) for w in wagers],
            pagination=paginate(page, limit, len(wagers), total)
        )

    except Exception as e:
        logger.error(f"Failed to get bet history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")


@router.get("/stats", response_model=UserStatsResponse)
def get_stats(user_id: str = Query(...), db: Session = Depends(get_db)):
    """
    使用者下注統計 + 最近 10 期開獎結果
    """
    try:
        return UserStatsResponse(**get_user_stats(db, user_id))

    except Exception as e:
        logger.error(f"Failed to get stats: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Internal error")
