from datetime import datetime
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from models import BetCategory, RoundStatus, WagerStatus


# ============ 共用 ============

class BucketTotals(BaseModel):
    count: int = 0
    amount: float = 0


class RoundTotals(BaseModel):
    total_bets: int = 0
    total_amount: float = 0
    color: Dict[str, BucketTotals] = {}
    size: Dict[str, BucketTotals] = {}
    number: Dict[str, BucketTotals] = {}


class OutcomeResponse(BaseModel):
    number: int
    color: str
    size: str


class Pagination(BaseModel):
    current: int
    total: int
    has_next: bool
    has_prev: bool


def paginate(page: int, limit: int, returned: int, total: int) -> Pagination:
    skip = (page - 1) * limit
    return Pagination(
        current=page,
        total=(total + limit - 1) // limit,
        has_next=skip + returned < total,
        has_prev=page > 1,
    )


# ============ 回合 ============

class CurrentRoundResponse(BaseModel):
    round_id: str
    period: int
    status: RoundStatus
    open_time: datetime
    close_time: datetime
    time_remaining: float
    betting_open: bool
    outcome: Optional[OutcomeResponse] = None
    totals: RoundTotals


class RoundHistoryItem(BaseModel):
    round_id: str
    period: int
    outcome: OutcomeResponse
    total_bets: int
    total_amount: float
    closed_at: Optional[datetime] = None


class RoundHistoryResponse(BaseModel):
    rounds: List[RoundHistoryItem]
    pagination: Pagination


# ============ 下注 ============

class BetSubmit(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    category: str
    value: Union[int, str]
    amount: float = Field(..., gt=0)


class WagerResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    round_id: str
    period: int
    category: BetCategory
    value: str
    amount: float
    multiplier: float
    potential_payout: float
    status: WagerStatus
    payout: float
    result_number: Optional[int] = None
    created_at: datetime
    settled_at: Optional[datetime] = None


class WagerHistoryResponse(BaseModel):
    wagers: List[WagerResponse]
    pagination: Pagination


class ErrorResponse(BaseModel):
    code: str
    message: str


# ============ 統計與帳戶 ============

class UserStats(BaseModel):
    total_bets: int
    total_winnings: float
    total_losses: float
    net_profit: float


class UserStatsResponse(BaseModel):
    stats: UserStats
    recent_rounds: List[RoundHistoryItem]


class BalanceResponse(BaseModel):
    user_id: str
    balance: float
