"""
Round Store：回合與下注的持久化

職責：
1. 期數分配（最大期數 + 1，無缺號）
2. 建立回合、更新回合統計、寫入開獎結果
3. 查詢待結算下注、寫入結算結果（冪等）
4. 歷史查詢（回合歷史、使用者下注歷史）

注意：
    - 寫入類函式不 commit，由呼叫端的 @transactional 決定
    - 統計用 UPDATE ... SET count = count + 1，不在 Python 端讀後寫
"""
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Tuple
import logging

from sqlalchemy import func, update
from sqlalchemy.orm import Session

from models import (
    BetCategory,
    Round,
    RoundBucket,
    RoundStatus,
    Wager,
    WagerStatus,
    utcnow,
)
from core.exceptions import InvalidStateTransition, RoundNotFound
from core.locks import with_round_lock
from services.wager_evaluator import Outcome, bucket_keys

logger = logging.getLogger(__name__)


class RoundStore:
    """回合與下注的資料存取"""

    # ============ 期數與回合 ============

    @staticmethod
    def next_period(db: Session) -> int:
        """最大已存在期數 + 1；沒有任何回合時為 1"""
        highest = db.query(func.max(Round.period)).scalar()
        return (highest or 0) + 1

    @staticmethod
    def create_round(db: Session, period: int, open_time: datetime, close_time: datetime) -> Round:
        """
        建立新回合（status=open）並建立 15 個統計欄位

        參數：
            period: 期數（由 next_period 取得）
            open_time / close_time: 開盤與封盤時間（naive UTC）

        返回：
            新的 Round
        """
        round_obj = Round(
            period=period,
            open_time=open_time,
            close_time=close_time,
            status=RoundStatus.OPEN,
            total_bets=0,
            total_amount=Decimal("0"),
        )
        db.add(round_obj)
        db.flush()  # 取得 round_obj.id

        for category, value in bucket_keys():
            db.add(RoundBucket(
                round_id=round_obj.id,
                category=category,
                value=value,
                count=0,
                amount=Decimal("0"),
            ))
        db.flush()

        logger.info(f"Created round {round_obj.id} for period {period}")
        return round_obj

    @staticmethod
    def get_round(db: Session, round_id: str) -> Round:
        round_obj = db.query(Round).filter(Round.id == round_id).first()
        if not round_obj:
            raise RoundNotFound(round_id)
        return round_obj

    @staticmethod
    def find_open_rounds(db: Session) -> List[Round]:
        """所有 status=open 的回合（正常情況最多一個；重啟時用來復原）"""
        return db.query(Round).filter(
            Round.status == RoundStatus.OPEN
        ).order_by(Round.period).all()

    @staticmethod
    def update_round_counters(
        db: Session,
        round_id: str,
        category: BetCategory,
        value: str,
        amount: Decimal,
    ) -> None:
        """
        原子累加回合統計（總筆數、總金額、單一 bucket）

        異常：
            RoundNotFound: 回合或 bucket 不存在
        """
        result = db.execute(
            update(Round)
            .where(Round.id == round_id)
            .values(
                total_bets=Round.total_bets + 1,
                total_amount=Round.total_amount + amount,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RoundNotFound(round_id)

        result = db.execute(
            update(RoundBucket)
            .where(
                RoundBucket.round_id == round_id,
                RoundBucket.category == category,
                RoundBucket.value == value,
            )
            .values(
                count=RoundBucket.count + 1,
                amount=RoundBucket.amount + amount,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RoundNotFound(f"{round_id} bucket {category.value}/{value}")

    @staticmethod
    def close_round(db: Session, round_id: str, outcome: Outcome) -> Outcome:
        """
        寫入開獎結果並轉換為 closed（唯一一次）

        冪等：如果回合已經 closed，返回已保存的結果，不會覆寫

        返回：
            實際生效的 Outcome

        異常：
            RoundNotFound: 回合不存在
            InvalidStateTransition: 回合狀態不是 open/closed
        """
        round_obj = with_round_lock(round_id, db).first()
        if not round_obj:
            raise RoundNotFound(round_id)

        if round_obj.status == RoundStatus.CLOSED:
            logger.warning(f"Round {round_id} already closed, keeping stored outcome")
            return Outcome.from_number(round_obj.result_number)

        if round_obj.status != RoundStatus.OPEN:
            raise InvalidStateTransition(
                f"Cannot close round {round_id} in status {round_obj.status.value}"
            )

        round_obj.result_number = outcome.number
        round_obj.result_color = outcome.color
        round_obj.result_size = outcome.size
        round_obj.status = RoundStatus.CLOSED
        round_obj.closed_at = utcnow()
        db.flush()
        return outcome

    @staticmethod
    def get_outcome(db: Session, round_id: str) -> Optional[Outcome]:
        round_obj = RoundStore.get_round(db, round_id)
        if round_obj.result_number is None:
            return None
        return Outcome.from_number(round_obj.result_number)

    @staticmethod
    def get_totals(db: Session, round_id: str) -> Dict:
        """
        回合統計快照

        返回：
            {
              "total_bets": int,
              "total_amount": float,
              "color": {"red": {"count", "amount"}, ...},
              "size": {...},
              "number": {"0": {...}, ..., "9": {...}},
            }
        """
        # 查欄位而不是 ORM 物件：計數器是用 UPDATE 表達式累加的，
        # session 裡的 Round 物件可能是舊值
        row = db.query(Round.total_bets, Round.total_amount).filter(Round.id == round_id).first()
        if row is None:
            raise RoundNotFound(round_id)
        buckets = db.query(
            RoundBucket.category, RoundBucket.value, RoundBucket.count, RoundBucket.amount
        ).filter(RoundBucket.round_id == round_id).order_by(RoundBucket.id).all()

        totals: Dict = {
            "total_bets": row.total_bets,
            "total_amount": float(row.total_amount or 0),
            BetCategory.COLOR.value: {},
            BetCategory.SIZE.value: {},
            BetCategory.NUMBER.value: {},
        }
        for category, value, count, amount in buckets:
            totals[category.value][value] = {
                "count": count,
                "amount": float(amount or 0),
            }
        return totals

    # ============ 下注 ============

    @staticmethod
    def create_wager(
        db: Session,
        user_id: str,
        round_obj: Round,
        category: BetCategory,
        value: str,
        amount: Decimal,
        multiplier: Decimal,
    ) -> Wager:
        wager = Wager(
            user_id=user_id,
            round_id=round_obj.id,
            period=round_obj.period,
            category=category,
            value=value,
            amount=amount,
            multiplier=multiplier,
            potential_payout=amount * multiplier,
            status=WagerStatus.PENDING,
            payout=Decimal("0"),
        )
        db.add(wager)
        db.flush()
        return wager

    @staticmethod
    def find_pending_wagers(db: Session, round_id: str) -> List[Wager]:
        return db.query(Wager).filter(
            Wager.round_id == round_id,
            Wager.status == WagerStatus.PENDING
        ).order_by(Wager.created_at).all()

    @staticmethod
    def find_rounds_with_pending_wagers(db: Session) -> List[Round]:
        """已開獎但仍有 pending 下注的回合（結算曾失敗或重啟中斷）"""
        return db.query(Round).join(Wager, Wager.round_id == Round.id).filter(
            Round.status == RoundStatus.CLOSED,
            Wager.status == WagerStatus.PENDING
        ).distinct().order_by(Round.period).all()

    @staticmethod
    def save_wager_result(
        db: Session,
        wager_id: str,
        status: WagerStatus,
        payout: Decimal,
        outcome: Outcome,
    ) -> bool:
        """
        寫入結算結果（只會從 pending 轉換一次）

        返回：
            True 如果這次呼叫完成了轉換；False 表示已經結算過（不可再入帳）
        """
        if status == WagerStatus.PENDING:
            raise InvalidStateTransition("Settlement must move a wager to won or lost")

        result = db.execute(
            update(Wager)
            .where(Wager.id == wager_id, Wager.status == WagerStatus.PENDING)
            .values(
                status=status,
                payout=payout,
                result_number=outcome.number,
                result_color=outcome.color,
                result_size=outcome.size,
                settled_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ============ 歷史查詢 ============

    @staticmethod
    def get_round_history(db: Session, limit: int = 50, page: int = 1) -> Tuple[List[Round], int]:
        """
        已開獎回合，期數由新到舊

        返回：
            (rounds, total) - total 是所有已開獎回合數量（分頁用）
        """
        query = db.query(Round).filter(Round.status == RoundStatus.CLOSED)
        total = query.count()
        rounds = query.order_by(Round.period.desc()).offset((page - 1) * limit).limit(limit).all()
        return rounds, total

    @staticmethod
    def get_user_wager_history(
        db: Session,
        user_id: str,
        limit: int = 20,
        page: int = 1,
        status: Optional[WagerStatus] = None,
        round_id: Optional[str] = None,
    ) -> Tuple[List[Wager], int]:
        """
        使用者下注歷史，由新到舊

        返回：
            (wagers, total)
        """
        query = db.query(Wager).filter(Wager.user_id == user_id)
        if status is not None:
            query = query.filter(Wager.status == status)
        if round_id is not None:
            query = query.filter(Wager.round_id == round_id)
        total = query.count()
        wagers = query.order_by(
            Wager.created_at.desc(), Wager.period.desc()
        ).offset((page - 1) * limit).limit(limit).all()
        return wagers, total
