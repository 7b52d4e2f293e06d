"""
Round Engine：回合狀態機（單一實例）

狀態：
    NO_ROUND（只在啟動時）-> OPEN（接受下注）-> CLOSING（開獎 + 結算）-> OPEN（下一期）

職責：
1. start()：復原中斷的回合、建立新回合、推播 round_opened
2. place_bet()：截止檢查 + 扣款 + 寫入下注 + 統計累加（同一個 transaction）
3. close_and_settle()：開獎、寫入結果、逐筆結算、推播 round_closed
4. 查詢：目前回合、剩餘時間、統計快照

並發：
- 所有狀態轉換與下注的准入判斷都在 self._lock 底下執行
- place_bet 在持有鎖的情況下重新檢查狀態與截止時間，然後才提交 transaction，
  所以 OPEN -> CLOSING 之後不可能再有下注寫入
- 逐筆結算不持有鎖（狀態已是 CLOSING，不會有新下注），
  每筆下注自己一個 transaction，失敗只影響該筆
"""
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Callable, List, Optional
import enum
import random
import threading
import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import SessionLocal, Settings, get_settings, transactional
from models import BetCategory, Round, Wager, WagerStatus, utcnow
from core.broadcast import (
    BET_PLACED,
    ROUND_CLOSED,
    ROUND_OPENED,
    STATUS_TICK,
    BroadcastChannel,
    bet_placed_payload,
    round_closed_payload,
    round_opened_payload,
    status_tick_payload,
)
from core.exceptions import (
    BettingClosed,
    InsufficientBalance,
    InvalidAmount,
    InvalidStateTransition,
    NoActiveRound,
    StoreUnavailable,
)
from core.ledger import Ledger
from core.round_store import RoundStore
from services.wager_evaluator import Outcome, evaluate, get_multiplier, normalize_bet_value

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


class EngineState(str, enum.Enum):
    NO_ROUND = "no_round"
    OPEN = "open"
    CLOSING = "closing"


@dataclass(frozen=True)
class CurrentRound:
    """引擎持有的目前回合（只放不會變的欄位，統計每次從資料庫讀）"""
    id: str
    period: int
    open_time: datetime
    close_time: datetime

    @classmethod
    def from_model(cls, round_obj: Round) -> "CurrentRound":
        return cls(
            id=round_obj.id,
            period=round_obj.period,
            open_time=round_obj.open_time,
            close_time=round_obj.close_time,
        )


@dataclass
class SettlementReport:
    round_id: str
    period: int
    outcome: Outcome
    won: int = 0
    lost: int = 0
    skipped: int = 0
    failed: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failed


# ============ Transaction 單元 ============

@transactional
def _open_round(db: Session, period: int, open_time: datetime, close_time: datetime) -> Round:
    return RoundStore.create_round(db, period, open_time, close_time)


@transactional
def _close_round(db: Session, round_id: str, outcome: Outcome) -> Outcome:
    return RoundStore.close_round(db, round_id, outcome)


@transactional
def _admit_wager(
    db: Session,
    user_id: str,
    round_id: str,
    category: BetCategory,
    value: str,
    amount: Decimal,
) -> Wager:
    """
    下注的四個效果中，前三個在同一個 transaction：

    1. 寫入 pending Wager（賠率、可能派彩在此凍結）
    2. 原子扣款 + 帳務流水
    3. 累加回合統計

    任何一步失敗都會整個 rollback，不會出現「扣了款卻沒有下注紀錄」。
    第四個效果（推播）在 commit 之後由呼叫端執行。
    """
    round_obj = RoundStore.get_round(db, round_id)
    multiplier = get_multiplier(category, value)
    wager = RoundStore.create_wager(db, user_id, round_obj, category, value, amount, multiplier)
    Ledger.debit(
        db, user_id, amount,
        reference=wager.id,
        description=f"Bet on {category.value}: {value} for period {round_obj.period}",
    )
    RoundStore.update_round_counters(db, round_id, category, value, amount)
    return wager


@transactional
def _settle_wager(db: Session, wager_id: str, outcome: Outcome) -> Optional[WagerStatus]:
    """
    結算單筆下注

    返回：
        新狀態；如果該筆已經結算過則返回 None（不會重複入帳）
    """
    wager = db.query(Wager).filter(Wager.id == wager_id).first()
    if wager is None or wager.status != WagerStatus.PENDING:
        return None

    is_win, _ = evaluate(wager.category, wager.value, outcome)
    status = WagerStatus.WON if is_win else WagerStatus.LOST
    payout = wager.potential_payout if is_win else Decimal("0")

    if not RoundStore.save_wager_result(db, wager.id, status, payout, outcome):
        return None

    if is_win:
        Ledger.credit(
            db, wager.user_id, payout,
            reference=wager.id,
            description=f"Win from period {wager.period}",
        )
    return status


class RoundEngine:
    """回合引擎"""

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        channel: Optional[BroadcastChannel] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
    ):
        self.session_factory = session_factory
        self.channel = channel or BroadcastChannel()
        self.settings = settings or get_settings()
        self.clock = clock
        self.rng = rng or random.SystemRandom()

        self._lock = threading.RLock()
        self._state = EngineState.NO_ROUND
        self._current: Optional[CurrentRound] = None

    # ============ 設定 ============

    @property
    def round_duration(self) -> timedelta:
        return timedelta(seconds=self.settings.round_duration_seconds)

    @property
    def cutoff_window(self) -> timedelta:
        return timedelta(seconds=self.settings.betting_cutoff_seconds)

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def current(self) -> Optional[CurrentRound]:
        return self._current

    @contextmanager
    def _session(self):
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def _draw_outcome(self) -> Outcome:
        return Outcome.from_number(self.rng.randint(0, 9))

    # ============ 生命週期 ============

    def start(self) -> CurrentRound:
        """
        開啟下一期（NO_ROUND / CLOSING -> OPEN）

        流程：
        1. 復原：超過封盤時間的 open 回合立即開獎結算；仍在進行中的 open 回合直接接手
        2. 重新結算之前失敗、仍為 pending 的下注
        3. 期數 = 最大期數 + 1，建立新回合
        4. 推播 round_opened

        異常：
            StoreUnavailable: 資料庫無法使用（由排程器 backoff 後重試）
        """
        with self._lock:
            if self._state == EngineState.OPEN and self._current is not None:
                return self._current

            try:
                current = self._recover()
                self.settle_outstanding()
                if current is None:
                    now = self.clock()
                    with self._session() as db:
                        period = RoundStore.next_period(db)
                        round_obj = _open_round(db, period, now, now + self.round_duration)
                        current = CurrentRound.from_model(round_obj)
                    logger.info(
                        f"Round {current.period} opened, closes at {current.close_time.isoformat()}"
                    )
            except SQLAlchemyError as e:
                raise StoreUnavailable(f"Failed to start round: {e}") from e

            self._current = current
            self._state = EngineState.OPEN

        self.channel.publish(
            ROUND_OPENED,
            round_opened_payload(current, self.settings.round_duration_seconds),
        )
        return current

    def _recover(self) -> Optional[CurrentRound]:
        """
        處理資料庫中仍為 open 的回合（process 重啟後）

        返回：
            可以接手的進行中回合；沒有則返回 None
        """
        with self._session() as db:
            open_rounds = [CurrentRound.from_model(r) for r in RoundStore.find_open_rounds(db)]

        if not open_rounds:
            return None

        now = self.clock()
        latest = open_rounds[-1]
        resumable = None
        for stale in open_rounds:
            # 只有最新一期、而且還沒到封盤時間的回合可以接手
            if stale is latest and stale.close_time > now:
                resumable = stale
                continue
            logger.warning(f"Recovering round {stale.period} left open past close time")
            self._close(stale)

        if resumable is not None:
            logger.info(f"Resuming round {resumable.period} (closes at {resumable.close_time.isoformat()})")
        return resumable

    def close_and_settle(self) -> Optional[SettlementReport]:
        """
        封盤、開獎、結算（OPEN -> CLOSING）

        流程：
        1. 持有鎖轉換狀態為 CLOSING（之後的下注都會收到 NoActiveRound）
        2. 抽出 0-9 的結果，寫入回合並轉為 closed（結果從此不可變）
        3. 逐筆結算 pending 下注，贏家入帳
        4. 推播 round_closed

        下一期由排程器在 grace 時間後呼叫 start() 開啟。

        返回：
            SettlementReport；目前沒有 open 回合則返回 None

        異常：
            StoreUnavailable: 寫入開獎結果失敗（回合保持 open，start() 會復原）
        """
        with self._lock:
            if self._state != EngineState.OPEN or self._current is None:
                logger.warning(f"close_and_settle called in state {self._state.value}, ignoring")
                return None
            current = self._current
            self._state = EngineState.CLOSING

        try:
            return self._close(current)
        except Exception as e:
            # 交給 start() 的復原流程：仍為 open 的回合會補開獎，pending 下注會補結算
            with self._lock:
                self._state = EngineState.NO_ROUND
                self._current = None
            if isinstance(e, SQLAlchemyError):
                raise StoreUnavailable(f"Failed to close round {current.period}: {e}") from e
            raise

    def _close(self, current: CurrentRound) -> SettlementReport:
        with self._session() as db:
            outcome = _close_round(db, current.id, self._draw_outcome())

        logger.info(
            f"Round {current.period} closed with result "
            f"{outcome.number} ({outcome.color.value}, {outcome.size.value})"
        )

        report = self.settle_round(current.id)

        self.channel.publish(
            ROUND_CLOSED,
            round_closed_payload(current.id, current.period, outcome),
        )
        return report

    # ============ 結算 ============

    def settle_round(self, round_id: str) -> SettlementReport:
        """
        結算一個已開獎回合的所有 pending 下注（冪等）

        - 每筆下注獨立結算，失敗重試 settlement_retry_attempts 次
        - 重試用盡仍失敗的下注保持 pending，下一次 start() 會再結算
        - 已經 won / lost 的下注不會被修改，也不會重複入帳

        異常：
            RoundNotFound: 回合不存在
            InvalidStateTransition: 回合尚未開獎
        """
        with self._session() as db:
            round_obj = RoundStore.get_round(db, round_id)
            if round_obj.result_number is None:
                raise InvalidStateTransition(f"Round {round_id} has no outcome yet")
            outcome = Outcome.from_number(round_obj.result_number)
            period = round_obj.period
            wager_ids = [w.id for w in RoundStore.find_pending_wagers(db, round_id)]

        report = SettlementReport(round_id=round_id, period=period, outcome=outcome)
        attempts = max(1, self.settings.settlement_retry_attempts)

        for wager_id in wager_ids:
            for attempt in range(1, attempts + 1):
                try:
                    with self._session() as db:
                        status = _settle_wager(db, wager_id, outcome)
                    break
                except Exception as e:
                    logger.warning(
                        f"Settlement of wager {wager_id} failed "
                        f"(attempt {attempt}/{attempts}): {e}"
                    )
            else:
                report.failed.append(wager_id)
                continue

            if status == WagerStatus.WON:
                report.won += 1
            elif status == WagerStatus.LOST:
                report.lost += 1
            else:
                report.skipped += 1

        if report.failed:
            logger.error(
                f"Round {period} partially settled: {len(report.failed)} wagers left pending "
                f"({report.won} won, {report.lost} lost)"
            )
        else:
            logger.info(
                f"Processed {report.won + report.lost} bets for round {period} "
                f"({report.won} won, {report.lost} lost)"
            )
        return report

    def settle_outstanding(self) -> List[SettlementReport]:
        """重新結算所有已開獎回合中殘留的 pending 下注"""
        with self._session() as db:
            round_ids = [r.id for r in RoundStore.find_rounds_with_pending_wagers(db)]
        return [self.settle_round(round_id) for round_id in round_ids]

    # ============ 下注 ============

    def _validate_amount(self, amount) -> Decimal:
        if isinstance(amount, bool):
            raise InvalidAmount(amount, self.settings.min_bet, self.settings.max_bet)
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError, TypeError):
            raise InvalidAmount(amount, self.settings.min_bet, self.settings.max_bet)
        if not value.is_finite() or value < self.settings.min_bet or value > self.settings.max_bet:
            raise InvalidAmount(amount, self.settings.min_bet, self.settings.max_bet)
        # 帳戶與下注都只存到分，超過兩位小數的金額直接拒絕
        if value != value.quantize(CENT):
            raise InvalidAmount(amount, self.settings.min_bet, self.settings.max_bet)
        return value

    def place_bet(self, user_id: str, category, value, amount) -> Wager:
        """
        下注

        檢查順序：
        1. NoActiveRound：狀態不是 OPEN
        2. BettingClosed：距離封盤不到 cutoff（剛好等於 cutoff 仍可下注）
        3. InvalidAmount：金額不在 [min_bet, max_bet]，或超過兩位小數
        4. InsufficientBalance：餘額不足
        5. InvalidBetValue：下注類別或值不合法

        成功：扣款、寫入下注、統計累加在同一個 transaction，commit 後推播 bet_placed

        返回：
            新建立的 Wager（已 detach，可在 session 外讀取）
        """
        with self._lock:
            current = self._current
            if self._state != EngineState.OPEN or current is None:
                raise NoActiveRound()

            remaining = current.close_time - self.clock()
            if remaining < self.cutoff_window:
                raise BettingClosed(current.period, max(remaining.total_seconds(), 0))

            amount = self._validate_amount(amount)

            try:
                with self._session() as db:
                    if Ledger.get_balance(db, user_id) < amount:
                        raise InsufficientBalance(user_id, amount)

                    category, value = normalize_bet_value(category, value)

                    wager = _admit_wager(db, user_id, current.id, category, value, amount)
                    db.refresh(wager)
                    totals = RoundStore.get_totals(db, current.id)
                    db.expunge(wager)
            except SQLAlchemyError as e:
                raise StoreUnavailable(f"Failed to place bet: {e}") from e

        logger.info(
            f"User {user_id} bet {amount} on {category.value}: {value} "
            f"for round {current.period} (wager {wager.id})"
        )
        self.channel.publish(BET_PLACED, bet_placed_payload(wager, totals))
        return wager

    # ============ 查詢 ============

    def get_current_round(self) -> Optional[Round]:
        """目前回合（CLOSING 期間返回剛開獎的回合）；尚未啟動則返回 None"""
        current = self._current
        if current is None:
            return None
        with self._session() as db:
            round_obj = db.query(Round).filter(Round.id == current.id).first()
            if round_obj is not None:
                db.expunge(round_obj)
            return round_obj

    def get_time_remaining(self) -> timedelta:
        current = self._current
        if current is None or self._state != EngineState.OPEN:
            return timedelta(0)
        return max(current.close_time - self.clock(), timedelta(0))

    def status_snapshot(self) -> Optional[dict]:
        """
        目前回合快照（API 與 WebSocket 連線時使用）

        返回：
            {round_id, period, status, open_time, close_time, time_remaining,
             betting_open, outcome, totals}，沒有回合則返回 None
        """
        current = self._current
        if current is None:
            return None
        round_obj = self.get_current_round()
        if round_obj is None:
            return None

        with self._session() as db:
            totals = RoundStore.get_totals(db, current.id)

        remaining = self.get_time_remaining()
        outcome = None
        if round_obj.result_number is not None:
            outcome = Outcome.from_number(round_obj.result_number).as_dict()

        return {
            "round_id": round_obj.id,
            "period": round_obj.period,
            "status": round_obj.status.value,
            "open_time": round_obj.open_time,
            "close_time": round_obj.close_time,
            "time_remaining": remaining.total_seconds(),
            "betting_open": self._state == EngineState.OPEN and remaining >= self.cutoff_window,
            "outcome": outcome,
            "totals": totals,
        }

    def publish_status(self) -> bool:
        """推播 status_tick；目前沒有開放中的回合則不推播"""
        current = self._current
        if current is None or self._state != EngineState.OPEN:
            return False
        with self._session() as db:
            totals = RoundStore.get_totals(db, current.id)
        self.channel.publish(
            STATUS_TICK,
            status_tick_payload(
                current.id,
                current.period,
                self.get_time_remaining().total_seconds(),
                totals,
            ),
        )
        return True
