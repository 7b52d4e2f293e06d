"""
資料模型

Round / RoundBucket / Wager：回合與下注紀錄（永不刪除，保留為歷史）
Account / LedgerEntry：使用者餘額與帳務流水
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    """Naive UTC now（SQLite 不保存時區，統一存 naive UTC）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


Money = Numeric(14, 2)


class RoundStatus(str, enum.Enum):
    PENDING = "pending"
    OPEN = "open"
    CLOSED = "closed"


class WagerStatus(str, enum.Enum):
    PENDING = "pending"
    WON = "won"
    LOST = "lost"


class BetCategory(str, enum.Enum):
    COLOR = "color"
    NUMBER = "number"
    SIZE = "size"


class Color(str, enum.Enum):
    RED = "red"
    GREEN = "green"
    VIOLET = "violet"


class Size(str, enum.Enum):
    BIG = "big"
    SMALL = "small"


class LedgerEntryKind(str, enum.Enum):
    BET = "bet"
    WIN = "win"


class Round(Base):
    __tablename__ = "rounds"

    id = Column(String(36), primary_key=True, default=new_id)
    period = Column(Integer, nullable=False, unique=True, index=True)
    open_time = Column(DateTime, nullable=False)
    close_time = Column(DateTime, nullable=False)
    status = Column(Enum(RoundStatus), nullable=False, default=RoundStatus.PENDING)

    # 開獎結果：只在 open -> closed 時寫入一次
    result_number = Column(Integer, nullable=True)
    result_color = Column(Enum(Color), nullable=True)
    result_size = Column(Enum(Size), nullable=True)
    closed_at = Column(DateTime, nullable=True)

    total_bets = Column(Integer, nullable=False, default=0)
    total_amount = Column(Money, nullable=False, default=0)

    created_at = Column(DateTime, nullable=False, default=utcnow)

    buckets = relationship(
        "RoundBucket",
        back_populates="round",
        order_by="RoundBucket.id",
        cascade="all, delete-orphan",
    )
    wagers = relationship("Wager", back_populates="round")

    @property
    def has_outcome(self) -> bool:
        return self.result_number is not None


class RoundBucket(Base):
    """每個回合、每個下注選項（例如 color/red、number/7）的筆數與金額"""
    __tablename__ = "round_buckets"
    __table_args__ = (
        UniqueConstraint("round_id", "category", "value", name="uq_round_bucket"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    round_id = Column(String(36), ForeignKey("rounds.id"), nullable=False, index=True)
    category = Column(Enum(BetCategory), nullable=False)
    value = Column(String(16), nullable=False)
    count = Column(Integer, nullable=False, default=0)
    amount = Column(Money, nullable=False, default=0)

    round = relationship("Round", back_populates="buckets")


class Wager(Base):
    __tablename__ = "wagers"
    __table_args__ = (
        Index("ix_wagers_round_status", "round_id", "status"),
        Index("ix_wagers_user_created", "user_id", "created_at"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(64), ForeignKey("accounts.user_id"), nullable=False)
    round_id = Column(String(36), ForeignKey("rounds.id"), nullable=False)
    # 下注當下的期數，就算回合紀錄之後讀不到也能稽核
    period = Column(Integer, nullable=False)

    category = Column(Enum(BetCategory), nullable=False)
    value = Column(String(16), nullable=False)
    amount = Column(Money, nullable=False)
    multiplier = Column(Numeric(6, 2), nullable=False)
    potential_payout = Column(Money, nullable=False)

    status = Column(Enum(WagerStatus), nullable=False, default=WagerStatus.PENDING)
    payout = Column(Money, nullable=False, default=0)
    result_number = Column(Integer, nullable=True)
    result_color = Column(Enum(Color), nullable=True)
    result_size = Column(Enum(Size), nullable=True)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    settled_at = Column(DateTime, nullable=True)

    round = relationship("Round", back_populates="wagers")


class Account(Base):
    """外部帳本的本地投影：每個使用者一個不可為負的餘額"""
    __tablename__ = "accounts"

    user_id = Column(String(64), primary_key=True)
    balance = Column(Money, nullable=False, default=0)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class LedgerEntry(Base):
    __tablename__ = "ledger_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), ForeignKey("accounts.user_id"), nullable=False, index=True)
    kind = Column(Enum(LedgerEntryKind), nullable=False)
    amount = Column(Money, nullable=False)
    balance_before = Column(Money, nullable=False)
    balance_after = Column(Money, nullable=False)
    reference = Column(String(64), nullable=True, index=True)
    description = Column(String(255), nullable=False, default="")
    created_at = Column(DateTime, nullable=False, default=utcnow)
