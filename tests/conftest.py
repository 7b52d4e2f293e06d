import random
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base, Settings
import models  # noqa: F401  (註冊資料表)
from models import LedgerEntry, Wager
from core.broadcast import BroadcastChannel, Subscriber
from core.ledger import Ledger
from core.round_engine import RoundEngine


class FakeClock:
    """可控制的時鐘，engine.clock() 會回傳 self.now"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ForcedRandom(random.Random):
    """randint 依序回傳指定的開獎數字，用完後才真的隨機"""

    def __init__(self, *numbers):
        super().__init__(1234)
        self.numbers = list(numbers)

    def randint(self, a, b):
        if self.numbers:
            return self.numbers.pop(0)
        return super().randint(a, b)


class RecordingSubscriber(Subscriber):
    def __init__(self):
        self.messages = []

    def deliver(self, message):
        self.messages.append(message)

    def of_type(self, event_type):
        return [m for m in self.messages if m["type"] == event_type]


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def settings():
    return Settings(
        database_url="sqlite://",
        round_duration_seconds=180,
        betting_cutoff_seconds=10,
        round_grace_seconds=2,
        min_bet=10,
        max_bet=10000,
        settlement_retry_attempts=3,
    )


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 1, 12, 0, 0))


@pytest.fixture
def recorder():
    return RecordingSubscriber()


@pytest.fixture
def make_engine(session_factory, settings, clock, recorder):
    """建立引擎；參數是依序開出的數字"""
    def _make(*numbers):
        channel = BroadcastChannel()
        channel.subscribe(recorder)
        return RoundEngine(
            session_factory=session_factory,
            channel=channel,
            settings=settings,
            clock=clock,
            rng=ForcedRandom(*numbers),
        )
    return _make


@pytest.fixture
def open_account(session_factory):
    def _open(user_id, balance):
        db = session_factory()
        try:
            Ledger.open_account(db, user_id, balance)
        finally:
            db.close()
    return _open


@pytest.fixture
def balance_of(session_factory):
    def _balance(user_id) -> Decimal:
        db = session_factory()
        try:
            return Ledger.get_balance(db, user_id)
        finally:
            db.close()
    return _balance


@pytest.fixture
def load_wager(session_factory):
    def _load(wager_id) -> Wager:
        db = session_factory()
        try:
            wager = db.query(Wager).filter(Wager.id == wager_id).one()
            db.expunge(wager)
            return wager
        finally:
            db.close()
    return _load


@pytest.fixture
def ledger_entries(session_factory):
    def _entries(user_id):
        db = session_factory()
        try:
            return db.query(LedgerEntry).filter(
                LedgerEntry.user_id == user_id
            ).order_by(LedgerEntry.id).all()
        finally:
            db.close()
    return _entries
