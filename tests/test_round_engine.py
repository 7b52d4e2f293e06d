from decimal import Decimal

import pytest

from models import RoundStatus, WagerStatus
from core.broadcast import BET_PLACED, ROUND_CLOSED, ROUND_OPENED, STATUS_TICK
from core.exceptions import (
    AccountNotFound,
    BettingClosed,
    InsufficientBalance,
    InvalidAmount,
    InvalidBetValue,
    NoActiveRound,
)
from core.round_engine import EngineState, RoundEngine
from core.round_store import RoundStore
from services.wager_evaluator import Outcome


# ============ start ============

def test_start_opens_first_period(make_engine, clock, recorder):
    engine = make_engine()
    current = engine.start()

    assert engine.state == EngineState.OPEN
    assert current.period == 1
    assert current.open_time == clock.now
    assert (current.close_time - current.open_time).total_seconds() == 180

    round_obj = engine.get_current_round()
    assert round_obj.status == RoundStatus.OPEN
    assert round_obj.result_number is None

    opened = recorder.of_type(ROUND_OPENED)
    assert len(opened) == 1
    assert opened[0]["version"] == 1
    assert opened[0]["payload"]["period"] == 1
    assert opened[0]["payload"]["duration"] == 180


def test_start_is_noop_while_round_open(make_engine):
    engine = make_engine()
    first = engine.start()
    assert engine.start() == first


def test_periods_increase_without_gaps_across_restart(make_engine, clock, session_factory):
    engine = make_engine()
    periods = []
    for _ in range(4):
        periods.append(engine.start().period)
        clock.advance(180)
        engine.close_and_settle()
        clock.advance(2)

    # 新的 process：期數從資料庫復原
    restarted = make_engine()
    periods.append(restarted.start().period)

    assert periods == [1, 2, 3, 4, 5]

    db = session_factory()
    try:
        rounds, total = RoundStore.get_round_history(db, limit=10)
        assert total == 4
        assert [r.period for r in rounds] == [4, 3, 2, 1]
        assert len(RoundStore.find_open_rounds(db)) == 1
    finally:
        db.close()


# ============ 下注准入 ============

def test_place_bet_before_start_is_rejected(make_engine, open_account):
    open_account("alice", 100)
    engine = make_engine()
    with pytest.raises(NoActiveRound):
        engine.place_bet("alice", "color", "red", 10)


def test_cutoff_boundary(make_engine, open_account, clock):
    open_account("alice", 1000)
    engine = make_engine()
    engine.start()

    # 剛好剩 10 秒：可以下注
    clock.advance(170)
    engine.place_bet("alice", "size", "big", 10)

    # 少於 10 秒：拒絕（回合仍是 open）
    clock.advance(0.001)
    with pytest.raises(BettingClosed):
        engine.place_bet("alice", "size", "big", 10)
    assert engine.get_current_round().status == RoundStatus.OPEN


@pytest.mark.parametrize("amount", [5, 9.99, 10001, -10, 0, "abc", None, True, float("nan"), "10.005", 10.001])
def test_invalid_amount(make_engine, open_account, balance_of, amount):
    open_account("alice", 100000)
    engine = make_engine()
    engine.start()

    with pytest.raises(InvalidAmount):
        engine.place_bet("alice", "color", "red", amount)
    assert balance_of("alice") == Decimal("100000")


@pytest.mark.parametrize("amount", [10, 10000, "25.50"])
def test_amount_limits_are_inclusive(make_engine, open_account, amount):
    open_account("alice", 100000)
    engine = make_engine()
    engine.start()

    wager = engine.place_bet("alice", "color", "red", amount)
    assert wager.amount == Decimal(str(amount))


def test_insufficient_balance_leaves_ledger_unchanged(make_engine, open_account, balance_of, ledger_entries):
    open_account("bob", 5)
    engine = make_engine()
    engine.start()

    with pytest.raises(InsufficientBalance):
        engine.place_bet("bob", "number", 3, 10)

    assert balance_of("bob") == Decimal("5")
    assert ledger_entries("bob") == []
    assert engine.get_current_round().total_bets == 0


def test_invalid_bet_value(make_engine, open_account, balance_of):
    open_account("alice", 100)
    engine = make_engine()
    engine.start()

    with pytest.raises(InvalidBetValue):
        engine.place_bet("alice", "color", "blue", 10)
    with pytest.raises(InvalidBetValue):
        engine.place_bet("alice", "number", 12, 10)
    with pytest.raises(InvalidBetValue):
        engine.place_bet("alice", "parity", "odd", 10)
    assert balance_of("alice") == Decimal("100")


def test_unknown_account(make_engine):
    engine = make_engine()
    engine.start()
    with pytest.raises(AccountNotFound):
        engine.place_bet("ghost", "color", "red", 10)


def test_place_bet_debits_and_freezes_multiplier(make_engine, open_account, balance_of, ledger_entries):
    open_account("alice", 100)
    engine = make_engine()
    current = engine.start()

    wager = engine.place_bet("alice", "color", "violet", 20)

    assert wager.status == WagerStatus.PENDING
    assert wager.period == current.period
    assert wager.round_id == current.id
    assert wager.multiplier == Decimal("4.5")
    assert wager.potential_payout == Decimal("90")
    assert wager.payout == Decimal("0")
    assert balance_of("alice") == Decimal("80")

    entries = ledger_entries("alice")
    assert len(entries) == 1
    assert entries[0].kind.value == "bet"
    assert entries[0].amount == Decimal("20")
    assert entries[0].balance_before == Decimal("100")
    assert entries[0].balance_after == Decimal("80")
    assert entries[0].reference == wager.id


def test_bet_placed_event_carries_running_totals(make_engine, open_account, recorder):
    open_account("alice", 1000)
    engine = make_engine()
    engine.start()

    engine.place_bet("alice", "color", "red", 10)
    engine.place_bet("alice", "number", "7", 25)

    events = recorder.of_type(BET_PLACED)
    assert len(events) == 2
    last = events[-1]["payload"]
    assert last["category"] == "number"
    assert last["value"] == "7"
    assert last["amount"] == 25
    assert last["totals"]["total_bets"] == 2
    assert last["totals"]["total_amount"] == 35
    assert last["totals"]["color"]["red"] == {"count": 1, "amount": 10}
    assert last["totals"]["number"]["7"] == {"count": 1, "amount": 25}


def test_aggregate_counters(make_engine, open_account, session_factory):
    for user in ("alice", "bob", "carol"):
        open_account(user, 10000)
    engine = make_engine()
    current = engine.start()

    bets = [
        ("alice", "color", "red", 10),
        ("alice", "color", "violet", 50),
        ("bob", "number", 7, 30),
        ("bob", "size", "big", 100),
        ("carol", "size", "big", 20),
        ("carol", "number", "0", 15),
    ]
    for user, category, value, amount in bets:
        engine.place_bet(user, category, value, amount)

    db = session_factory()
    try:
        totals = RoundStore.get_totals(db, current.id)
    finally:
        db.close()

    assert totals["total_bets"] == len(bets)
    assert totals["total_amount"] == sum(b[3] for b in bets)
    assert totals["size"]["big"] == {"count": 2, "amount": 120}
    assert totals["color"]["violet"] == {"count": 1, "amount": 50}

    for category in ("color", "size", "number"):
        buckets = totals[category].values()
        in_category = [b for b in bets if b[1] == category]
        assert sum(b["count"] for b in buckets) == len(in_category)
        assert sum(b["amount"] for b in buckets) == sum(b[3] for b in in_category)


# ============ 開獎與結算 ============

def test_concrete_violet_scenario(make_engine, open_account, balance_of, load_wager, clock, recorder):
    open_account("alice", 100)
    engine = make_engine(5)
    engine.start()

    wager = engine.place_bet("alice", "color", "violet", 20)
    assert balance_of("alice") == Decimal("80")
    assert wager.potential_payout == Decimal("90")

    # 封盤前 10 秒內
    clock.advance(170.5)
    with pytest.raises(BettingClosed):
        engine.place_bet("alice", "color", "red", 10)

    clock.advance(9.5)
    report = engine.close_and_settle()

    assert report.outcome.number == 5
    assert report.outcome.color.value == "violet"
    assert report.outcome.size.value == "big"
    assert report.won == 1 and report.lost == 0 and report.complete

    settled = load_wager(wager.id)
    assert settled.status == WagerStatus.WON
    assert settled.payout == Decimal("90")
    assert settled.result_number == 5
    assert balance_of("alice") == Decimal("170")

    closed = recorder.of_type(ROUND_CLOSED)
    assert closed[-1]["payload"]["outcome"] == {"number": 5, "color": "violet", "size": "big"}


def test_losing_number_bet(make_engine, open_account, balance_of, load_wager, ledger_entries, clock):
    open_account("bob", 100)
    engine = make_engine(3)
    engine.start()

    wager = engine.place_bet("bob", "number", 7, 50)
    clock.advance(180)
    report = engine.close_and_settle()

    assert report.lost == 1
    settled = load_wager(wager.id)
    assert settled.status == WagerStatus.LOST
    assert settled.payout == Decimal("0")
    assert balance_of("bob") == Decimal("50")
    assert [e.kind.value for e in ledger_entries("bob")] == ["bet"]


def test_balance_conservation_across_many_wagers(make_engine, open_account, balance_of, clock):
    open_account("alice", 1000)
    engine = make_engine(8)
    engine.start()

    engine.place_bet("alice", "color", "red", 100)    # 贏 200
    engine.place_bet("alice", "size", "big", 50)      # 贏 100
    engine.place_bet("alice", "number", 8, 10)        # 贏 90
    engine.place_bet("alice", "color", "green", 40)   # 輸
    assert balance_of("alice") == Decimal("800")

    clock.advance(180)
    engine.close_and_settle()
    assert balance_of("alice") == Decimal("800") + Decimal("390")


def test_close_transitions_and_rejects_bets_until_next_round(make_engine, open_account, clock):
    open_account("alice", 100)
    engine = make_engine(1)
    first = engine.start()
    clock.advance(180)
    engine.close_and_settle()

    assert engine.state == EngineState.CLOSING
    assert engine.get_time_remaining().total_seconds() == 0
    round_obj = engine.get_current_round()
    assert round_obj.id == first.id
    assert round_obj.status == RoundStatus.CLOSED
    assert round_obj.result_number == 1

    with pytest.raises(NoActiveRound):
        engine.place_bet("alice", "color", "red", 10)

    # 第二次封盤不做任何事
    assert engine.close_and_settle() is None

    clock.advance(2)
    second = engine.start()
    assert second.period == first.period + 1
    engine.place_bet("alice", "color", "red", 10)


def test_resettling_closed_round_is_idempotent(
    make_engine, open_account, balance_of, ledger_entries, load_wager, clock
):
    open_account("alice", 100)
    engine = make_engine(5)
    current = engine.start()
    wager = engine.place_bet("alice", "color", "violet", 20)
    clock.advance(180)
    engine.close_and_settle()

    entries_before = len(ledger_entries("alice"))
    report = engine.settle_round(current.id)

    assert report.won == 0 and report.lost == 0 and report.complete
    assert balance_of("alice") == Decimal("170")
    assert len(ledger_entries("alice")) == entries_before
    assert load_wager(wager.id).status == WagerStatus.WON


def test_outcome_is_written_once(make_engine, session_factory, clock):
    engine = make_engine(4, 9)
    current = engine.start()
    clock.advance(180)
    engine.close_and_settle()

    db = session_factory()
    try:
        kept = RoundStore.close_round(db, current.id, Outcome.from_number(9))
        db.commit()
        assert kept.number == 4
        assert RoundStore.get_round(db, current.id).result_number == 4
    finally:
        db.close()


def test_failed_settlement_does_not_block_siblings(
    make_engine, open_account, balance_of, load_wager, clock, monkeypatch
):
    from core.ledger import Ledger

    open_account("alice", 100)
    open_account("bob", 100)
    engine = make_engine(5)
    engine.start()
    alice_wager = engine.place_bet("alice", "color", "violet", 20)
    bob_wager = engine.place_bet("bob", "size", "big", 20)

    original_credit = Ledger.credit
    calls = {"bob": 0}

    def flaky_credit(db, user_id, amount, **kwargs):
        if user_id == "bob":
            calls["bob"] += 1
            raise RuntimeError("ledger timeout")
        return original_credit(db, user_id, amount, **kwargs)

    monkeypatch.setattr(Ledger, "credit", flaky_credit)

    clock.advance(180)
    report = engine.close_and_settle()

    assert report.won == 1
    assert report.failed == [bob_wager.id]
    assert not report.complete
    assert calls["bob"] == 3
    assert load_wager(alice_wager.id).status == WagerStatus.WON
    assert load_wager(bob_wager.id).status == WagerStatus.PENDING
    assert balance_of("bob") == Decimal("80")

    # 帳本恢復後，下一次 start() 會先補結算
    monkeypatch.setattr(Ledger, "credit", original_credit)
    clock.advance(2)
    engine.start()

    assert load_wager(bob_wager.id).status == WagerStatus.WON
    assert balance_of("bob") == Decimal("120")
    assert balance_of("alice") == Decimal("170")


def test_restart_closes_expired_open_round(
    make_engine, open_account, balance_of, load_wager, clock, recorder
):
    open_account("alice", 100)
    crashed = make_engine()
    first = crashed.start()
    wager = crashed.place_bet("alice", "number", 6, 10)

    # process 在封盤前掛掉，重啟時已經超過封盤時間
    clock.advance(300)
    restarted = make_engine(6)
    second = restarted.start()

    assert second.period == first.period + 1
    settled = load_wager(wager.id)
    assert settled.status == WagerStatus.WON
    assert balance_of("alice") == Decimal("180")
    assert recorder.of_type(ROUND_CLOSED)[-1]["payload"]["period"] == first.period


def test_restart_resumes_running_round(make_engine, clock):
    engine = make_engine()
    first = engine.start()

    clock.advance(30)
    restarted = make_engine()
    resumed = restarted.start()

    assert resumed == first
    assert restarted.get_time_remaining().total_seconds() == 150


def test_restart_into_running_round_settles_older_pending_wagers(
    make_engine, open_account, balance_of, load_wager, clock, monkeypatch
):
    from core.ledger import Ledger

    open_account("bob", 100)
    engine = make_engine(5)
    engine.start()
    wager = engine.place_bet("bob", "size", "big", 20)

    original_credit = Ledger.credit

    def failing_credit(db, user_id, amount, **kwargs):
        raise RuntimeError("ledger timeout")

    monkeypatch.setattr(Ledger, "credit", failing_credit)
    clock.advance(180)
    engine.close_and_settle()
    clock.advance(2)
    second = engine.start()
    assert load_wager(wager.id).status == WagerStatus.PENDING

    # 重啟時第二期仍在進行中，接手之前也要先補結算第一期
    monkeypatch.setattr(Ledger, "credit", original_credit)
    clock.advance(30)
    restarted = make_engine()
    resumed = restarted.start()

    assert resumed == second
    assert load_wager(wager.id).status == WagerStatus.WON
    assert balance_of("bob") == Decimal("120")


def test_publish_status(make_engine, open_account, clock, recorder):
    open_account("alice", 100)
    engine = make_engine()
    assert engine.publish_status() is False

    engine.start()
    engine.place_bet("alice", "color", "green", 10)
    clock.advance(60)
    assert engine.publish_status() is True

    tick = recorder.of_type(STATUS_TICK)[-1]["payload"]
    assert tick["period"] == 1
    assert tick["time_remaining"] == 120
    assert tick["totals"]["total_bets"] == 1


def test_status_snapshot(make_engine, clock):
    engine = make_engine()
    assert engine.status_snapshot() is None

    engine.start()
    clock.advance(175)
    snapshot = engine.status_snapshot()
    assert snapshot["period"] == 1
    assert snapshot["status"] == "open"
    assert snapshot["time_remaining"] == 5
    assert snapshot["betting_open"] is False
    assert snapshot["outcome"] is None


def test_broken_subscriber_does_not_affect_engine(make_engine, open_account, balance_of):
    class Broken:
        def deliver(self, message):
            raise ConnectionError("socket closed")

    open_account("alice", 100)
    engine = make_engine()
    engine.channel.subscribe(Broken())
    engine.start()
    engine.place_bet("alice", "color", "red", 10)
    assert balance_of("alice") == Decimal("90")


def test_engine_uses_settings_defaults(session_factory):
    engine = RoundEngine(session_factory=session_factory)
    assert engine.round_duration.total_seconds() == engine.settings.round_duration_seconds
    assert engine.cutoff_window.total_seconds() == engine.settings.betting_cutoff_seconds
