"""
Round and wager history service.

Builds the read-only views the API serves: closed rounds with their
outcome, a player's paginated wager history, and per-player betting
totals.
"""
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from models import Round, Wager, WagerStatus
from core.round_store import RoundStore
from services.wager_evaluator import Outcome


def round_history_entry(round_obj: Round) -> Dict[str, Any]:
    """Shape a closed round for the history endpoints."""
    return {
        "round_id": round_obj.id,
        "period": round_obj.period,
        "outcome": Outcome.from_number(round_obj.result_number).as_dict(),
        "total_bets": round_obj.total_bets,
        "total_amount": float(round_obj.total_amount or 0),
        "closed_at": round_obj.closed_at,
    }


def get_round_history(db: Session, limit: int = 50, page: int = 1):
    """
    Return (entries, total) for closed rounds, newest period first.
    """
    rounds, total = RoundStore.get_round_history(db, limit=limit, page=page)
    return [round_history_entry(r) for r in rounds], total


def get_wager_history(
    db: Session,
    user_id: str,
    limit: int = 20,
    page: int = 1,
    status: Optional[WagerStatus] = None,
    round_id: Optional[str] = None,
):
    """
    Return (wagers, total) for a player, newest first.

    Wagers keep their own period and settlement copy of the outcome, so the
    entries stay readable even without joining the round record.
    """
    return RoundStore.get_user_wager_history(
        db, user_id, limit=limit, page=page, status=status, round_id=round_id
    )


def get_user_stats(db: Session, user_id: str, recent: int = 10) -> Dict[str, Any]:
    """
    Aggregate a player's betting record.

    - total_winnings: sum of payouts on won wagers
    - total_losses: sum of stakes on lost wagers
    - net_profit: winnings minus losses (pending wagers are not counted)
    """
    total_bets = db.query(func.count(Wager.id)).filter(Wager.user_id == user_id).scalar() or 0

    winnings = db.query(func.coalesce(func.sum(Wager.payout), 0)).filter(
        Wager.user_id == user_id,
        Wager.status == WagerStatus.WON
    ).scalar()

    losses = db.query(func.coalesce(func.sum(Wager.amount), 0)).filter(
        Wager.user_id == user_id,
        Wager.status == WagerStatus.LOST
    ).scalar()

    recent_rounds: List[Dict[str, Any]] = get_round_history(db, limit=recent, page=1)[0]

    return {
        "stats": {
            "total_bets": int(total_bets),
            "total_winnings": float(winnings or 0),
            "total_losses": float(losses or 0),
            "net_profit": float(winnings or 0) - float(losses or 0),
        },
        "recent_rounds": recent_rounds,
    }
