"""
並發控制工具

提供 Database-level 的鎖定機制，防止競態條件（Race Condition）

主要使用 PostgreSQL 的 SELECT ... FOR UPDATE 來實現悲觀鎖（Pessimistic Locking）。
SQLite 會忽略 FOR UPDATE，單機部署時由 RoundEngine 的 process 內鎖負責序列化。
"""
from sqlalchemy.orm import Session, Query

from models import Round


def with_round_lock(round_id: str, db: Session) -> Query:
    """
    鎖定一個 Round（行級鎖）

    使用場景：
    - 寫入開獎結果時（防止重複開獎）
    - 需要確保 Round 在整個 transaction 期間不被其他請求修改

    範例：
        round_obj = with_round_lock(round_id, db).first()
        if round_obj and not round_obj.has_outcome:
            round_obj.result_number = n
            db.commit()

    參數：
        round_id: Round 的 id
        db: SQLAlchemy Session

    返回：
        Query object（需要呼叫 .first() 或 .one() 來取得結果）
    """
    return db.query(Round).filter(
        Round.id == round_id
    ).with_for_update(nowait=False)
