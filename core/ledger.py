"""
Ledger：使用者餘額的唯一來源

所有餘額變動都透過單一條件式 UPDATE 完成（compare-and-set），
不會先讀餘額再寫回：

    UPDATE accounts SET balance = balance - :amount
    WHERE user_id = :user_id AND balance >= :amount

影響 0 筆就代表餘額不足，餘額永遠不會低於 0。
每次變動同時寫一筆 LedgerEntry（帳務流水）。

注意：這裡的函式都不 commit，由外層 transaction 決定提交或回滾。
"""
from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy import update
from sqlalchemy.orm import Session

from models import Account, LedgerEntry, LedgerEntryKind
from core.exceptions import AccountNotFound, InsufficientBalance
from database import transactional

logger = logging.getLogger(__name__)


class Ledger:
    """使用者餘額帳本"""

    @staticmethod
    def get_balance(db: Session, user_id: str) -> Decimal:
        """
        取得使用者餘額

        異常：
            AccountNotFound: 帳戶不存在
        """
        balance = db.query(Account.balance).filter(Account.user_id == user_id).scalar()
        if balance is None:
            raise AccountNotFound(user_id)
        return Decimal(balance)

    @staticmethod
    @transactional
    def open_account(db: Session, user_id: str, balance=0) -> Account:
        """建立帳戶（已存在則直接返回）"""
        account = db.query(Account).filter(Account.user_id == user_id).first()
        if account:
            return account
        account = Account(user_id=user_id, balance=Decimal(balance))
        db.add(account)
        db.flush()
        logger.info(f"Opened ledger account for user {user_id} with balance {balance}")
        return account

    @staticmethod
    def debit(
        db: Session,
        user_id: str,
        amount: Decimal,
        reference: Optional[str] = None,
        description: str = "",
    ) -> Decimal:
        """
        原子扣款

        返回：
            扣款後餘額

        異常：
            AccountNotFound: 帳戶不存在
            InsufficientBalance: 餘額不足（不會有任何變動）
        """
        amount = Decimal(amount)
        result = db.execute(
            update(Account)
            .where(Account.user_id == user_id, Account.balance >= amount)
            .values(balance=Account.balance - amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            # 區分「帳戶不存在」和「餘額不足」
            Ledger.get_balance(db, user_id)
            raise InsufficientBalance(user_id, amount)

        balance_after = Ledger.get_balance(db, user_id)
        Ledger._record(
            db, user_id, LedgerEntryKind.BET, amount,
            balance_before=balance_after + amount,
            balance_after=balance_after,
            reference=reference,
            description=description,
        )
        return balance_after

    @staticmethod
    def credit(
        db: Session,
        user_id: str,
        amount: Decimal,
        reference: Optional[str] = None,
        description: str = "",
        kind: LedgerEntryKind = LedgerEntryKind.WIN,
    ) -> Decimal:
        """
        原子入帳

        返回：
            入帳後餘額

        異常：
            AccountNotFound: 帳戶不存在
        """
        amount = Decimal(amount)
        result = db.execute(
            update(Account)
            .where(Account.user_id == user_id)
            .values(balance=Account.balance + amount)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise AccountNotFound(user_id)

        balance_after = Ledger.get_balance(db, user_id)
        Ledger._record(
            db, user_id, kind, amount,
            balance_before=balance_after - amount,
            balance_after=balance_after,
            reference=reference,
            description=description,
        )
        return balance_after

    @staticmethod
    def _record(db, user_id, kind, amount, balance_before, balance_after, reference, description):
        entry = LedgerEntry(
            user_id=user_id,
            kind=kind,
            amount=amount,
            balance_before=balance_before,
            balance_after=balance_after,
            reference=reference,
            description=description,
        )
        db.add(entry)
        db.flush()
        return entry
