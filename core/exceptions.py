"""
自定義異常類別

集中管理所有業務邏輯異常，方便 API 層統一處理。
每個異常都有固定的 code，呼叫端可依 code 顯示精確的錯誤訊息。
"""


class ColorGameException(Exception):
    """所有遊戲異常的基類"""
    code = "GAME_ERROR"


# ============ 下注拒絕（呼叫端可見，不會重試） ============

class NoActiveRound(ColorGameException):
    """目前沒有開放中的回合"""
    code = "NO_ACTIVE_ROUND"

    def __init__(self, message="No active round to place bet"):
        super().__init__(message)


class BettingClosed(ColorGameException):
    """回合最後的截止窗口內不接受下注"""
    code = "BETTING_CLOSED"

    def __init__(self, period, seconds_left):
        self.period = period
        self.seconds_left = seconds_left
        super().__init__(
            f"Betting closed for period {period} ({seconds_left:.3f}s left)"
        )


class InvalidAmount(ColorGameException):
    """下注金額超出 [min_bet, max_bet]"""
    code = "INVALID_AMOUNT"

    def __init__(self, amount, min_bet, max_bet):
        self.amount = amount
        self.min_bet = min_bet
        self.max_bet = max_bet
        super().__init__(f"Bet amount must be between {min_bet} and {max_bet}, got {amount}")


class InvalidBetValue(ColorGameException):
    """下注類別或下注值不合法"""
    code = "INVALID_BET_VALUE"

    def __init__(self, category, value):
        self.category = category
        self.value = value
        super().__init__(f"Invalid bet value {value!r} for category {category!r}")


class InsufficientBalance(ColorGameException):
    """餘額不足"""
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, user_id, amount):
        self.user_id = user_id
        self.amount = amount
        super().__init__(f"Insufficient balance for user {user_id} to cover {amount}")


# ============ 查詢相關異常 ============

class AccountNotFound(ColorGameException):
    """帳戶不存在"""
    code = "ACCOUNT_NOT_FOUND"

    def __init__(self, user_id):
        self.user_id = user_id
        super().__init__(f"Account {user_id} not found")


class RoundNotFound(ColorGameException):
    """回合不存在"""
    code = "ROUND_NOT_FOUND"

    def __init__(self, round_id):
        self.round_id = round_id
        super().__init__(f"Round {round_id} not found")


# ============ 狀態轉換異常 ============

class InvalidStateTransition(ColorGameException):
    """非法的狀態轉換（例如重複寫入開獎結果）"""
    code = "INVALID_STATE_TRANSITION"


# ============ 儲存層異常 ============

class StoreUnavailable(ColorGameException):
    """資料庫無法使用；建立回合時由排程器重試"""
    code = "STORE_UNAVAILABLE"
