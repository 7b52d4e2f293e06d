"""
判定服務：開獎結果與下注的輸贏、賠率

純計算邏輯，沒有 I/O，不改變任何狀態
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Tuple, Union

from models import BetCategory, Color, Size
from core.exceptions import InvalidBetValue

GREEN_NUMBERS = (1, 3, 7, 9)
RED_NUMBERS = (2, 4, 6, 8)
VIOLET_NUMBERS = (0, 5)

NUMBER_VALUES = tuple(str(n) for n in range(10))

MULTIPLIERS = {
    (BetCategory.COLOR, Color.RED.value): Decimal("2.0"),
    (BetCategory.COLOR, Color.GREEN.value): Decimal("2.0"),
    (BetCategory.COLOR, Color.VIOLET.value): Decimal("4.5"),
    (BetCategory.SIZE, Size.BIG.value): Decimal("2.0"),
    (BetCategory.SIZE, Size.SMALL.value): Decimal("2.0"),
}
NUMBER_MULTIPLIER = Decimal("9.0")


def color_for(number: int) -> Color:
    """
    數字對應顏色

    ┌────────────┬────────┐
    │ 1, 3, 7, 9 │ green  │
    │ 2, 4, 6, 8 │ red    │
    │ 0, 5       │ violet │
    └────────────┴────────┘
    """
    if number in GREEN_NUMBERS:
        return Color.GREEN
    elif number in RED_NUMBERS:
        return Color.RED
    elif number in VIOLET_NUMBERS:
        return Color.VIOLET
    raise ValueError(f"Outcome number must be 0-9, got {number}")


def size_for(number: int) -> Size:
    """5-9 為 big，0-4 為 small"""
    if not 0 <= number <= 9:
        raise ValueError(f"Outcome number must be 0-9, got {number}")
    return Size.BIG if number >= 5 else Size.SMALL


@dataclass(frozen=True)
class Outcome:
    """開獎結果：color 與 size 由 number 推導，不會互相矛盾"""
    number: int
    color: Color
    size: Size

    @classmethod
    def from_number(cls, number: int) -> "Outcome":
        return cls(number=number, color=color_for(number), size=size_for(number))

    def as_dict(self) -> dict:
        return {
            "number": self.number,
            "color": self.color.value,
            "size": self.size.value,
        }


def bucket_keys():
    """每個回合的統計欄位（3 色 + 2 大小 + 10 數字）"""
    keys = [(BetCategory.COLOR, c.value) for c in Color]
    keys += [(BetCategory.SIZE, s.value) for s in Size]
    keys += [(BetCategory.NUMBER, v) for v in NUMBER_VALUES]
    return keys


def normalize_bet_value(category: Union[BetCategory, str], value) -> Tuple[BetCategory, str]:
    """
    驗證並正規化下注類別與下注值

    規則：
    - color: red / green / violet（不分大小寫）
    - size: big / small（不分大小寫）
    - number: 0-9 的整數，或是只含一個數字的字串

    返回：
        (BetCategory, 正規化後的字串值)

    異常：
        InvalidBetValue: 類別或下注值不在合法範圍
    """
    try:
        category = BetCategory(category)
    except ValueError:
        raise InvalidBetValue(category, value)

    if category == BetCategory.NUMBER:
        # bool 是 int 的子類別，要先排除
        if isinstance(value, bool):
            raise InvalidBetValue(category.value, value)
        if isinstance(value, int):
            if 0 <= value <= 9:
                return category, str(value)
            raise InvalidBetValue(category.value, value)
        if isinstance(value, str) and value.strip() in NUMBER_VALUES:
            return category, value.strip()
        raise InvalidBetValue(category.value, value)

    if not isinstance(value, str):
        raise InvalidBetValue(category.value, value)

    normalized = value.strip().lower()
    allowed = [c.value for c in Color] if category == BetCategory.COLOR else [s.value for s in Size]
    if normalized not in allowed:
        raise InvalidBetValue(category.value, value)
    return category, normalized


def get_multiplier(category: BetCategory, value: str) -> Decimal:
    """
    下注當下決定的賠率（之後不再重算）

    - color: violet 4.5x，red / green 2x
    - number: 9x
    - size: 2x
    """
    if category == BetCategory.NUMBER:
        return NUMBER_MULTIPLIER
    return MULTIPLIERS[(category, value)]


def is_winning(category: BetCategory, value: str, outcome: Outcome) -> bool:
    if category == BetCategory.COLOR:
        return value == outcome.color.value
    elif category == BetCategory.NUMBER:
        return int(value) == outcome.number
    else:  # size
        return value == outcome.size.value


def evaluate(category: BetCategory, value: str, outcome: Outcome) -> Tuple[bool, Decimal]:
    """
    判定一筆下注的輸贏

    參數：
        category: 下注類別（已經過 normalize_bet_value）
        value: 下注值（已經過 normalize_bet_value）
        outcome: 開獎結果

    返回：
        (is_win, multiplier)

    範例：
        evaluate(COLOR, "violet", Outcome.from_number(5)) -> (True, 4.5)
        evaluate(NUMBER, "7", Outcome.from_number(3)) -> (False, 9.0)
    """
    return is_winning(category, value, outcome), get_multiplier(category, value)
