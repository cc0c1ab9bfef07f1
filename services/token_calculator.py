"""
Token award calculation for approved tasks.

On time (approved at or before the deadline): full tokens plus a 20% bonus.
Late: half the tokens, no bonus. Both fractions round up.
"""

from dataclasses import dataclass
from datetime import datetime

from services.errors import InvalidInputError

# Percentages kept integral so rounding never depends on float error
ON_TIME_BONUS_PERCENT = 20
LATE_PAYOUT_PERCENT = 50


@dataclass(frozen=True)
class TokenAward:
    on_time: bool
    base: int
    bonus: int
    total: int
    reason: str


def _percent_ceil(value: int, percent: int) -> int:
    return -(-value * percent // 100)


def calculate_award(token_value: int, deadline: datetime, now: datetime) -> TokenAward:
    if token_value < 0:
        raise InvalidInputError("Token value cannot be negative")

    on_time = now <= deadline

    if on_time:
        bonus = _percent_ceil(token_value, ON_TIME_BONUS_PERCENT)
        base = token_value
        reason = f"Task completed on time (+{bonus} bonus)"
    else:
        bonus = 0
        base = _percent_ceil(token_value, LATE_PAYOUT_PERCENT)
        reason = "Task completed late (half tokens, no bonus)"

    return TokenAward(on_time=on_time, base=base, bonus=bonus, total=base + bonus, reason=reason)
