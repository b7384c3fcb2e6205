import random
import time
from typing import Iterable, List

from .models import Player


def now_ts() -> float:
    return time.time()


def generate_pin(length: int = 6, rng: random.Random | None = None) -> str:
    """Numeric code with no leading zero, e.g. 100000..999999 for length 6."""
    rng = rng or random
    low = 10 ** (length - 1)
    return str(rng.randint(low, 10 * low - 1))


def sort_leaderboard(players: Iterable[Player]) -> List[Player]:
    # sorted() is stable, so fully tied players keep join order
    return sorted(players, key=lambda p: (-p.score, p.total_response_time_seconds))
