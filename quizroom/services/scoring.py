from typing import Iterable, Tuple

from quizroom.models import Question, ScoreEntry

# Points awarded when the host marks an answer correct
GRADE_POINTS = 1

REASON_GRADED = 'graded'
REASON_ADJUSTED = 'adjusted'


def grade(question: Question, host_decision: bool) -> bool:
    """Correctness is whatever the host decided; answers are never text-matched."""
    return bool(host_decision)


def clamp_score(score: int, delta: int) -> Tuple[int, int]:
    """Apply ``delta`` with a floor of 0.

    Returns the new score and the delta actually applied, so the ledger always
    sums to the current score.
    """
    new_score = max(0, score + delta)
    return new_score, new_score - score


def ledger_total(entries: Iterable[ScoreEntry], player_id: str) -> int:
    return sum(e.delta for e in entries if e.player_id == player_id)
