from __future__ import annotations

import logging
from typing import Tuple

from .models import QuestionResult, SessionStatus
from .session import Session

logger = logging.getLogger(__name__)


def close_question(session: Session, question_index: int) -> Tuple[QuestionResult, bool]:
    """Score one question exactly once.

    Returns ``(result, closed_now)``. Only the first call for an index touches
    player scores; later calls hand back the result cached by that first call,
    with ``closed_now`` False so the caller knows not to publish it again.
    """
    if question_index in session.closed_questions:
        logger.debug("session=%s question %s already closed", session.code, question_index)
        return session.results[question_index], False

    if session.status == SessionStatus.FINISHED:
        raise RuntimeError(f"session {session.code} is finished; question {question_index} was never closed")

    q = session.questions[question_index]
    ledger = session.answers.get(question_index, {})

    # Mark first so nothing that runs below can re-enter scoring for this index
    session.closed_questions.add(question_index)

    for pid, player in session.players.items():
        ans = ledger.get(pid)
        if ans is not None and ans.option_index == q.correct_option_index:
            # flat points, no speed bonus
            player.score += q.point_value
            player.streak += 1
            player.last_points_awarded = q.point_value
            player.total_response_time_seconds += ans.response_time_seconds
        else:
            player.streak = 0
            player.last_points_awarded = 0

    result = QuestionResult(
        question_index=question_index,
        correct_option_index=q.correct_option_index,
        leaderboard=session.leaderboard(),
    )
    session.results[question_index] = result
    return result, True
