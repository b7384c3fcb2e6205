from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Union

from pydantic import BaseModel, Field

from .models import Answer, AnswerReceipt, GameOver, Player, Question, QuestionPayload, QuestionResult, SessionStatus
from .utils import now_ts, sort_leaderboard

logger = logging.getLogger(__name__)


# States: lobby -> playing -> finished
class Session(BaseModel):
    code: str
    host_id: str
    status: SessionStatus = SessionStatus.LOBBY
    questions: List[Question] = Field(default_factory=list)
    current_index: int = -1
    question_started_at: Optional[float] = None
    # dict order is join order, which the leaderboard falls back on
    players: Dict[str, Player] = Field(default_factory=dict)
    answers: Dict[int, Dict[str, Answer]] = Field(default_factory=dict)
    closed_questions: Set[int] = Field(default_factory=set)
    results: Dict[int, QuestionResult] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def current_question(self) -> Optional[Question]:
        if self.status != SessionStatus.PLAYING:
            return None
        if 0 <= self.current_index < len(self.questions):
            return self.questions[self.current_index]
        return None

    @property
    def question_open(self) -> bool:
        """True while the current question still accepts answers."""
        return (
            self.current_question is not None
            and self.question_started_at is not None
            and self.current_index not in self.closed_questions
        )

    def player_by_name(self, name: str) -> Optional[Player]:
        return next((p for p in self.players.values() if p.name == name), None)

    def start(self) -> bool:
        """Lobby -> Playing. Returns False (and changes nothing) from any other state."""
        if self.status != SessionStatus.LOBBY:
            return False
        self.status = SessionStatus.PLAYING
        self.current_index = -1
        self.question_started_at = None
        return True

    def advance_question(self) -> Union[QuestionPayload, GameOver]:
        """Move to the next question.

        Returns the payload to broadcast, or a ``GameOver`` with the final
        leaderboard once the list is exhausted, in which case the session is
        now finished.
        """
        if self.status != SessionStatus.PLAYING:
            raise RuntimeError(f"cannot advance a {self.status.value} session")

        self.current_index += 1

        if self.current_index >= len(self.questions):
            self.status = SessionStatus.FINISHED
            self.question_started_at = None
            return GameOver(leaderboard=self.leaderboard())

        q = self.questions[self.current_index]
        self.question_started_at = now_ts()
        return QuestionPayload(
            prompt=q.prompt,
            options=list(q.options),
            media=q.media,
            time_limit=q.time_limit_seconds,
            number=self.current_index + 1,
            total=len(self.questions),
        )

    def answered_count(self, question_index: int) -> int:
        """Answers for the question from players who are still in the session."""
        ledger = self.answers.get(question_index, {})
        return sum(1 for pid in ledger if pid in self.players)

    def record_answer(self, conn_id: str, option_index: int) -> Optional[AnswerReceipt]:
        if not self.question_open:
            logger.debug("session=%s rejected answer from %s: no open question", self.code, conn_id)
            return None
        if conn_id not in self.players:
            logger.debug("session=%s rejected answer from non-player %s", self.code, conn_id)
            return None

        idx = self.current_index
        if conn_id in self.answers.get(idx, {}):
            logger.debug("session=%s duplicate answer from %s for question %s", self.code, conn_id, idx)
            return None

        elapsed = max(0.0, now_ts() - self.question_started_at)
        answer = Answer(option_index=option_index, response_time_seconds=elapsed)
        self.answers.setdefault(idx, {})[conn_id] = answer

        return AnswerReceipt(
            question_index=idx,
            answer=answer,
            count=self.answered_count(idx),
            total=len(self.players),
        )

    def leaderboard(self) -> List[Player]:
        return [p.model_copy() for p in sort_leaderboard(self.players.values())]
