from __future__ import annotations

import logging
from typing import Any, List, Optional

from .clock import QuestionClock
from .config import settings
from .errors import InvalidRoleError
from .hub import ConnectionHub
from .models import GameOver, Player, Question, QuestionResult, SessionStatus
from .registry import Departure, HostLeft, SessionRegistry
from .schemas import parse_inbound
from .scoring import close_question
from .session import Session

logger = logging.getLogger(__name__)


class GameController:
    """Drives sessions in response to client events and publishes the outcome.

    Handlers run on the event loop one at a time between awaits. The deadline
    timer is the only thing that can interleave with them, and both paths that
    close a question go through ``close_question``, which scores an index once.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        hub: ConnectionHub,
        buffer_sec: float | None = None,
        result_size: int | None = None,
    ):
        self.registry = registry
        self.hub = hub
        self.clock = QuestionClock(self.on_deadline, buffer_sec)
        self.result_size = settings.RESULT_LEADERBOARD_SIZE if result_size is None else result_size

    async def handle(self, conn_id: str, data: Any):
        kind, msg = parse_inbound(data)

        if kind == "create_session":
            await self.create_session(conn_id, msg.questions)
        elif kind == "start_session":
            await self.start(conn_id)
        elif kind == "next_question":
            await self.next_question(conn_id)
        elif kind == "join_session":
            await self.join(conn_id, msg.code, msg.name)
        elif kind == "submit_answer":
            await self.submit_answer(conn_id, msg.option_index)

    def _hosted(self, conn_id: str) -> Session:
        s = self.registry.get_by_host(conn_id)
        if not s:
            raise InvalidRoleError("Only the host can control the game")
        return s

    def _is_live(self, s: Session) -> bool:
        return self.registry.get_by_code(s.code) is s

    # --- host events ---

    async def create_session(self, conn_id: str, questions: List[Question]) -> str:
        code = self.registry.create_session(conn_id, questions)
        self.hub.join_room(code, conn_id)
        await self.hub.send_to_connection(conn_id, "session_created", {"code": code})
        return code

    async def start(self, conn_id: str):
        s = self._hosted(conn_id)
        if not s.start():
            logger.debug("session=%s start ignored, status is %s", s.code, s.status.value)
            return

        logger.info("session=%s started with %s players", s.code, len(s.players))
        await self.hub.broadcast(s.code, "game_started")
        await self._advance(s)

    async def next_question(self, conn_id: str):
        s = self._hosted(conn_id)
        if s.status != SessionStatus.PLAYING:
            logger.debug("session=%s advance ignored, status is %s", s.code, s.status.value)
            return

        if s.question_open:
            await self._close(s, s.current_index, "host_advance")
        # publishing the result awaits, so the host may have left meanwhile
        if self._is_live(s) and s.status == SessionStatus.PLAYING:
            await self._advance(s)

    # --- player events ---

    async def join(self, conn_id: str, code: str, name: str) -> Player:
        p = self.registry.add_player(code, name, conn_id)
        s = self.registry.get_by_code(code)
        self.hub.join_room(code, conn_id)
        await self.hub.send_to_connection(conn_id, "joined", {"code": code, "name": p.name})
        await self._publish_players(s)
        return p

    async def submit_answer(self, conn_id: str, option_index: int) -> bool:
        s = self.registry.get_by_player(conn_id)
        if not s:
            logger.debug("answer from %s ignored, not a player", conn_id)
            return False

        receipt = s.record_answer(conn_id, option_index)
        if receipt is None:
            return False

        await self.hub.send_to_connection(conn_id, "answer_received")
        await self.hub.send_to_connection(s.host_id, "answers_update", {"count": receipt.count, "total": receipt.total})

        if receipt.all_answered:
            await self._close(s, receipt.question_index, "all_answered")
        return True

    async def disconnect(self, conn_id: str) -> Optional[Departure]:
        departure = self.registry.remove_connection(conn_id)
        self.hub.disconnect(conn_id)
        if departure is None:
            return None

        if isinstance(departure, HostLeft):
            await self.hub.broadcast(departure.code, "host_disconnected")
            self.hub.drop_room(departure.code)
            return departure

        await self.hub.broadcast(departure.code, "player_left", {"name": departure.name})
        s = self.registry.get_by_code(departure.code)
        if s:
            await self._publish_players(s)
            # the one player still missing may have been the one who left
            idx = s.current_index
            if self._is_live(s) and s.question_open and s.players and s.answered_count(idx) >= len(s.players):
                await self._close(s, idx, "all_answered")
        return departure

    # --- question clock ---

    async def on_deadline(self, s: Session, question_index: int):
        if not self._is_live(s) or s.status != SessionStatus.PLAYING or s.current_index != question_index:
            logger.debug("session=%s stale timer for question %s discarded", s.code, question_index)
            return
        await self._close(s, question_index, "deadline")

    # --- internals ---

    async def _advance(self, s: Session):
        payload = s.advance_question()

        if isinstance(payload, GameOver):
            await self._finish(s, payload)
            return

        q = s.questions[s.current_index]
        self.clock.schedule(s, s.current_index, q.time_limit_seconds)
        data = payload.model_dump()
        data["deadline_ts"] = s.question_started_at + self.clock.delay_for(q.time_limit_seconds)

        logger.info("session=%s question %s/%s opened", s.code, payload.number, payload.total)
        await self.hub.broadcast(s.code, "question", data)

    async def _close(self, s: Session, question_index: int, trigger: str) -> Optional[QuestionResult]:
        if not self._is_live(s):
            return None

        result, closed_now = close_question(s, question_index)
        if not closed_now:
            return None

        logger.info("session=%s question %s closed by %s", s.code, question_index, trigger)
        top = result.leaderboard[: self.result_size] if self.result_size else result.leaderboard
        await self.hub.broadcast(
            s.code,
            "question_result",
            {
                "correct_option_index": result.correct_option_index,
                "leaderboard": [p.model_dump() for p in top],
            },
        )
        return result

    async def _finish(self, s: Session, over: GameOver):
        logger.info("session=%s finished after %s questions", s.code, len(s.questions))
        await self.hub.broadcast(
            s.code,
            "game_over",
            {"leaderboard": [p.model_dump() for p in over.leaderboard]},
        )

    async def _publish_players(self, s: Session):
        await self.hub.broadcast(
            s.code,
            "players_update",
            {"players": [p.model_dump() for p in s.players.values()]},
        )

    async def shutdown(self):
        await self.clock.shutdown()
