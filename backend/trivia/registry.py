from __future__ import annotations

import logging
import random
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel

from .config import settings
from .errors import (
    InvalidRoleError,
    NameTakenError,
    SessionAlreadyStartedError,
    SessionFullError,
    SessionNotFoundError,
)
from .models import Player, Question, SessionStatus
from .session import Session
from .utils import generate_pin

logger = logging.getLogger(__name__)


class PlayerLeft(BaseModel):
    kind: Literal["player"] = "player"
    code: str
    name: str


class HostLeft(BaseModel):
    kind: Literal["host"] = "host"
    code: str


Departure = Union[PlayerLeft, HostLeft]


class SessionRegistry:
    """In-memory index of live sessions by code and of connections by role.

    A connection is the host of one session or a player in one session, never
    both and never more than one.
    """

    def __init__(
        self,
        pin_length: int | None = None,
        max_players: int | None = None,
        rng: random.Random | None = None,
    ):
        self.pin_length = pin_length or settings.PIN_LENGTH
        self.max_players = settings.MAX_PLAYERS_PER_SESSION if max_players is None else max_players
        self._rng = rng or random.Random()
        self.sessions: Dict[str, Session] = {}
        self.hosts: Dict[str, str] = {}  # conn id -> code
        self.players: Dict[str, str] = {}  # conn id -> code

    def __len__(self) -> int:
        return len(self.sessions)

    def role_of(self, conn_id: str) -> Optional[str]:
        if conn_id in self.hosts:
            return "host"
        if conn_id in self.players:
            return "player"
        return None

    def _new_code(self) -> str:
        while True:
            code = generate_pin(self.pin_length, self._rng)
            if code not in self.sessions:
                return code

    def create_session(self, host_id: str, questions: List[Question]) -> str:
        if self.role_of(host_id):
            raise InvalidRoleError("Connection is already part of a game")

        code = self._new_code()
        self.sessions[code] = Session(code=code, host_id=host_id, questions=list(questions))
        self.hosts[host_id] = code
        logger.info("session=%s created by %s with %s questions", code, host_id, len(questions))
        return code

    def add_player(self, code: str, name: str, conn_id: str) -> Player:
        s = self.sessions.get(code)
        if not s:
            raise SessionNotFoundError()
        if s.status != SessionStatus.LOBBY:
            raise SessionAlreadyStartedError()
        if self.role_of(conn_id):
            raise InvalidRoleError("Connection is already part of a game")
        if s.player_by_name(name):
            raise NameTakenError()
        if self.max_players and len(s.players) >= self.max_players:
            raise SessionFullError(f"Game is full ({self.max_players} players max)")

        p = Player(id=conn_id, name=name)
        s.players[conn_id] = p
        self.players[conn_id] = code
        logger.info("session=%s player %r joined (%s)", code, name, conn_id)
        return p

    def remove_connection(self, conn_id: str) -> Optional[Departure]:
        code = self.players.pop(conn_id, None)
        if code is not None:
            s = self.sessions.get(code)
            player = s.players.pop(conn_id, None) if s else None
            name = player.name if player else ""
            logger.info("session=%s player %r left", code, name)
            return PlayerLeft(code=code, name=name)

        code = self.hosts.pop(conn_id, None)
        if code is not None:
            s = self.sessions.pop(code, None)
            if s:
                for pid in s.players:
                    self.players.pop(pid, None)
            logger.info("session=%s torn down, host %s left", code, conn_id)
            return HostLeft(code=code)

        return None

    def get_by_code(self, code: str) -> Optional[Session]:
        return self.sessions.get(code)

    def get_by_host(self, conn_id: str) -> Optional[Session]:
        code = self.hosts.get(conn_id)
        return self.sessions.get(code) if code else None

    def get_by_player(self, conn_id: str) -> Optional[Session]:
        code = self.players.get(conn_id)
        return self.sessions.get(code) if code else None
