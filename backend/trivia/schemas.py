import json
from typing import Any, Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import InvalidPayloadError
from .models import Player, Question


class InboundMessage(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True, coerce_numbers_to_str=True)


class CreateSessionIn(InboundMessage):
    questions: List[Question] = Field(default_factory=list)


class StartSessionIn(InboundMessage):
    pass


class NextQuestionIn(InboundMessage):
    pass


class JoinIn(InboundMessage):
    code: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=40)


class AnswerIn(InboundMessage):
    option_index: int


INBOUND: Dict[str, Type[InboundMessage]] = {
    "create_session": CreateSessionIn,
    "start_session": StartSessionIn,
    "next_question": NextQuestionIn,
    "join_session": JoinIn,
    "submit_answer": AnswerIn,
}


def parse_inbound(data: Any) -> Tuple[str, InboundMessage]:
    """Validate a raw client message; nothing past this point trusts its shape."""
    if isinstance(data, (str, bytes)):
        try:
            data = json.loads(data)
        except ValueError as exc:
            raise InvalidPayloadError("Message is not valid JSON") from exc
    if not isinstance(data, dict):
        raise InvalidPayloadError("Message must be a JSON object")
    kind = data.get("type")
    model = INBOUND.get(kind) if isinstance(kind, str) else None
    if model is None:
        raise InvalidPayloadError(f"Unknown message type: {kind!r}")
    try:
        return kind, model.model_validate(data)
    except ValidationError as exc:
        raise InvalidPayloadError(f"Invalid {kind} message: {exc.error_count()} error(s)") from exc


class PublicPlayerOut(BaseModel):
    name: str
    score: int
    streak: int


class PublicSessionOut(BaseModel):
    code: str
    status: str
    players: List[PublicPlayerOut]
    current_question: Optional[int]  # 1-based, None outside a question
    total_questions: int

    @classmethod
    def from_players(cls, code: str, status: str, players: List[Player], current: Optional[int], total: int):
        return cls(
            code=code,
            status=status,
            players=[PublicPlayerOut(name=p.name, score=p.score, streak=p.streak) for p in players],
            current_question=current,
            total_questions=total,
        )


class MediaOut(BaseModel):
    url: str
