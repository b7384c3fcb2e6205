from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

AnswerIndex = int


class Question(BaseModel):
    prompt: str
    options: List[str] = Field(min_length=2)
    correct_option_index: AnswerIndex
    time_limit_seconds: float = Field(gt=0)
    point_value: int = Field(default=1, ge=1)
    media: Optional[str] = None

    @field_validator("point_value", mode="before")
    @classmethod
    def _default_points(cls, value):
        return 1 if value is None else value

    @model_validator(mode="after")
    def _check_correct_option(self):
        if not 0 <= self.correct_option_index < len(self.options):
            raise ValueError("correct_option_index must point at one of the options")
        return self


class Player(BaseModel):
    id: str
    name: str
    score: int = 0
    streak: int = 0
    last_points_awarded: int = 0
    # tie-break only
    total_response_time_seconds: float = 0.0


class Answer(BaseModel):
    option_index: int
    response_time_seconds: float  # since question start


class SessionStatus(str, Enum):
    LOBBY = "lobby"
    PLAYING = "playing"
    FINISHED = "finished"


class QuestionResult(BaseModel):
    question_index: int
    correct_option_index: AnswerIndex
    leaderboard: List[Player]


class QuestionPayload(BaseModel):
    """What players see when a question opens. The correct option never leaves the server."""

    prompt: str
    options: List[str]
    media: Optional[str] = None
    time_limit: float
    number: int
    total: int


class AnswerReceipt(BaseModel):
    question_index: int
    answer: Answer
    count: int
    total: int

    @property
    def all_answered(self) -> bool:
        return self.total > 0 and self.count >= self.total


class GameOver(BaseModel):
    """Returned by the advance that runs past the last question."""

    leaderboard: List[Player]
