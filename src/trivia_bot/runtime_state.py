from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import uuid


class RoundState(str, Enum):
    IDLE = "idle"
    AWAITING_PLAYERS = "awaiting_players"
    COUNTDOWN = "countdown"
    QUESTION_OPEN = "question_open"
    EVALUATING = "evaluating"
    AWAITING_CLAIM = "awaiting_claim"
    PAYING = "paying"


def new_round_id() -> str:
    return uuid.uuid4().hex[:16]


@dataclass
class Round:
    round_id: str = field(default_factory=new_round_id)
    state: RoundState = RoundState.IDLE
    question: str | None = None
    prize_pool: float = 0.0
    participants: set[str] = field(default_factory=set)
    winner: str | None = None
    claim_deadline: float | None = None
    claim_expired: bool = False
    started_at: float = 0.0

    def reset(self) -> None:
        self.round_id = new_round_id()
        self.state = RoundState.IDLE
        self.question = None
        self.prize_pool = 0.0
        self.participants = set()
        self.winner = None
        self.claim_deadline = None
        self.claim_expired = False
        self.started_at = 0.0
