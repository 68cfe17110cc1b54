from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import time
from typing import Any

LAMPORTS_PER_SOL = 1_000_000_000


def parse_int_list(raw: Any) -> list[int]:
    if not isinstance(raw, list):
        return []
    out: list[int] = []
    for item in raw:
        try:
            out.append(int(item))
        except (TypeError, ValueError):
            out.append(0)
    return out


def lamports_to_sol(lamports: int) -> float:
    return lamports / LAMPORTS_PER_SOL


def sol_to_lamports(amount: float) -> int:
    # Floor so a payout never exceeds the computed prize.
    return int(amount * LAMPORTS_PER_SOL)


class SignatureStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FAILED = "failed"

    @property
    def landed(self) -> bool:
        return self in {SignatureStatus.CONFIRMED, SignatureStatus.FINALIZED}


class PayoutStatus(str, Enum):
    NEW = "new"
    SUBMITTED = "submitted"
    UNKNOWN = "unknown"
    CONFIRMED = "confirmed"
    FAILED = "failed"


@dataclass(frozen=True)
class IncomingMessage:
    chat_id: int
    sender: str
    text: str


@dataclass(frozen=True)
class Answer:
    identity: str
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class TransactionInfo:
    signature: str
    pre_balances: list[int]
    post_balances: list[int]
    account_keys: list[str]

    def balance_delta(self, index: int) -> int:
        if index < 0 or index >= len(self.pre_balances) or index >= len(self.post_balances):
            return 0
        return self.post_balances[index] - self.pre_balances[index]

    def index_of(self, address: str) -> int:
        try:
            return self.account_keys.index(address)
        except ValueError:
            return -1


@dataclass(frozen=True)
class ArbitrationResult:
    winner: str | None = None
    raw: str = ""

    @property
    def no_winner(self) -> bool:
        return self.winner is None


@dataclass
class PayoutAttempt:
    round_id: str
    winner: str
    destination: str
    amount: float
    signature: str | None = None
    attempts: int = 0
    status: PayoutStatus = PayoutStatus.NEW
    reason: str = ""
    # Signed wire bytes (base64) and the block height after which they can no longer land.
    payload: str = ""
    last_valid_height: int = 0


@dataclass(frozen=True)
class SignedTransfer:
    signature: str
    payload: bytes
    last_valid_height: int

@dataclass(frozen=True)
class PayoutResult:
    confirmed: bool
    signature: str | None = None
    reason: str = ""

    @classmethod
    def success(cls, signature: str) -> "PayoutResult":
        return cls(confirmed=True, signature=signature)

    @classmethod
    def failure(cls, reason: str, signature: str | None = None) -> "PayoutResult":
        return cls(confirmed=False, signature=signature, reason=reason)
