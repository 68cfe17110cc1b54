from __future__ import annotations

from dataclasses import dataclass, replace
from pathlib import Path
import sys
from typing import Any, Callable

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from trivia_bot.config import load_config  # noqa: E402
from trivia_bot.ledger import BaseLedger  # noqa: E402
from trivia_bot.models import (  # noqa: E402
    Answer,
    ArbitrationResult,
    IncomingMessage,
    SignatureStatus,
    SignedTransfer,
    TransactionInfo,
)
from trivia_bot.oracle import BaseOracle  # noqa: E402
from trivia_bot.round_machine import RoundStateMachine  # noqa: E402
from trivia_bot.scheduling import Scheduler, TimerCallback, TimerHandle  # noqa: E402
from trivia_bot.settlement import PayoutSettlement  # noqa: E402
from trivia_bot.storage import Storage  # noqa: E402
from trivia_bot.transport import BaseTransport  # noqa: E402

RECEIVER = "DSxTpnVVvCQ3egM4SX9Mn8Jfpgg4GWcQBYEAXRvuzxJm"
CHAT_ID = -100123
ADMIN = "admin"
WINNER_ADDRESS = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


def test_config(**kwargs):
    base = replace(
        load_config(),
        system_wallet=RECEIVER,
        group_chat_id=CHAT_ID,
        admin_username=ADMIN,
        discovery_pacing_seconds=0.0,
        rate_limit_pause_seconds=0.0,
        payout_poll_seconds=0.0,
        payout_submit_retry_seconds=0.0,
        oracle_retry_seconds=0.0,
    )
    return replace(base, **kwargs)


test_config.__test__ = False  # type: ignore[attr-defined]


def make_tx(signature: str, sender: str, amount_lamports: int, receiver: str = RECEIVER) -> TransactionInfo:
    return TransactionInfo(
        signature=signature,
        pre_balances=[5_000_000_000, 1_000_000_000, 1],
        post_balances=[5_000_000_000 - amount_lamports - 5_000, 1_000_000_000 + amount_lamports, 1],
        account_keys=[sender, receiver, "11111111111111111111111111111111"],
    )


def _next(script: list, default):
    if not script:
        return default
    if len(script) == 1:
        value = script[0]
    else:
        value = script.pop(0)
    if isinstance(value, Exception):
        raise value
    return value


class FakeLedger(BaseLedger):
    def __init__(self) -> None:
        self.signatures: list[str] = []
        self.list_error: Exception | None = None
        self.transactions: dict[str, object] = {}
        self.tx_calls: list[str] = []
        self.balance = 0.0
        self.submissions: list[tuple[str, float]] = []
        self.prepare_script: list[object] = []
        self.broadcasts: list[bytes] = []
        self.broadcast_script: list[object] = []
        self.on_broadcast: Callable[[bytes], None] | None = None
        self.status_script: list[object] = []
        self.status_calls: list[str] = []
        self.status_by_signature: dict[str, SignatureStatus] = {}
        self.block_height = 0
        self.last_valid_height = 100

    async def get_recent_signatures(self, address: str, limit: int) -> list[str]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.signatures[:limit])

    async def get_transaction(self, signature: str) -> TransactionInfo | None:
        self.tx_calls.append(signature)
        value = self.transactions.get(signature)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, Exception):
            raise value
        return value  # type: ignore[return-value]

    async def get_balance(self, address: str) -> float:
        return self.balance

    async def prepare_transfer(self, destination: str, amount: float) -> SignedTransfer:
        self.submissions.append((destination, amount))
        signature = _next(self.prepare_script, f"sig-{len(self.submissions)}")
        return SignedTransfer(
            signature=signature,
            payload=f"tx:{signature}".encode(),
            last_valid_height=self.last_valid_height,
        )

    async def broadcast(self, payload: bytes) -> None:
        self.broadcasts.append(payload)
        if self.on_broadcast is not None:
            self.on_broadcast(payload)
        _next(self.broadcast_script, None)

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        self.status_calls.append(signature)
        if signature in self.status_by_signature:
            return self.status_by_signature[signature]
        return _next(self.status_script, SignatureStatus.PENDING)

    async def get_block_height(self) -> int:
        return self.block_height


class FakeOracle(BaseOracle):
    def __init__(self) -> None:
        self.question: object = "What is the capital of France?"
        self.verdict: object = ArbitrationResult(winner=None, raw="NO_WINNER")
        self.explanation: object = "Paris has been the capital since 987."
        self.arbitrations: list[tuple[str, list[Answer]]] = []

    async def generate_question(self) -> str:
        if isinstance(self.question, Exception):
            raise self.question
        return str(self.question)

    async def arbitrate(self, question: str, answers: list[Answer]) -> ArbitrationResult:
        self.arbitrations.append((question, list(answers)))
        if isinstance(self.verdict, Exception):
            raise self.verdict
        return self.verdict  # type: ignore[return-value]

    async def explain(self, question: str, answer_text: str) -> str:
        if isinstance(self.explanation, Exception):
            raise self.explanation
        return str(self.explanation)


class FakeTransport(BaseTransport):
    def __init__(self) -> None:
        self.sent: list[tuple[int, str, str | None]] = []

    async def send(self, chat_id: int, text: str, parse_mode: str | None = None) -> None:
        self.sent.append((chat_id, text, parse_mode))

    @property
    def texts(self) -> list[str]:
        return [text for _chat, text, _mode in self.sent]


class ManualScheduler(Scheduler):
    """Records timers; tests fire them explicitly by name."""

    def __init__(self) -> None:
        self.timers: list[tuple[TimerHandle, TimerCallback]] = []

    def schedule(self, delay: float, callback: TimerCallback, name: str) -> TimerHandle:
        handle = TimerHandle(name, delay)
        self.timers.append((handle, callback))
        return handle

    def pending(self, name: str | None = None) -> list[TimerHandle]:
        return [
            handle
            for handle, _ in self.timers
            if not handle.cancelled and (name is None or handle.name == name)
        ]

    async def fire(self, name: str) -> None:
        for index, (handle, callback) in enumerate(self.timers):
            if handle.name == name and not handle.cancelled:
                del self.timers[index]
                await callback()
                return
        raise AssertionError(f"no pending timer named {name!r}")


class StubDiscovery:
    def __init__(self, *rounds: set[str]) -> None:
        self.rounds = [set(r) for r in rounds]
        self.calls = 0
        self.consumed: list[set[str]] = []

    def consume(self, players: set[str]) -> None:
        self.consumed.append(set(players))

    async def find_players(self) -> set[str]:
        self.calls += 1
        if not self.rounds:
            return set()
        if len(self.rounds) == 1:
            return set(self.rounds[0])
        return self.rounds.pop(0)


@dataclass
class MachineRig:
    machine: RoundStateMachine
    ledger: FakeLedger
    oracle: FakeOracle
    transport: FakeTransport
    scheduler: ManualScheduler
    discovery: Any
    storage: Storage
    clock: list[float]

    def message(self, sender: str, text: str, chat_id: int = CHAT_ID) -> IncomingMessage:
        return IncomingMessage(chat_id=chat_id, sender=sender, text=text)


def build_machine(
    *player_rounds: set[str],
    balance: float = 0.2,
    ledger: FakeLedger | None = None,
    discovery_factory: Callable[..., object] | None = None,
    **config_overrides,
) -> MachineRig:
    config = test_config(**config_overrides)
    ledger = ledger or FakeLedger()
    ledger.balance = balance
    oracle = FakeOracle()
    transport = FakeTransport()
    scheduler = ManualScheduler()
    discovery = discovery_factory(config, ledger) if discovery_factory else StubDiscovery(*player_rounds)
    storage = Storage(":memory:")
    clock = [1_000_000.0]
    machine = RoundStateMachine(
        config,
        transport=transport,
        ledger=ledger,
        oracle=oracle,
        discovery=discovery,  # type: ignore[arg-type]
        settlement=PayoutSettlement(config, ledger, storage),
        storage=storage,
        scheduler=scheduler,
        clock=lambda: clock[0],
    )
    return MachineRig(machine, ledger, oracle, transport, scheduler, discovery, storage, clock)
