from __future__ import annotations

import asyncio
from pathlib import Path
import sys
import tempfile
import unittest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from trivia_bot.discovery import ParticipantDiscovery
from trivia_bot.models import ArbitrationResult, SignatureStatus, TransactionInfo
from trivia_bot.oracle import OracleError
from trivia_bot.round_machine import EXPLANATION_FALLBACK, _command_name, extract_address
from trivia_bot.runtime_state import RoundState
from trivia_bot.signature_cache import SignatureCache
from tests.helpers import ADMIN, WINNER_ADDRESS, FakeLedger, MachineRig, build_machine, make_tx

PLAYERS = {"alice", "bob"}
ENTRY = 10_000_000


class GatedLedger(FakeLedger):
    """Holds one transaction lookup until the test opens the gate."""

    def __init__(self, gated_signature: str) -> None:
        super().__init__()
        self.gated_signature = gated_signature
        self.reached = asyncio.Event()
        self.gate = asyncio.Event()

    async def get_transaction(self, signature: str) -> TransactionInfo | None:
        if signature == self.gated_signature:
            self.reached.set()
            await self.gate.wait()
        return await super().get_transaction(signature)


async def open_question(rig: MachineRig) -> None:
    await rig.machine.start()
    await rig.scheduler.fire("countdown")


async def declare_winner(rig: MachineRig, winner: str = "bob") -> None:
    rig.oracle.verdict = ArbitrationResult(winner=winner, raw=f"WINNER:{winner}")
    await open_question(rig)
    await rig.machine.handle_message(rig.message("alice", "Lyon"))
    await rig.machine.handle_message(rig.message("bob", "Paris"))
    await rig.scheduler.fire("evaluate")


class RoundOpeningTests(unittest.IsolatedAsyncioTestCase):
    async def test_round_opens_with_enough_players(self) -> None:
        rig = build_machine(PLAYERS, balance=0.2)
        await rig.machine.start()

        self.assertEqual(rig.machine.state, RoundState.COUNTDOWN)
        self.assertEqual(rig.machine.round.participants, PLAYERS)
        self.assertAlmostEqual(rig.machine.round.prize_pool, 0.2)
        self.assertIn("💸 Current Prize: 0.100 SOL", rig.transport.texts[-1])
        countdown = rig.scheduler.pending("countdown")
        self.assertEqual(len(countdown), 1)
        self.assertEqual(countdown[0].delay, 60)
        self.assertEqual(len(rig.scheduler.pending("cleanup")), 1)
        self.assertEqual(rig.storage.report(1)["rounds"], {"open": 1})

    async def test_waits_for_players_and_rate_limits_notice(self) -> None:
        rig = build_machine({"alice"})
        await rig.machine.start()

        self.assertEqual(rig.machine.state, RoundState.AWAITING_PLAYERS)
        self.assertEqual(len(rig.transport.texts), 1)
        self.assertIn("(1/2)", rig.transport.texts[0])
        recheck = rig.scheduler.pending("player-recheck")
        self.assertEqual([h.delay for h in recheck], [60])
        self.assertEqual(rig.storage.report(1)["rounds_total"], 0)

        await rig.scheduler.fire("player-recheck")
        self.assertEqual(rig.discovery.calls, 2)
        self.assertEqual(len(rig.transport.texts), 1)

        rig.clock[0] += 300
        await rig.scheduler.fire("player-recheck")
        self.assertEqual(len(rig.transport.texts), 2)
        self.assertEqual(len(rig.scheduler.pending("player-recheck")), 1)

    async def test_countdown_opens_question(self) -> None:
        rig = build_machine(PLAYERS)
        await open_question(rig)

        self.assertEqual(rig.machine.state, RoundState.QUESTION_OPEN)
        self.assertTrue(rig.machine.answers.is_open)
        self.assertTrue(rig.transport.texts[-1].startswith("What is the capital of France?"))
        self.assertIn("10 minutes", rig.transport.texts[-1])
        self.assertEqual([h.delay for h in rig.scheduler.pending("evaluate")], [600])

    async def test_question_stays_open_without_answers(self) -> None:
        rig = build_machine(PLAYERS)
        await open_question(rig)
        await rig.scheduler.fire("evaluate")

        self.assertEqual(rig.machine.state, RoundState.QUESTION_OPEN)
        self.assertIn("No answers yet", rig.transport.texts[-1])
        self.assertIn("What is the capital of France?", rig.transport.texts[-1])
        self.assertEqual(len(rig.scheduler.pending("evaluate")), 1)
        self.assertEqual(rig.oracle.arbitrations, [])


class AnswerCollectionTests(unittest.IsolatedAsyncioTestCase):
    async def test_one_answer_per_participant(self) -> None:
        rig = build_machine(PLAYERS)
        await open_question(rig)
        await rig.machine.handle_message(rig.message("alice", "Paris"))
        await rig.machine.handle_message(rig.message("alice", "London"))

        self.assertEqual(len(rig.machine.answers), 1)
        answer = rig.machine.answers.answer_for("alice")
        assert answer is not None
        self.assertEqual(answer.text, "Paris")

    async def test_messages_from_other_chats_ignored(self) -> None:
        rig = build_machine(PLAYERS)
        await open_question(rig)
        await rig.machine.handle_message(rig.message("alice", "Paris", chat_id=999))
        self.assertEqual(len(rig.machine.answers), 0)

    async def test_commands_are_not_answers(self) -> None:
        rig = build_machine(PLAYERS)
        await open_question(rig)
        await rig.machine.handle_message(rig.message("alice", "/help"))
        self.assertEqual(len(rig.machine.answers), 0)

    async def test_answers_outside_question_window_ignored(self) -> None:
        rig = build_machine(PLAYERS)
        await rig.machine.start()
        await rig.machine.handle_message(rig.message("alice", "Paris"))
        self.assertEqual(len(rig.machine.answers), 0)

    async def test_cleanup_evicts_stale_answers(self) -> None:
        rig = build_machine(PLAYERS)
        await open_question(rig)
        await rig.machine.handle_message(rig.message("alice", "Paris"))
        rig.clock[0] += 901
        rig.machine.cleanup()
        self.assertEqual(len(rig.machine.answers), 0)


class EvaluationTests(unittest.IsolatedAsyncioTestCase):
    async def test_no_winner_ends_round(self) -> None:
        rig = build_machine(PLAYERS)
        await open_question(rig)
        await rig.machine.handle_message(rig.message("alice", "Lyon"))
        await rig.scheduler.fire("evaluate")

        self.assertEqual(rig.machine.state, RoundState.IDLE)
        self.assertIn("No correct answers were submitted.", rig.transport.texts[-1])
        self.assertEqual([h.delay for h in rig.scheduler.pending("next-round")], [60])
        self.assertEqual(rig.storage.report(1)["rounds"], {"no_winner": 1})

        await rig.scheduler.fire("next-round")
        self.assertEqual(rig.discovery.calls, 2)
        self.assertEqual(rig.machine.state, RoundState.COUNTDOWN)

    async def test_winner_without_answer_counts_as_no_winner(self) -> None:
        rig = build_machine(PLAYERS)
        rig.oracle.verdict = ArbitrationResult(winner="mallory", raw="WINNER:mallory")
        await open_question(rig)
        await rig.machine.handle_message(rig.message("alice", "Paris"))
        await rig.scheduler.fire("evaluate")

        self.assertEqual(rig.machine.state, RoundState.IDLE)
        self.assertIsNone(rig.machine.round.winner)

    async def test_oracle_failure_ends_round(self) -> None:
        rig = build_machine(PLAYERS)
        rig.oracle.verdict = OracleError("judge down")
        await open_question(rig)
        await rig.machine.handle_message(rig.message("alice", "Paris"))
        await rig.scheduler.fire("evaluate")

        self.assertEqual(rig.machine.state, RoundState.IDLE)
        self.assertIn("couldn't judge", rig.transport.texts[-1])
        self.assertEqual(rig.storage.report(1)["rounds"], {"oracle_error": 1})

    async def test_winner_declared(self) -> None:
        rig = build_machine(PLAYERS)
        await declare_winner(rig)

        self.assertEqual(rig.machine.state, RoundState.AWAITING_CLAIM)
        self.assertEqual(rig.machine.round.winner, "bob")
        self.assertFalse(rig.machine.answers.is_open)
        self.assertIn("👑 Winner: @bob", rig.transport.texts[-1])
        self.assertIn("Paris has been the capital", rig.transport.texts[-1])
        self.assertEqual([h.delay for h in rig.scheduler.pending("claim-deadline")], [300])
        question, answers = rig.oracle.arbitrations[0]
        self.assertEqual(question, "What is the capital of France?")
        self.assertEqual({a.identity for a in answers}, PLAYERS)

    async def test_explanation_failure_uses_fallback(self) -> None:
        rig = build_machine(PLAYERS)
        rig.oracle.explanation = OracleError("explain down")
        await declare_winner(rig)
        self.assertIn(EXPLANATION_FALLBACK, rig.transport.texts[-1])
        self.assertEqual(rig.machine.state, RoundState.AWAITING_CLAIM)


class ClaimTests(unittest.IsolatedAsyncioTestCase):
    async def test_winner_is_paid(self) -> None:
        rig = build_machine(PLAYERS, balance=0.2)
        await declare_winner(rig)
        rig.ledger.status_script = [SignatureStatus.CONFIRMED]

        await rig.machine.handle_message(rig.message("bob", f"my wallet {WINNER_ADDRESS} thanks"))

        self.assertEqual(len(rig.ledger.submissions), 1)
        destination, amount = rig.ledger.submissions[0]
        self.assertEqual(destination, WINNER_ADDRESS)
        self.assertAlmostEqual(amount, 0.1)
        self.assertEqual(rig.machine.state, RoundState.IDLE)
        self.assertIsNone(rig.machine.round.winner)
        self.assertEqual(rig.scheduler.pending("claim-deadline"), [])
        self.assertIn("0.100 SOL has been sent", rig.transport.texts[-1])
        self.assertIn("New Highest Payout", rig.transport.texts[-1])
        self.assertAlmostEqual(rig.machine.highest_payout, 0.1)
        self.assertAlmostEqual(rig.storage.highest_payout(), 0.1)
        self.assertEqual(rig.storage.report(1)["rounds"], {"paid": 1})
        self.assertEqual(len(rig.scheduler.pending("next-round")), 1)

    async def test_only_winner_can_claim(self) -> None:
        rig = build_machine(PLAYERS)
        await declare_winner(rig)
        await rig.machine.handle_message(rig.message("alice", WINNER_ADDRESS))
        self.assertEqual(rig.ledger.submissions, [])
        self.assertEqual(rig.machine.state, RoundState.AWAITING_CLAIM)

    async def test_reply_without_address_prompts_again(self) -> None:
        rig = build_machine(PLAYERS)
        await declare_winner(rig)
        await rig.machine.handle_message(rig.message("bob", "what do I do?"))
        self.assertIn("please provide a valid Solana wallet address", rig.transport.texts[-1])
        self.assertEqual(rig.ledger.submissions, [])

    async def test_failed_payment_keeps_winner_and_allows_retry(self) -> None:
        rig = build_machine(PLAYERS)
        await declare_winner(rig)
        rig.ledger.status_script = [SignatureStatus.FAILED]

        await rig.machine.handle_message(rig.message("bob", WINNER_ADDRESS))
        self.assertEqual(rig.machine.state, RoundState.AWAITING_CLAIM)
        self.assertEqual(rig.machine.round.winner, "bob")
        self.assertIn("delay with the payment", rig.transport.texts[-1])
        self.assertEqual(len(rig.scheduler.pending("claim-deadline")), 1)

        rig.ledger.status_script = [SignatureStatus.CONFIRMED]
        await rig.machine.handle_message(rig.message("bob", WINNER_ADDRESS))
        self.assertEqual(len(rig.ledger.submissions), 2)
        self.assertEqual(rig.machine.state, RoundState.IDLE)

    async def test_unconfirmed_payment_is_resumed_not_resent(self) -> None:
        rig = build_machine(PLAYERS, payout_max_attempts=2)
        await declare_winner(rig)

        await rig.machine.handle_message(rig.message("bob", WINNER_ADDRESS))
        self.assertEqual(rig.machine.state, RoundState.AWAITING_CLAIM)
        self.assertEqual(len(rig.ledger.submissions), 1)

        rig.ledger.status_script = [SignatureStatus.CONFIRMED]
        await rig.machine.handle_message(rig.message("bob", WINNER_ADDRESS))
        self.assertEqual(len(rig.ledger.submissions), 1)
        self.assertEqual(rig.machine.state, RoundState.IDLE)
        self.assertIsNone(rig.machine.round.winner)

    async def test_unclaimed_prize_expires(self) -> None:
        rig = build_machine(PLAYERS, set())
        await declare_winner(rig)
        await rig.scheduler.fire("claim-deadline")

        self.assertIsNone(rig.machine.round.winner)
        self.assertTrue(any("Time's up" in text for text in rig.transport.texts))
        self.assertEqual(rig.discovery.calls, 2)
        self.assertEqual(rig.machine.state, RoundState.AWAITING_PLAYERS)
        self.assertEqual(rig.ledger.submissions, [])
        self.assertEqual(rig.storage.report(1)["rounds"], {"claim_expired": 1})

    async def test_deadline_during_payout_is_deferred(self) -> None:
        rig = build_machine(PLAYERS)
        await declare_winner(rig)
        rig.machine.round.state = RoundState.PAYING

        await rig.scheduler.fire("claim-deadline")
        self.assertTrue(rig.machine.round.claim_expired)
        self.assertEqual(rig.machine.round.winner, "bob")
        self.assertFalse(any("Time's up" in text for text in rig.transport.texts))

    async def test_failed_payment_after_deadline_expires_claim(self) -> None:
        rig = build_machine(PLAYERS, set())
        await declare_winner(rig)
        rig.ledger.status_script = [SignatureStatus.FAILED]
        rig.clock[0] += 301

        await rig.machine.handle_message(rig.message("bob", WINNER_ADDRESS))
        self.assertIsNone(rig.machine.round.winner)
        self.assertTrue(any("Time's up" in text for text in rig.transport.texts))
        self.assertEqual(rig.machine.state, RoundState.AWAITING_PLAYERS)


class AdminAndRecoveryTests(unittest.IsolatedAsyncioTestCase):
    async def test_non_admin_skip_is_ignored(self) -> None:
        rig = build_machine({"alice"})
        await rig.machine.start()
        await rig.machine.handle_message(rig.message("alice", "/skipwait"))
        self.assertEqual(rig.discovery.calls, 1)
        self.assertEqual(len(rig.scheduler.pending("player-recheck")), 1)

    async def test_skip_while_waiting_rescans_and_cancels_timer(self) -> None:
        rig = build_machine({"alice"})
        await rig.machine.start()
        recheck = rig.scheduler.pending("player-recheck")[0]

        await rig.machine.handle_message(rig.message(ADMIN, "/skipwait@TriviaBot"))
        self.assertTrue(recheck.cancelled)
        self.assertEqual(rig.discovery.calls, 2)
        self.assertTrue(any("skipped the waiting time" in text for text in rig.transport.texts))
        self.assertEqual(len(rig.scheduler.pending("player-recheck")), 1)

    async def test_skip_during_scan_keeps_players_already_found(self) -> None:
        ledger = GatedLedger("sig-b")
        ledger.signatures = ["sig-a", "sig-b"]
        ledger.transactions = {
            "sig-a": make_tx("sig-a", "alice", ENTRY),
            "sig-b": make_tx("sig-b", "bob", ENTRY),
        }
        with tempfile.TemporaryDirectory() as tmp:
            cache = SignatureCache(str(Path(tmp) / "sigs.csv"))
            rig = build_machine(
                ledger=ledger,
                discovery_factory=lambda config, led: ParticipantDiscovery(config, led, cache),
            )
            first_scan = asyncio.create_task(rig.machine.start())
            await asyncio.wait_for(ledger.reached.wait(), timeout=1.0)
            self.assertTrue(cache.has("sig-a"))

            skip = asyncio.create_task(rig.machine.handle_message(rig.message(ADMIN, "/skipwait")))
            for _ in range(5):
                await asyncio.sleep(0)
            ledger.gate.set()
            await asyncio.wait_for(asyncio.gather(first_scan, skip), timeout=1.0)

        self.assertEqual(rig.machine.state, RoundState.COUNTDOWN)
        self.assertEqual(rig.machine.round.participants, {"alice", "bob"})
        self.assertEqual(ledger.tx_calls, ["sig-a", "sig-b"])

    async def test_skip_with_answers_evaluates_now(self) -> None:
        rig = build_machine(PLAYERS)
        await open_question(rig)
        await rig.machine.handle_message(rig.message("alice", "Paris"))
        evaluate = rig.scheduler.pending("evaluate")[0]

        await rig.machine.handle_message(rig.message(ADMIN, "/skipwait"))
        self.assertTrue(evaluate.cancelled)
        self.assertEqual(len(rig.oracle.arbitrations), 1)
        self.assertEqual(rig.machine.state, RoundState.IDLE)

    async def test_superseded_timer_has_no_effect(self) -> None:
        rig = build_machine(PLAYERS)
        await rig.machine.start()
        stale_handle, stale_callback = rig.scheduler.timers[-1]
        self.assertEqual(stale_handle.name, "countdown")

        await rig.machine.handle_message(rig.message(ADMIN, "/skipwait"))
        self.assertTrue(stale_handle.cancelled)
        self.assertEqual(rig.machine.state, RoundState.COUNTDOWN)

        await stale_callback()
        self.assertEqual(rig.machine.state, RoundState.COUNTDOWN)
        self.assertIsNone(rig.machine.round.question)

    async def test_admin_commands_refused_during_payout(self) -> None:
        rig = build_machine(PLAYERS)
        await declare_winner(rig)
        rig.machine.round.state = RoundState.PAYING
        calls = rig.discovery.calls

        await rig.machine.handle_message(rig.message(ADMIN, "/start"))
        await rig.machine.handle_message(rig.message(ADMIN, "/skipwait"))
        self.assertEqual(rig.discovery.calls, calls)
        self.assertEqual(rig.machine.round.winner, "bob")

    async def test_admin_start_begins_new_round(self) -> None:
        rig = build_machine({"alice"})
        await rig.machine.start()
        await rig.machine.handle_message(rig.message(ADMIN, "/start"))
        self.assertEqual(rig.discovery.calls, 2)

    async def test_step_error_rolls_back_and_retries(self) -> None:
        rig = build_machine(PLAYERS)
        rig.oracle.question = RuntimeError("question service down")
        await rig.machine.start()
        await rig.scheduler.fire("countdown")

        self.assertEqual(rig.machine.state, RoundState.AWAITING_PLAYERS)
        self.assertEqual([h.delay for h in rig.scheduler.pending("error-retry")], [10])
        self.assertEqual(rig.storage.report(1)["rounds"], {"error": 1})

        rig.oracle.question = "Which planet is largest?"
        await rig.scheduler.fire("error-retry")
        self.assertEqual(rig.machine.state, RoundState.COUNTDOWN)

    async def test_stop_cancels_timers(self) -> None:
        rig = build_machine(PLAYERS)
        await rig.machine.start()
        rig.machine.stop()
        self.assertEqual(rig.scheduler.pending(), [])


class HelperTests(unittest.TestCase):
    def test_extract_address(self) -> None:
        self.assertEqual(extract_address(f"send to {WINNER_ADDRESS} please"), WINNER_ADDRESS)
        self.assertIsNone(extract_address("Paris"))
        self.assertIsNone(extract_address(""))

    def test_extract_address_needs_whole_token(self) -> None:
        self.assertEqual(extract_address(f"({WINNER_ADDRESS})."), WINNER_ADDRESS)
        self.assertEqual(extract_address(f"{WINNER_ADDRESS}\nthanks"), WINNER_ADDRESS)
        self.assertIsNone(extract_address(WINNER_ADDRESS + "abc"))
        self.assertIsNone(extract_address("z" * 50))

    def test_command_name(self) -> None:
        self.assertEqual(_command_name("/SkipWait@TriviaBot now"), "/skipwait")
        self.assertEqual(_command_name("  /start"), "/start")
        self.assertIsNone(_command_name("hello /start"))


if __name__ == "__main__":
    unittest.main()
