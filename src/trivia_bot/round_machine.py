from __future__ import annotations

import logging
import re
import time
from typing import Awaitable, Callable

from trivia_bot import messages
from trivia_bot.answers import AnswerBuffer
from trivia_bot.config import BotConfig
from trivia_bot.discovery import ParticipantDiscovery
from trivia_bot.ledger import BaseLedger
from trivia_bot.models import IncomingMessage
from trivia_bot.oracle import BaseOracle, OracleError
from trivia_bot.runtime_state import Round, RoundState
from trivia_bot.scheduling import Scheduler, TimerHandle
from trivia_bot.settlement import PayoutSettlement
from trivia_bot.storage import Storage
from trivia_bot.transport import BaseTransport, TransportError

LOGGER = logging.getLogger("trivia_bot")

# Whole base58-shaped tokens only (no 0, O, I, l); not a checksum or curve check.
_BASE58 = "[1-9A-HJ-NP-Za-km-z]"
ADDRESS_RE = re.compile(rf"(?<!{_BASE58}){_BASE58}{{32,44}}(?!{_BASE58})")

EXPLANATION_FALLBACK = "Congratulations on the correct answer!"

Step = Callable[[], Awaitable[None]]


def extract_address(text: str) -> str | None:
    match = ADDRESS_RE.search(text or "")
    return match.group(0) if match else None


class RoundStateMachine:
    """Drives one round at a time from player discovery through payout.

    Every transition bumps an epoch and cancels the pending state timer. Steps
    that suspend (ledger, oracle and chat calls) re-check the epoch they
    started under before applying their result, so a superseded timer or an
    interleaved admin command never produces a second transition.
    """

    def __init__(
        self,
        config: BotConfig,
        *,
        transport: BaseTransport,
        ledger: BaseLedger,
        oracle: BaseOracle,
        discovery: ParticipantDiscovery,
        settlement: PayoutSettlement,
        storage: Storage,
        scheduler: Scheduler,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self.transport = transport
        self.ledger = ledger
        self.oracle = oracle
        self.discovery = discovery
        self.settlement = settlement
        self.storage = storage
        self.scheduler = scheduler
        self.clock = clock

        self.round = Round()
        self.answers = AnswerBuffer(config.answer_max_chars)
        self.highest_payout = storage.highest_payout()

        self._epoch = 0
        self._state_timer: TimerHandle | None = None
        self._claim_timer: TimerHandle | None = None
        self._cleanup_timer: TimerHandle | None = None
        self._last_waiting_notice: float | None = None

    @property
    def state(self) -> RoundState:
        return self.round.state

    async def start(self) -> None:
        self._arm_cleanup()
        await self._guarded(self.start_new_round, "startup")

    def stop(self) -> None:
        self._cancel_state_timer()
        self._cancel_claim_timer()
        if self._cleanup_timer is not None:
            self._cleanup_timer.cancel()
            self._cleanup_timer = None
        self.answers.close()

    def _invalidate(self) -> int:
        self._epoch += 1
        self._cancel_state_timer()
        return self._epoch

    def _advance(self, state: RoundState) -> int:
        previous = self.round.state
        epoch = self._invalidate()
        self.round.state = state
        LOGGER.info(
            "round_state round=%s %s->%s epoch=%s",
            self.round.round_id,
            previous.value,
            state.value,
            epoch,
        )
        return epoch

    def _is_current(self, epoch: int) -> bool:
        return epoch == self._epoch

    def _schedule(self, epoch: int, delay: float, step: Step, name: str) -> None:
        if not self._is_current(epoch):
            LOGGER.debug("timer_not_armed name=%s stale_epoch=%s", name, epoch)
            return
        self._cancel_state_timer()

        async def _fire() -> None:
            if not self._is_current(epoch):
                LOGGER.debug("timer_stale name=%s epoch=%s current=%s", name, epoch, self._epoch)
                return
            await self._guarded(step, name)

        self._state_timer = self.scheduler.schedule(delay, _fire, name)

    def _cancel_state_timer(self) -> None:
        if self._state_timer is not None:
            self._state_timer.cancel()
            self._state_timer = None

    def _cancel_claim_timer(self) -> None:
        if self._claim_timer is not None:
            self._claim_timer.cancel()
            self._claim_timer = None

    def _arm_claim_timer(self, round_id: str, winner: str) -> None:
        self._cancel_claim_timer()

        async def _fire() -> None:
            await self._guarded(lambda: self._on_claim_deadline(round_id, winner), "claim-deadline")

        self._claim_timer = self.scheduler.schedule(self.config.claim_window_seconds, _fire, "claim-deadline")

    def _arm_cleanup(self) -> None:
        async def _fire() -> None:
            try:
                self.cleanup()
            except Exception:
                LOGGER.exception("cleanup_failed")
            self._arm_cleanup()

        self._cleanup_timer = self.scheduler.schedule(self.config.cleanup_interval_seconds, _fire, "cleanup")

    async def _guarded(self, step: Step, name: str) -> None:
        try:
            await step()
        except Exception:
            LOGGER.exception("round_step_failed step=%s state=%s", name, self.round.state.value)
            self._recover()

    def _recover(self) -> None:
        self._abandon_open_round("error")
        self._cancel_claim_timer()
        self.answers.close()
        self.answers.clear()
        self.round.reset()
        epoch = self._advance(RoundState.AWAITING_PLAYERS)
        self._schedule(epoch, self.config.error_retry_seconds, self.start_new_round, "error-retry")

    def _abandon_open_round(self, outcome: str) -> None:
        if self.round.started_at <= 0 or self.round.state == RoundState.IDLE:
            return
        try:
            self.storage.record_round_finished(self.round.round_id, outcome, self.round.winner)
        except Exception:
            LOGGER.exception("round_record_failed round=%s", self.round.round_id)

    async def _announce(self, text: str, parse_mode: str | None = None) -> None:
        try:
            await self.transport.send(self.config.group_chat_id, text, parse_mode)
        except TransportError as exc:
            LOGGER.error("announce_failed state=%s error=%s", self.round.state.value, exc)

    async def start_new_round(self) -> None:
        self._abandon_open_round("abandoned")
        self._cancel_claim_timer()
        self.answers.close()
        self.answers.clear()
        self.round.reset()
        self.cleanup()
        epoch = self._advance(RoundState.AWAITING_PLAYERS)

        players = await self.discovery.find_players()
        if not self._is_current(epoch):
            return

        if len(players) < self.config.min_players:
            LOGGER.info(
                "waiting_for_players found=%s required=%s recheck_in=%ss",
                len(players),
                self.config.min_players,
                self.config.waiting_recheck_seconds,
            )
            now = self.clock()
            if (
                self._last_waiting_notice is None
                or now - self._last_waiting_notice >= self.config.waiting_notice_interval_seconds
            ):
                self._last_waiting_notice = now
                await self._announce(
                    messages.waiting_for_players(
                        len(players),
                        self.config.min_players,
                        self.config.min_entry_sol,
                        self.config.system_wallet,
                        self.highest_payout,
                    ),
                    parse_mode="Markdown",
                )
            self._schedule(epoch, self.config.waiting_recheck_seconds, self.start_new_round, "player-recheck")
            return

        prize_pool = await self.ledger.get_balance(self.config.system_wallet)
        if not self._is_current(epoch):
            return

        self.round.prize_pool = prize_pool
        self.round.participants = set(players)
        self.discovery.consume(players)
        self.round.started_at = self.clock()
        self.storage.record_round_started(
            round_id=self.round.round_id,
            participants=self.round.participants,
            prize_pool=prize_pool,
        )
        epoch = self._advance(RoundState.COUNTDOWN)
        LOGGER.info(
            "round_opened round=%s players=%s pool=%.9f",
            self.round.round_id,
            len(players),
            prize_pool,
        )
        await self._announce(
            messages.round_announcement(
                sorted(players),
                self._prize(),
                self.config.min_entry_sol,
                self.config.system_wallet,
                self.highest_payout,
                self.config.countdown_seconds,
            ),
            parse_mode="Markdown",
        )
        self._schedule(epoch, self.config.countdown_seconds, self._open_question, "countdown")

    def _prize(self) -> float:
        return self.round.prize_pool * self.config.prize_share

    async def _open_question(self) -> None:
        epoch = self._epoch
        question = await self.oracle.generate_question()
        if not self._is_current(epoch) or self.round.state != RoundState.COUNTDOWN:
            return

        self.round.question = question
        self.storage.record_round_question(self.round.round_id, question)
        self.answers.clear()
        self.answers.open()
        epoch = self._advance(RoundState.QUESTION_OPEN)
        await self._announce(messages.question_opened(question, self.config.question_window_seconds))
        self._schedule(epoch, self.config.question_window_seconds, self._evaluate, "evaluate")

    async def _evaluate(self) -> None:
        if self.round.state != RoundState.QUESTION_OPEN or self.round.question is None:
            return
        question = self.round.question

        if len(self.answers) == 0:
            LOGGER.info("evaluate_no_answers round=%s keeping_question_open", self.round.round_id)
            epoch = self._epoch
            await self._announce(messages.question_still_open(question), parse_mode="Markdown")
            self._schedule(epoch, self.config.question_window_seconds, self._evaluate, "evaluate")
            return

        self.answers.close()
        epoch = self._advance(RoundState.EVALUATING)
        answers = self.answers.snapshot()
        LOGGER.info("evaluate_start round=%s answers=%s", self.round.round_id, len(answers))
        try:
            verdict = await self.oracle.arbitrate(question, answers)
        except OracleError as exc:
            LOGGER.error("evaluate_failed round=%s error=%s", self.round.round_id, exc)
            if self._is_current(epoch):
                await self._end_round("oracle_error", messages.evaluation_failed(self.config.next_round_delay_seconds))
            return
        if not self._is_current(epoch):
            return

        winner = verdict.winner
        winning_answer = self.answers.answer_for(winner) if winner else None
        if winner and winning_answer is None:
            LOGGER.warning("evaluate_unknown_winner round=%s winner=%s", self.round.round_id, winner)
            winner = None
        if winner is None or winning_answer is None:
            await self._end_round("no_winner", messages.no_winner(self.config.next_round_delay_seconds))
            return

        explanation = await self._explain(question, winning_answer.text)
        if not self._is_current(epoch):
            return

        round_id = self.round.round_id
        self.round.winner = winner
        self.round.claim_deadline = self.clock() + self.config.claim_window_seconds
        self.round.claim_expired = False
        self._advance(RoundState.AWAITING_CLAIM)
        self._arm_claim_timer(round_id, winner)
        LOGGER.info(
            "winner_declared round=%s winner=%s prize=%.9f",
            round_id,
            winner,
            self._prize(),
        )
        await self._announce(
            messages.winner_announcement(winner, explanation, self.config.claim_window_seconds),
            parse_mode="Markdown",
        )

    async def _explain(self, question: str, answer_text: str) -> str:
        try:
            return await self.oracle.explain(question, answer_text) or EXPLANATION_FALLBACK
        except OracleError as exc:
            LOGGER.warning("explain_failed error=%s", exc)
            return EXPLANATION_FALLBACK

    async def _end_round(self, outcome: str, announcement: str) -> None:
        self.storage.record_round_finished(self.round.round_id, outcome, self.round.winner)
        epoch = self._advance(RoundState.IDLE)
        await self._announce(announcement, parse_mode="Markdown")
        self._schedule(epoch, self.config.next_round_delay_seconds, self.start_new_round, "next-round")

    async def _handle_claim(self, text: str) -> None:
        winner = self.round.winner
        if winner is None:
            return
        address = extract_address(text)
        if address is None:
            await self._announce(messages.request_address(winner))
            return

        round_id = self.round.round_id
        prize = self._prize()
        self._advance(RoundState.PAYING)
        LOGGER.info("claim_received round=%s winner=%s address=%s", round_id, winner, address)
        await self._announce(messages.processing_payment(winner, address), parse_mode="Markdown")

        result = await self.settlement.pay(
            round_id=round_id,
            winner=winner,
            destination=address,
            amount=prize,
        )
        if self.round.round_id != round_id or self.round.winner != winner:
            LOGGER.warning(
                "claim_outcome_after_round_moved round=%s confirmed=%s signature=%s",
                round_id,
                result.confirmed,
                result.signature,
            )
            return

        if result.confirmed and result.signature:
            # Winner is cleared before anything else can suspend.
            self.round.winner = None
            self._cancel_claim_timer()
            new_record = prize > self.highest_payout
            if new_record:
                self.highest_payout = prize
                self.storage.set_highest_payout(prize)
            tx_link = messages.format_transaction(self.config.explorer_tx_url, result.signature)
            await self._end_round_paid(round_id, winner, prize, new_record, tx_link)
            return

        epoch = self._advance(RoundState.AWAITING_CLAIM)
        await self._announce(messages.payment_delayed())
        if not self._is_current(epoch) or self.round.winner != winner:
            return
        deadline = self.round.claim_deadline
        if self.round.claim_expired or (deadline is not None and self.clock() >= deadline):
            await self._expire_claim()

    async def _end_round_paid(self, round_id: str, winner: str, prize: float, new_record: bool, tx_link: str) -> None:
        self.storage.record_round_finished(round_id, "paid", winner)
        epoch = self._advance(RoundState.IDLE)
        await self._announce(
            messages.payment_sent(winner, prize, new_record, tx_link, self.config.next_round_delay_seconds),
            parse_mode="Markdown",
        )
        self._schedule(epoch, self.config.next_round_delay_seconds, self.start_new_round, "next-round")

    async def _on_claim_deadline(self, round_id: str, winner: str) -> None:
        if self.round.round_id != round_id or self.round.winner != winner:
            return
        if self.round.state == RoundState.PAYING:
            LOGGER.info("claim_deadline_deferred round=%s winner=%s", round_id, winner)
            self.round.claim_expired = True
            return
        if self.round.state != RoundState.AWAITING_CLAIM:
            return
        await self._expire_claim()

    async def _expire_claim(self) -> None:
        winner = self.round.winner
        self.round.winner = None
        self._cancel_claim_timer()
        LOGGER.info("claim_expired round=%s winner=%s", self.round.round_id, winner)
        self.storage.record_round_finished(self.round.round_id, "claim_expired", winner)
        self._advance(RoundState.IDLE)
        await self._announce(messages.claim_expired())
        if self.round.state == RoundState.IDLE:
            await self.start_new_round()

    async def handle_message(self, message: IncomingMessage) -> None:
        if message.chat_id != self.config.group_chat_id:
            return
        await self._guarded(lambda: self._on_message(message), "message")

    async def _on_message(self, message: IncomingMessage) -> None:
        text = message.text or ""
        sender = message.sender
        command = _command_name(text)
        if command == "/skipwait":
            await self.skip_wait(sender)
            return
        if command == "/start":
            await self.admin_start(sender)
            return
        if command is not None:
            return

        if self.round.winner is not None:
            if sender == self.round.winner and self.round.state == RoundState.AWAITING_CLAIM:
                await self._handle_claim(text)
            return

        if self.round.state != RoundState.QUESTION_OPEN:
            return
        if self.answers.record(sender, text, now=self.clock()):
            LOGGER.info(
                "answer_recorded round=%s sender=%s total=%s",
                self.round.round_id,
                sender,
                len(self.answers),
            )
        elif self.answers.has_answered(sender):
            LOGGER.debug("answer_ignored sender=%s reason=already_answered", sender)

    def is_admin(self, identity: str) -> bool:
        return bool(self.config.admin_username) and identity == self.config.admin_username

    async def skip_wait(self, sender: str) -> None:
        if not self.is_admin(sender):
            LOGGER.info("skipwait_denied sender=%s", sender)
            return
        if self.round.state == RoundState.PAYING:
            LOGGER.info("skipwait_refused sender=%s reason=payout_in_flight", sender)
            return
        LOGGER.info("skipwait sender=%s state=%s", sender, self.round.state.value)
        self._invalidate()
        await self._announce(messages.admin_skipped(sender))
        if not self.round.participants:
            await self.start_new_round()
        elif self.round.state == RoundState.QUESTION_OPEN and len(self.answers) > 0:
            await self._evaluate()
        else:
            await self.start_new_round()

    async def admin_start(self, sender: str) -> None:
        if not self.is_admin(sender):
            return
        if self.round.state == RoundState.PAYING:
            LOGGER.info("admin_start_refused sender=%s reason=payout_in_flight", sender)
            return
        LOGGER.info("admin_start sender=%s", sender)
        await self.start_new_round()

    def cleanup(self) -> None:
        cutoff = self.clock() - self.config.answer_max_age_seconds
        evicted = self.answers.evict(cutoff)
        if evicted:
            LOGGER.info("cleanup_evicted answers=%s", evicted)
        if (
            self.round.question is None
            and len(self.answers) == 0
            and self.round.state in {RoundState.IDLE, RoundState.AWAITING_PLAYERS}
        ):
            self.round.participants = set()
            self.round.winner = None


def _command_name(text: str) -> str | None:
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    head = stripped.split(maxsplit=1)[0]
    return head.split("@", 1)[0].lower()
