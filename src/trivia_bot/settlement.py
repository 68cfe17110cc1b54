from __future__ import annotations

import asyncio
import base64
import logging

from trivia_bot.config import BotConfig
from trivia_bot.ledger import BaseLedger, LedgerRejectedError, LedgerTimeoutError
from trivia_bot.models import PayoutAttempt, PayoutResult, PayoutStatus, SignatureStatus
from trivia_bot.storage import Storage

LOGGER = logging.getLogger("trivia_bot")

CONFIRMATION_TIMEOUT = "confirmation timeout"
TRANSFER_EXPIRED = "transfer expired"


class PayoutSettlement:
    """Sends a prize transfer and waits for it to land.

    Each transfer is signed once and its signature is written to storage
    before the first broadcast. A broadcast that times out is never
    followed by a freshly signed transfer: the same signed bytes are
    re-sent while polling that signature. A new transfer is signed only
    when the recorded one failed on chain or its blockhash expired without
    it landing, so at most one transfer per (round, winner) can ever land.
    """

    def __init__(self, config: BotConfig, ledger: BaseLedger, storage: Storage) -> None:
        self.config = config
        self.ledger = ledger
        self.storage = storage

    async def pay(self, *, round_id: str, winner: str, destination: str, amount: float) -> PayoutResult:
        attempt = self.storage.load_payout(round_id, winner)
        if attempt is not None and attempt.status == PayoutStatus.CONFIRMED and attempt.signature:
            LOGGER.info("payout_already_confirmed round=%s signature=%s", round_id, attempt.signature)
            return PayoutResult.success(attempt.signature)
        if attempt is None or attempt.status == PayoutStatus.FAILED or not attempt.signature:
            attempt = PayoutAttempt(
                round_id=round_id,
                winner=winner,
                destination=destination,
                amount=amount,
            )
        else:
            LOGGER.warning(
                "payout_resuming round=%s signature=%s recorded_to=%s",
                round_id,
                attempt.signature,
                attempt.destination,
            )
        attempt.attempts = 0
        return await self._settle(attempt)

    async def _settle(self, attempt: PayoutAttempt) -> PayoutResult:
        max_attempts = max(1, self.config.payout_max_attempts)
        while attempt.attempts < max_attempts:
            attempt.attempts += 1
            if attempt.signature is None:
                LOGGER.info(
                    "payout_sign amount=%.9f to=%s attempt=%s/%s",
                    attempt.amount,
                    attempt.destination,
                    attempt.attempts,
                    max_attempts,
                )
                try:
                    signed = await self.ledger.prepare_transfer(attempt.destination, attempt.amount)
                except LedgerTimeoutError as exc:
                    # Nothing was signed or sent yet.
                    LOGGER.warning("payout_prepare_timeout attempt=%s error=%s", attempt.attempts, exc)
                    if attempt.attempts < max_attempts:
                        await asyncio.sleep(self.config.payout_submit_retry_seconds)
                    continue
                except Exception as exc:
                    LOGGER.error("payout_prepare_failed error=%s", exc)
                    return self._finish(attempt, PayoutStatus.FAILED, str(exc))
                attempt.signature = signed.signature
                attempt.payload = base64.b64encode(signed.payload).decode("ascii")
                attempt.last_valid_height = signed.last_valid_height
                attempt.status = PayoutStatus.SUBMITTED
                self.storage.save_payout(attempt)
                try:
                    await self.ledger.broadcast(signed.payload)
                except LedgerRejectedError as exc:
                    LOGGER.error("payout_broadcast_rejected signature=%s error=%s", attempt.signature, exc)
                    return self._finish(attempt, PayoutStatus.FAILED, str(exc))
                except Exception as exc:
                    LOGGER.warning("payout_broadcast_uncertain signature=%s error=%s", attempt.signature, exc)

            status = await self._poll(attempt.signature)
            if status.landed:
                return self._finish(attempt, PayoutStatus.CONFIRMED)
            if status == SignatureStatus.FAILED:
                return self._finish(attempt, PayoutStatus.FAILED, "transaction failed")
            if await self._expired(attempt):
                LOGGER.warning("payout_transfer_expired signature=%s", attempt.signature)
                attempt.status = PayoutStatus.FAILED
                attempt.reason = TRANSFER_EXPIRED
                self.storage.save_payout(attempt)
                attempt.signature = None
                attempt.payload = ""
                continue

            LOGGER.info(
                "payout_pending signature=%s attempt=%s/%s",
                attempt.signature,
                attempt.attempts,
                max_attempts,
            )
            if attempt.attempts < max_attempts:
                await asyncio.sleep(self.config.payout_poll_seconds)
                await self._rebroadcast(attempt)

        if attempt.signature is None:
            return self._finish(attempt, PayoutStatus.FAILED, "submission timeout")
        return self._finish(attempt, PayoutStatus.UNKNOWN, CONFIRMATION_TIMEOUT)

    async def _poll(self, signature: str) -> SignatureStatus:
        try:
            return await self.ledger.get_signature_status(signature)
        except Exception as exc:
            LOGGER.warning("payout_status_failed signature=%s error=%s", signature, exc)
            return SignatureStatus.PENDING

    async def _rebroadcast(self, attempt: PayoutAttempt) -> None:
        # Re-sending identical bytes cannot create a second transfer.
        if not attempt.payload:
            return
        try:
            await self.ledger.broadcast(base64.b64decode(attempt.payload))
        except Exception as exc:
            LOGGER.info("payout_rebroadcast_failed signature=%s error=%s", attempt.signature, exc)

    async def _expired(self, attempt: PayoutAttempt) -> bool:
        """True once the chain is past the transfer's last valid block height.

        Only meaningful after a status poll came back empty: a transfer that
        landed before expiry is still found by the history search.
        """
        if attempt.last_valid_height <= 0:
            return False
        try:
            height = await self.ledger.get_block_height()
        except Exception as exc:
            LOGGER.warning("payout_block_height_failed error=%s", exc)
            return False
        return height > attempt.last_valid_height

    def _finish(self, attempt: PayoutAttempt, status: PayoutStatus, reason: str = "") -> PayoutResult:
        attempt.status = status
        attempt.reason = reason
        self.storage.save_payout(attempt)
        if status == PayoutStatus.CONFIRMED and attempt.signature:
            LOGGER.info("payout_confirmed round=%s signature=%s", attempt.round_id, attempt.signature)
            return PayoutResult.success(attempt.signature)
        LOGGER.warning(
            "payout_unsettled round=%s status=%s reason=%s signature=%s",
            attempt.round_id,
            status.value,
            reason,
            attempt.signature,
        )
        return PayoutResult.failure(reason, signature=attempt.signature)

    async def reconcile_pending(self) -> list[PayoutAttempt]:
        """Re-check transfers whose outcome was never observed and record the result."""
        resolved: list[PayoutAttempt] = []
        for attempt in self.storage.pending_payouts():
            if not attempt.signature:
                LOGGER.warning("payout_missing_signature round=%s winner=%s", attempt.round_id, attempt.winner)
                continue
            status = await self._poll(attempt.signature)
            if status.landed:
                attempt.status = PayoutStatus.CONFIRMED
                attempt.reason = "confirmed late"
            elif status == SignatureStatus.FAILED:
                attempt.status = PayoutStatus.FAILED
                attempt.reason = "transaction failed"
            elif await self._expired(attempt):
                attempt.status = PayoutStatus.FAILED
                attempt.reason = TRANSFER_EXPIRED
            else:
                LOGGER.warning(
                    "payout_still_unknown round=%s winner=%s signature=%s",
                    attempt.round_id,
                    attempt.winner,
                    attempt.signature,
                )
                continue
            self.storage.save_payout(attempt)
            LOGGER.info(
                "payout_reconciled round=%s signature=%s status=%s",
                attempt.round_id,
                attempt.signature,
                attempt.status.value,
            )
            resolved.append(attempt)
        return resolved
