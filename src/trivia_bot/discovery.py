from __future__ import annotations

import asyncio
import logging

from trivia_bot.config import BotConfig
from trivia_bot.ledger import BaseLedger, LedgerRateLimitError
from trivia_bot.models import TransactionInfo, sol_to_lamports
from trivia_bot.signature_cache import SignatureCache

LOGGER = logging.getLogger("trivia_bot")


class ParticipantDiscovery:
    """Turns recent inbound transfers to the receiving wallet into a player set.

    Each signature is inspected at most once: it is marked in the cache as soon
    as its details were fetched, whether or not it qualified and whether or not
    the lookup failed. Only rate-limited lookups are left unmarked once their
    retries run out, so the next scan can pick them up again.

    Because a marked signature is never looked at again, players found by a
    scan stay pending here until a round takes them with ``consume``. Scans
    run one at a time, and a caller that abandons a scan's result loses
    nothing: the next scan returns those players again.
    """

    def __init__(self, config: BotConfig, ledger: BaseLedger, cache: SignatureCache) -> None:
        self.config = config
        self.ledger = ledger
        self.cache = cache
        self.receiving_address = config.system_wallet
        self.min_entry_lamports = sol_to_lamports(config.min_entry_sol)
        self._pending: set[str] = set()
        self._lock = asyncio.Lock()

    async def find_players(self) -> set[str]:
        async with self._lock:
            self._pending |= await self._scan()
            return set(self._pending)

    def consume(self, players: set[str]) -> None:
        self._pending -= players

    async def _scan(self) -> set[str]:
        try:
            signatures = await self.ledger.get_recent_signatures(
                self.receiving_address, self.config.signature_scan_limit
            )
        except Exception as exc:
            LOGGER.warning("discovery_list_failed error=%s", exc)
            return set()

        players: set[str] = set()
        skipped = 0
        for signature in signatures:
            if self.cache.has(signature):
                skipped += 1
                continue
            sender = await self._inspect(signature)
            if sender:
                LOGGER.info("discovery_player_found sender=%s signature=%s", sender, signature)
                players.add(sender)

        LOGGER.info(
            "discovery_scan_done signatures=%s cached=%s players=%s pending=%s",
            len(signatures),
            skipped,
            len(players),
            len(self._pending | players),
        )
        return players

    async def _inspect(self, signature: str) -> str | None:
        retries = max(1, self.config.rate_limit_retries)
        for attempt in range(retries):
            await asyncio.sleep(self.config.discovery_pacing_seconds)
            try:
                tx = await self.ledger.get_transaction(signature)
            except LedgerRateLimitError:
                LOGGER.info(
                    "discovery_rate_limited signature=%s attempt=%s/%s",
                    signature,
                    attempt + 1,
                    retries,
                )
                await asyncio.sleep(self.config.rate_limit_pause_seconds)
                continue
            except Exception as exc:
                LOGGER.warning("discovery_tx_failed signature=%s error=%s", signature, exc)
                self.cache.mark(signature)
                return None

            self.cache.mark(signature)
            if tx is None:
                return None
            return self.qualifying_sender(tx)

        LOGGER.warning("discovery_rate_limit_exhausted signature=%s", signature)
        return None

    def qualifying_sender(self, tx: TransactionInfo) -> str | None:
        receiver_index = tx.index_of(self.receiving_address)
        if receiver_index < 0:
            return None
        if tx.balance_delta(receiver_index) < self.min_entry_lamports:
            return None
        for index, key in enumerate(tx.account_keys):
            if not key or key == self.receiving_address:
                continue
            if tx.balance_delta(index) < 0:
                return key
        return None
