from __future__ import annotations

import argparse
import asyncio
from dataclasses import asdict, replace
import json
import logging
import signal
from typing import Iterable

from trivia_bot.clients_openai import OpenAIClient
from trivia_bot.clients_solana import SolanaLedger
from trivia_bot.config import BotConfig, load_config
from trivia_bot.discovery import ParticipantDiscovery
from trivia_bot.models import PayoutAttempt
from trivia_bot.oracle import OpenAIOracle
from trivia_bot.round_machine import RoundStateMachine
from trivia_bot.scheduling import AsyncioScheduler
from trivia_bot.settlement import PayoutSettlement
from trivia_bot.signature_cache import SignatureCache
from trivia_bot.storage import Storage
from trivia_bot.transport import TelegramTransport

LOGGER = logging.getLogger("trivia_bot")


def build_ledger(config: BotConfig) -> SolanaLedger:
    return SolanaLedger(
        rpc_url=config.solana_rpc_url,
        private_key=config.solana_private_key,
        timeout_seconds=config.api_timeout_seconds,
    )


class BotRuntime:
    def __init__(self, config: BotConfig) -> None:
        self.config = config
        self.storage = Storage(config.database_path)
        self.signature_cache = SignatureCache(config.signatures_path, config.signature_cache_size)
        self.ledger = build_ledger(config)
        self.oracle = OpenAIOracle(
            OpenAIClient(
                base_url=config.openai_api_url,
                api_key=config.openai_api_key,
                model=config.openai_model,
                timeout_seconds=config.api_timeout_seconds,
                max_attempts=config.oracle_max_attempts,
                retry_seconds=config.oracle_retry_seconds,
            ),
            timeout_seconds=(config.api_timeout_seconds + config.oracle_retry_seconds * 3)
            * max(1, config.oracle_max_attempts),
        )
        self.transport = TelegramTransport(
            token=config.telegram_bot_token,
            chat_id=config.group_chat_id,
            base_url=config.telegram_api_url,
            poll_timeout_seconds=config.telegram_poll_timeout_seconds,
            send_timeout_seconds=config.api_timeout_seconds,
        )
        self.scheduler = AsyncioScheduler()
        self.discovery = ParticipantDiscovery(config, self.ledger, self.signature_cache)
        self.settlement = PayoutSettlement(config, self.ledger, self.storage)
        self.machine = RoundStateMachine(
            config,
            transport=self.transport,
            ledger=self.ledger,
            oracle=self.oracle,
            discovery=self.discovery,
            settlement=self.settlement,
            storage=self.storage,
            scheduler=self.scheduler,
        )
        self._loop: asyncio.AbstractEventLoop | None = None
        self._stop_event: asyncio.Event | None = None

    def preflight(self) -> None:
        missing = self.config.missing_credentials
        if missing:
            raise RuntimeError(f"missing credentials: {', '.join(missing)}")
        LOGGER.info(
            "preflight_ok payout_wallet=%s receiving_wallet=%s chat=%s",
            self.ledger.public_key(),
            self.config.system_wallet,
            self.config.group_chat_id,
        )

    def stop(self) -> None:
        if self._loop is None or self._stop_event is None:
            return
        self._loop.call_soon_threadsafe(self._stop_event.set)

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        try:
            resolved = await self.settlement.reconcile_pending()
            if resolved:
                LOGGER.info("startup_reconciled payouts=%s", len(resolved))

            await self.transport.listen(self.machine.handle_message)
            await self.machine.start()
            await self._stop_event.wait()

            LOGGER.info("runtime_stopping")
            self.machine.stop()
            await self.scheduler.drain()
        finally:
            await self.transport.shutdown()
            await self.ledger.close()

    def close(self) -> None:
        self.machine.stop()
        self.storage.close()


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "telegram", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _run_command(args: argparse.Namespace) -> int:
    config = load_config()
    if args.log_level:
        config = replace(config, log_level=args.log_level.upper())
    if args.chat_id is not None:
        config = replace(config, group_chat_id=int(args.chat_id))
    _setup_logging(config.log_level)

    runtime = BotRuntime(config)
    try:
        runtime.preflight()
    except Exception as exc:
        LOGGER.error("Preflight failed: %s", exc)
        runtime.close()
        return 2
    LOGGER.info(
        "Starting trivia bot chat=%s admin=%s",
        config.group_chat_id,
        config.admin_username,
    )
    signal_count = {"count": 0}

    def _handle_signal(signum: int, _frame: object) -> None:
        signal_count["count"] += 1
        if signal_count["count"] >= 2:
            LOGGER.error("Received signal %s again, forcing exit now", signum)
            raise SystemExit(130)
        LOGGER.warning(
            "Received signal %s, stopping bot (press Ctrl+C again to force-exit)",
            signum,
        )
        runtime.stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    try:
        asyncio.run(runtime.run())
        return 0
    except Exception as exc:
        LOGGER.error("Fatal runtime error: %s", exc)
        return 2
    finally:
        runtime.close()


def _report_command(args: argparse.Namespace) -> int:
    config = load_config()
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    try:
        report = storage.report(args.window)
        print(json.dumps(report, indent=2, default=str))
    finally:
        storage.close()
    return 0


async def _reconcile(settlement: PayoutSettlement, ledger: SolanaLedger) -> list[PayoutAttempt]:
    try:
        return await settlement.reconcile_pending()
    finally:
        await ledger.close()


def _reconcile_command(args: argparse.Namespace) -> int:
    del args
    config = load_config()
    _setup_logging(config.log_level)
    storage = Storage(config.database_path)
    ledger = build_ledger(config)
    settlement = PayoutSettlement(config, ledger, storage)
    try:
        resolved = asyncio.run(_reconcile(settlement, ledger))
        payload = {
            "resolved": [asdict(attempt) for attempt in resolved],
            "still_unknown": [asdict(attempt) for attempt in storage.pending_payouts()],
        }
        print(json.dumps(payload, indent=2, default=str))
        return 0
    except Exception as exc:
        LOGGER.error("reconcile failed: %s", exc)
        return 2
    finally:
        storage.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="trivia_bot", description="Telegram trivia contest with Solana prize payouts"
    )
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the contest bot")
    run.add_argument(
        "--log-level",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        type=str.upper,
        default=None,
    )
    run.add_argument(
        "--chat-id",
        type=int,
        default=None,
        help="Override GROUP_CHAT_ID for this run",
    )
    run.set_defaults(func=_run_command)

    report = sub.add_parser("report", help="Print round/payout summary from SQLite")
    report.add_argument("--window", type=int, default=24, help="Window in hours")
    report.set_defaults(func=_report_command)

    reconcile = sub.add_parser(
        "reconcile",
        help="Re-check payouts whose on-chain outcome was never observed",
    )
    reconcile.set_defaults(func=_reconcile_command)
    return parser


def cli(argv: Iterable[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    return int(args.func(args))


def main() -> None:
    raise SystemExit(cli())


if __name__ == "__main__":
    main()
