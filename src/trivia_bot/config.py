from __future__ import annotations

from dataclasses import dataclass
import os


DEFAULT_SYSTEM_WALLET = "DSxTpnVVvCQ3egM4SX9Mn8Jfpgg4GWcQBYEAXRvuzxJm"


@dataclass(frozen=True)
class BotConfig:
    telegram_api_url: str
    telegram_bot_token: str
    group_chat_id: int
    admin_username: str
    openai_api_url: str
    openai_api_key: str
    openai_model: str
    solana_rpc_url: str
    solana_private_key: str
    system_wallet: str
    explorer_tx_url: str
    database_path: str
    signatures_path: str
    api_timeout_seconds: float
    telegram_poll_timeout_seconds: int

    min_entry_sol: float
    min_players: int
    signature_scan_limit: int
    signature_cache_size: int
    discovery_pacing_seconds: float
    rate_limit_pause_seconds: float
    rate_limit_retries: int

    waiting_recheck_seconds: float
    waiting_notice_interval_seconds: float
    countdown_seconds: float
    question_window_seconds: float
    claim_window_seconds: float
    next_round_delay_seconds: float
    error_retry_seconds: float
    cleanup_interval_seconds: float

    answer_max_chars: int
    answer_max_age_seconds: float
    prize_share: float

    payout_max_attempts: int
    payout_poll_seconds: float
    payout_submit_retry_seconds: float

    oracle_max_attempts: int
    oracle_retry_seconds: float

    log_level: str

    @property
    def missing_credentials(self) -> list[str]:
        missing: list[str] = []
        if not self.telegram_bot_token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if not self.openai_api_key:
            missing.append("OPENAI_API_KEY")
        if not self.solana_private_key:
            missing.append("SOLANA_PRIVATE_KEY")
        return missing


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def load_config() -> BotConfig:
    return BotConfig(
        telegram_api_url="https://api.telegram.org",
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", "").strip(),
        group_chat_id=_int_env("GROUP_CHAT_ID", -1002346666372),
        admin_username=os.getenv("ADMIN_USERNAME", "RalfsBlockchain").strip().lstrip("@"),
        openai_api_url="https://api.openai.com/v1",
        openai_api_key=os.getenv("OPENAI_API_KEY", "").strip(),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4-turbo-preview").strip(),
        solana_rpc_url=os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com"),
        solana_private_key=os.getenv("SOLANA_PRIVATE_KEY", "").strip(),
        system_wallet=os.getenv("SYSTEM_WALLET", DEFAULT_SYSTEM_WALLET).strip(),
        explorer_tx_url="https://solscan.io/tx/",
        database_path=os.getenv("BOT_DB_PATH", "data/bot.db"),
        signatures_path=os.getenv("SIGNATURES_PATH", "data/used_signatures.csv"),
        api_timeout_seconds=15.0,
        telegram_poll_timeout_seconds=30,
        min_entry_sol=0.01,
        min_players=2,
        signature_scan_limit=10,
        signature_cache_size=1000,
        discovery_pacing_seconds=1.0,
        rate_limit_pause_seconds=2.0,
        rate_limit_retries=3,
        waiting_recheck_seconds=60.0,
        waiting_notice_interval_seconds=5 * 60.0,
        countdown_seconds=60.0,
        question_window_seconds=10 * 60.0,
        claim_window_seconds=5 * 60.0,
        next_round_delay_seconds=60.0,
        error_retry_seconds=10.0,
        cleanup_interval_seconds=30 * 60.0,
        answer_max_chars=1000,
        answer_max_age_seconds=15 * 60.0,
        prize_share=0.5,
        payout_max_attempts=5,
        payout_poll_seconds=10.0,
        payout_submit_retry_seconds=5.0,
        oracle_max_attempts=3,
        oracle_retry_seconds=2.0,
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
