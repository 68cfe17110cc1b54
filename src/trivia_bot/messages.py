from __future__ import annotations

GAME_NAME = "Mindful 8080"


def format_sol(amount: float) -> str:
    return f"{amount:.3f} SOL"


def format_address(address: str) -> str:
    return f"`{address}`"


def format_transaction(explorer_tx_url: str, signature: str) -> str:
    return f"[View on Solscan ↗]({explorer_tx_url}{signature})"


def waiting_for_players(found: int, required: int, entry_fee: float, wallet: str, highest: float) -> str:
    return (
        f"🎮 Welcome to {GAME_NAME}!\n\n"
        f"Waiting for more players... ({found}/{required})\n\n"
        f"To play, send {entry_fee:g} SOL to:\n"
        f"{format_address(wallet)}\n\n"
        f"🏆 Highest Payout: {format_sol(highest)}\n"
        "Winner takes 50% of the prize pool! 💰"
    )


def round_announcement(
    players: list[str],
    prize: float,
    entry_fee: float,
    wallet: str,
    highest: float,
    countdown_seconds: float,
) -> str:
    roster = "\n".join(f"• {format_address(p)}" for p in players)
    return (
        f"🎮 Welcome to {GAME_NAME}!\n"
        "Think fast, answer smart, and claim your share of the prize pool! 💰\n\n"
        f"To participate: Send exactly {entry_fee:g} SOL to:\n"
        f"{format_address(wallet)}\n\n"
        f"💸 Current Prize: {format_sol(prize)}\n"
        f"🏆 Highest Payout: {format_sol(highest)}\n"
        f"🎯 Current Players ({len(players)}):\n{roster}\n\n"
        f"⏳ Game begins in {_duration(countdown_seconds)}... Brace yourselves!"
    )


def question_opened(question: str, window_seconds: float) -> str:
    return f"{question}\n\n⏱️ You have {_duration(window_seconds)} to submit your best answer!"


def question_still_open(question: str) -> str:
    return (
        "⏳ No answers yet! The question remains open:\n\n"
        f"❓ {question}\n\n"
        "🎯 Be the first to answer correctly and win SOL!\n\n"
        "⏱️ Clock is ticking..."
    )


def no_winner(next_round_seconds: float) -> str:
    return (
        "🎯 Game Over!\n\n"
        "No correct answers were submitted.\n\n"
        f"Starting new game in {_duration(next_round_seconds)}..."
    )


def evaluation_failed(next_round_seconds: float) -> str:
    return (
        "⚠️ We couldn't judge the answers this time.\n\n"
        f"Starting new game in {_duration(next_round_seconds)}..."
    )


def winner_announcement(winner: str, explanation: str, claim_seconds: float) -> str:
    return (
        "🎉 Game Over!\n\n"
        f"👑 Winner: @{winner}\n"
        f"📚 {explanation}\n\n"
        f"@{winner}, reply with your Solana wallet address to claim your prize!\n"
        f"⏳ You have {_duration(claim_seconds)} to claim."
    )


def request_address(winner: str) -> str:
    return f"@{winner}, please provide a valid Solana wallet address to receive your prize."


def processing_payment(winner: str, address: str) -> str:
    return f"💳 Processing payment...\n\n🏆 Winner: @{winner}\n📍 To: {format_address(address)}"


def payment_sent(winner: str, prize: float, new_record: bool, tx_link: str, next_round_seconds: float) -> str:
    record_line = "🎉 New Highest Payout! 🎉\n" if new_record else ""
    return (
        f"🎊 Congratulations @{winner}!\n\n"
        f"{format_sol(prize)} has been sent to your wallet!\n"
        f"{record_line}"
        f"Transaction: {tx_link}\n\n"
        f"New game starting in {_duration(next_round_seconds)}..."
    )


def payment_delayed() -> str:
    return "⚠️ There seems to be a delay with the payment.\n"


def claim_expired() -> str:
    return "⚠️ Time's up!\nStarting fresh game with new players..."


def admin_skipped(admin: str) -> str:
    return f"⏩ Admin @{admin} skipped the waiting time.\nStarting next phase immediately..."


def _duration(seconds: float) -> str:
    total = int(round(seconds))
    if total >= 60 and total % 60 == 0:
        minutes = total // 60
        return "1 minute" if minutes == 1 else f"{minutes} minutes"
    return "1 second" if total == 1 else f"{total} seconds"
