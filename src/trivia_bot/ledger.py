from __future__ import annotations

from trivia_bot.models import SignatureStatus, SignedTransfer, TransactionInfo


class LedgerError(RuntimeError):
    pass


class LedgerRateLimitError(LedgerError):
    pass


class LedgerTimeoutError(LedgerError):
    pass


class LedgerRejectedError(LedgerError):
    """The node answered and refused the request; nothing was forwarded."""


class BaseLedger:
    async def get_recent_signatures(self, address: str, limit: int) -> list[str]:
        raise NotImplementedError

    async def get_transaction(self, signature: str) -> TransactionInfo | None:
        raise NotImplementedError

    async def get_balance(self, address: str) -> float:
        raise NotImplementedError

    async def prepare_transfer(self, destination: str, amount: float) -> SignedTransfer:
        """Build and sign a transfer without sending it."""
        raise NotImplementedError

    async def broadcast(self, payload: bytes) -> None:
        raise NotImplementedError

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        raise NotImplementedError

    async def get_block_height(self) -> int:
        raise NotImplementedError

    async def close(self) -> None:
        return None
