from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, TypeVar

import httpx
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from trivia_bot.ledger import (
    BaseLedger,
    LedgerError,
    LedgerRateLimitError,
    LedgerRejectedError,
    LedgerTimeoutError,
)
from trivia_bot.models import (
    SignatureStatus,
    SignedTransfer,
    TransactionInfo,
    lamports_to_sol,
    parse_int_list,
    sol_to_lamports,
)

LOGGER = logging.getLogger("trivia_bot")

T = TypeVar("T")


def _is_rate_limit_text(text: str) -> bool:
    lowered = text.lower()
    return "429" in lowered or "too many requests" in lowered or "rate limit" in lowered


def _account_key(raw: Any) -> str:
    # jsonParsed messages wrap each key in a ParsedAccount.
    return str(getattr(raw, "pubkey", raw) or "")


def load_keypair(private_key: str) -> Keypair:
    if not private_key:
        raise RuntimeError("SOLANA_PRIVATE_KEY missing")
    try:
        raw = json.loads(private_key)
        return Keypair.from_bytes(bytes(int(x) for x in raw))
    except (TypeError, ValueError) as exc:
        raise RuntimeError("SOLANA_PRIVATE_KEY must be a JSON array of 64 byte values") from exc


def _pubkey(address: str) -> Pubkey:
    try:
        return Pubkey.from_string(address)
    except ValueError as exc:
        raise LedgerError(f"invalid address {address!r}") from exc


class SolanaLedger(BaseLedger):
    """Solana RPC access through solana-py's AsyncClient, bounded per call."""

    def __init__(
        self,
        rpc_url: str,
        private_key: str = "",
        timeout_seconds: float = 15.0,
        client: AsyncClient | None = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.private_key = private_key
        self.timeout_seconds = timeout_seconds
        self._client = client
        self._keypair: Keypair | None = None

    @property
    def client(self) -> AsyncClient:
        if self._client is None:
            self._client = AsyncClient(self.rpc_url, commitment=Confirmed, timeout=self.timeout_seconds)
        return self._client

    def keypair(self) -> Keypair:
        if self._keypair is None:
            self._keypair = load_keypair(self.private_key)
        return self._keypair

    def public_key(self) -> str:
        return str(self.keypair().pubkey())

    async def _call(self, method: str, request: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(request, timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise LedgerTimeoutError(f"{method} timed out after {self.timeout_seconds:.0f}s") from exc
        except SolanaRpcException as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError):
                if cause.response.status_code == 429:
                    raise LedgerRateLimitError(f"{method} rate limited (429)") from exc
                raise LedgerError(f"{method} http status {cause.response.status_code}") from exc
            if isinstance(cause, httpx.TimeoutException):
                raise LedgerTimeoutError(f"{method} timeout") from exc
            raise LedgerError(f"{method} transport error: {cause or exc}") from exc
        except RPCException as exc:
            message = str(exc)
            if _is_rate_limit_text(message):
                raise LedgerRateLimitError(f"{method} rate limited: {message}") from exc
            raise LedgerRejectedError(f"{method} failed: {message}") from exc

    async def get_recent_signatures(self, address: str, limit: int) -> list[str]:
        resp = await self._call(
            "getSignaturesForAddress",
            self.client.get_signatures_for_address(_pubkey(address), limit=int(limit)),
        )
        return [str(item.signature) for item in resp.value or [] if item.signature]

    async def get_transaction(self, signature: str) -> TransactionInfo | None:
        resp = await self._call(
            "getTransaction",
            self.client.get_transaction(
                Signature.from_string(signature),
                encoding="jsonParsed",
                max_supported_transaction_version=0,
            ),
        )
        found = resp.value
        if found is None or found.transaction.meta is None:
            return None
        meta = found.transaction.meta
        pre_balances = parse_int_list(list(meta.pre_balances or []))
        post_balances = parse_int_list(list(meta.post_balances or []))
        if not pre_balances or not post_balances:
            return None
        message = found.transaction.transaction.message
        return TransactionInfo(
            signature=signature,
            pre_balances=pre_balances,
            post_balances=post_balances,
            account_keys=[_account_key(key) for key in message.account_keys or []],
        )

    async def get_balance(self, address: str) -> float:
        resp = await self._call("getBalance", self.client.get_balance(_pubkey(address)))
        return lamports_to_sol(int(resp.value or 0))

    async def prepare_transfer(self, destination: str, amount: float) -> SignedTransfer:
        lamports = sol_to_lamports(amount)
        if lamports <= 0:
            raise LedgerError("transfer amount must be > 0")
        to_pubkey = _pubkey(destination)
        keypair = self.keypair()
        latest = await self._call("getLatestBlockhash", self.client.get_latest_blockhash())
        blockhash = latest.value.blockhash

        instruction = transfer(
            TransferParams(from_pubkey=keypair.pubkey(), to_pubkey=to_pubkey, lamports=lamports)
        )
        message = Message.new_with_blockhash([instruction], keypair.pubkey(), blockhash)
        tx = Transaction([keypair], message, blockhash)
        signature = str(tx.signatures[0])
        LOGGER.info("transfer_signed to=%s lamports=%s signature=%s", destination, lamports, signature)
        return SignedTransfer(
            signature=signature,
            payload=bytes(tx),
            last_valid_height=int(latest.value.last_valid_block_height),
        )

    async def broadcast(self, payload: bytes) -> None:
        resp = await self._call(
            "sendTransaction",
            self.client.send_raw_transaction(
                payload,
                opts=TxOpts(skip_confirmation=True, preflight_commitment=Confirmed),
            ),
        )
        LOGGER.info("transfer_broadcast signature=%s", resp.value)

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        resp = await self._call(
            "getSignatureStatuses",
            self.client.get_signature_statuses(
                [Signature.from_string(signature)], search_transaction_history=True
            ),
        )
        values = resp.value
        if not values or values[0] is None:
            return SignatureStatus.PENDING
        status = values[0]
        if status.err is not None:
            return SignatureStatus.FAILED
        if status.confirmation_status == TransactionConfirmationStatus.Finalized:
            return SignatureStatus.FINALIZED
        if status.confirmation_status == TransactionConfirmationStatus.Confirmed:
            return SignatureStatus.CONFIRMED
        return SignatureStatus.PENDING

    async def get_block_height(self) -> int:
        resp = await self._call("getBlockHeight", self.client.get_block_height())
        return int(resp.value)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
