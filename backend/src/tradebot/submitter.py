"""
Sign, send and confirm transactions.

Confirmation runs at `confirmed` commitment against the transaction's
last valid block height. When the validity window lapses, or the confirm
call times out or loses the node, the transaction may still have landed, so
a bounded series of delayed `getTransaction` lookups decides the outcome.
"""

from __future__ import annotations

import asyncio
import base64
import logging
from typing import List, Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException, TransactionExpiredBlockheightExceededError, UnconfirmedTxError
from solana.rpc.types import TxOpts
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from .errors import TransactionError, TransactionFailedError, TransactionNotFoundError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class _NotLandedYet(Exception):
    pass


class TransactionSubmitter:
    def __init__(
        self,
        rpc: AsyncClient,
        keypair: Keypair,
        confirm_timeout: float = 90.0,
        fallback_attempts: int = 3,
        fallback_delay: float = 5.0,
        max_send_retries: int = 5,
    ):
        self.rpc = rpc
        self.keypair = keypair
        self.confirm_timeout = confirm_timeout
        self.max_send_retries = max_send_retries
        self.fallback = RetryPolicy(
            attempts=fallback_attempts,
            initial_delay=fallback_delay,
            base_delay=fallback_delay * 2,
            multiplier=2.0,
            max_delay=60.0,
            retry_on=(_NotLandedYet, SolanaRpcException, RPCException),
        )

    def sign(self, raw_tx_b64: str) -> bytes:
        tx = VersionedTransaction.from_bytes(base64.b64decode(raw_tx_b64))
        signed = VersionedTransaction(tx.message, [self.keypair])
        return bytes(signed)

    async def submit_and_confirm(self, raw_tx_b64: str, last_valid_block_height: Optional[int] = None) -> str:
        """Sign an unsigned base64 transaction, send it and wait for confirmation."""
        raw = self.sign(raw_tx_b64)
        if last_valid_block_height is None:
            last_valid_block_height = await self._latest_valid_height()
        signature = await self._send(raw)
        await self.confirm_with_fallback(signature, last_valid_block_height)
        return str(signature)

    async def send_instructions(self, instructions: List[Instruction]) -> str:
        """Compile, sign and confirm a transaction from bare instructions (approve / revoke)."""
        try:
            resp = await self.rpc.get_latest_blockhash()
        except (SolanaRpcException, RPCException) as e:
            raise TransactionError(f"blockhash unavailable: {e}") from e
        payer = self.keypair.pubkey()
        msg = MessageV0.try_compile(
            payer=payer,
            instructions=instructions,
            address_lookup_table_accounts=[],
            recent_blockhash=resp.value.blockhash,
        )
        tx = VersionedTransaction(msg, [self.keypair])
        signature = await self._send(bytes(tx))
        await self.confirm_with_fallback(signature, resp.value.last_valid_block_height)
        return str(signature)

    async def _latest_valid_height(self) -> int:
        try:
            resp = await self.rpc.get_latest_blockhash()
        except (SolanaRpcException, RPCException) as e:
            raise TransactionError(f"blockhash unavailable: {e}") from e
        return resp.value.last_valid_block_height

    async def _send(self, raw: bytes) -> Signature:
        try:
            resp = await self.rpc.send_raw_transaction(
                raw,
                opts=TxOpts(skip_preflight=True, max_retries=self.max_send_retries),
            )
        except (SolanaRpcException, RPCException) as e:
            raise TransactionError(f"send failed: {e}") from e
        logger.info(f"[SUBMIT] Sent {resp.value}")
        return resp.value

    async def confirm_with_fallback(self, signature: Signature, last_valid_block_height: int) -> None:
        try:
            resp = await asyncio.wait_for(
                self.rpc.confirm_transaction(
                    signature,
                    commitment=Confirmed,
                    sleep_seconds=0.5,
                    last_valid_block_height=last_valid_block_height,
                ),
                timeout=self.confirm_timeout,
            )
        except (
            TransactionExpiredBlockheightExceededError,
            UnconfirmedTxError,
            SolanaRpcException,
            asyncio.TimeoutError,
        ) as e:
            logger.warning(f"[SUBMIT] Confirmation inconclusive for {signature} ({type(e).__name__}); checking chain")
            await self._lookup_landed(signature)
            return
        status = resp.value[0] if resp.value else None
        if status is not None and status.err is not None:
            raise TransactionFailedError(f"transaction {signature} failed: {status.err}", str(signature))
        logger.info(f"[SUBMIT] Confirmed {signature}")

    async def _lookup_landed(self, signature: Signature) -> None:
        try:
            await self.fallback.run(self._lookup_once, signature, label=f"lookup {str(signature)[:8]}")
        except (_NotLandedYet, SolanaRpcException, RPCException) as e:
            raise TransactionNotFoundError(f"transaction {signature} not found after expiry", str(signature)) from e
        logger.info(f"[SUBMIT] Found {signature} on-chain after expiry")

    async def _lookup_once(self, signature: Signature) -> None:
        resp = await self.rpc.get_transaction(
            signature,
            commitment=Confirmed,
            max_supported_transaction_version=0,
        )
        if resp.value is None:
            raise _NotLandedYet(str(signature))
        meta = resp.value.transaction.meta
        if meta is not None and meta.err is not None:
            raise TransactionFailedError(f"transaction {signature} failed: {meta.err}", str(signature))
