"""
Wallet-side ledger reads and SPL delegate management.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TokenAccountOpts
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import ApproveParams, RevokeParams, approve, get_associated_token_address, revoke

from .errors import BalanceUnavailableError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


def dust_threshold(decimals: int, dust_decimals: int = 3) -> int:
    """Raw amount at or below which a balance counts as empty."""
    if decimals > dust_decimals:
        return 10 ** (decimals - dust_decimals)
    return 0


class Wallet:
    def __init__(
        self,
        rpc: AsyncClient,
        keypair: Keypair,
        submitter,
        delegate: str,
        dust_decimals: int = 3,
        balance_retry: Optional[RetryPolicy] = None,
    ):
        self.rpc = rpc
        self.keypair = keypair
        self.owner = keypair.pubkey()
        self.submitter = submitter
        self.delegate = Pubkey.from_string(delegate)
        self.dust_decimals = dust_decimals
        self.balance_retry = balance_retry or RetryPolicy(
            attempts=3,
            base_delay=2.0,
            multiplier=1.0,
            retry_on=(SolanaRpcException, RPCException, KeyError, TypeError),
        )
        self._decimals: Dict[str, int] = {}

    @property
    def address(self) -> str:
        return str(self.owner)

    async def token_balance(self, mint: str) -> int:
        """Raw on-chain balance of `mint`, summed over every token account."""
        try:
            return await self.balance_retry.run(self._read_balance, mint, label=f"balance {mint[:6]}")
        except (SolanaRpcException, RPCException, KeyError, TypeError) as e:
            raise BalanceUnavailableError(f"balance for {mint} unavailable: {e}") from e

    async def _read_balance(self, mint: str) -> int:
        resp = await self.rpc.get_token_accounts_by_owner_json_parsed(
            self.owner,
            TokenAccountOpts(mint=Pubkey.from_string(mint)),
            commitment=Confirmed,
        )
        total = 0
        for acc in resp.value:
            total += int(acc.account.data.parsed["info"]["tokenAmount"]["amount"])
        return total

    async def token_decimals(self, mint: str) -> int:
        if mint in self._decimals:
            return self._decimals[mint]
        resp = await self.rpc.get_account_info_json_parsed(Pubkey.from_string(mint))
        if resp.value is None:
            raise BalanceUnavailableError(f"mint account {mint} not found")
        decimals = int(resp.value.data.parsed["info"]["decimals"])
        self._decimals[mint] = decimals
        return decimals

    def is_dust(self, raw_amount: int, decimals: int) -> bool:
        return raw_amount <= dust_threshold(decimals, self.dust_decimals)

    async def approve(self, mint: str, amount: int) -> str:
        """Delegate exactly `amount` raw units of `mint` to the aggregator program."""
        source = get_associated_token_address(self.owner, Pubkey.from_string(mint))
        ix = approve(
            ApproveParams(
                program_id=TOKEN_PROGRAM_ID,
                source=source,
                delegate=self.delegate,
                owner=self.owner,
                amount=int(amount),
            )
        )
        sig = await self.submitter.send_instructions([ix])
        logger.info(f"[WALLET] Approved {amount} of {mint[:8]}... ({sig})")
        return sig

    async def revoke(self, mint: str) -> str:
        account = get_associated_token_address(self.owner, Pubkey.from_string(mint))
        ix = revoke(RevokeParams(program_id=TOKEN_PROGRAM_ID, account=account, owner=self.owner))
        sig = await self.submitter.send_instructions([ix])
        logger.info(f"[WALLET] Revoked delegate on {mint[:8]}... ({sig})")
        return sig
