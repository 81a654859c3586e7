"""
Solana executor: native SOL transfers over raw JSON-RPC.

All outputs of one call are System Program transfer instructions in a
single transaction, so the recipient and fee legs land together.
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
from decimal import Decimal
from typing import Optional, Sequence

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import Transaction

from ..chains import ChainTag, Network, from_base_units, to_base_units
from ..constants import SolanaUnits, Timeouts
from ..exceptions import (
    InsufficientFundsError,
    ProviderUnavailableError,
    SubmissionFailedError,
    VeloValidationError,
)
from ..key_vault import SigningMaterial
from .base import ChainExecutor, OutputStatus, TransferOutput, TransferResult
from .rpc_client import FailoverRPCClient, RPCError

logger = logging.getLogger(__name__)

SOL_DECIMALS = 9


def parse_keypair(secret: str) -> Keypair:
    """Accept a JSON byte array, a hex seed or key, or base58.

    Raises:
        VeloValidationError: If the material matches none of the formats
    """
    raw = secret.strip()
    key_bytes: Optional[bytes] = None

    if raw.startswith("["):
        try:
            key_bytes = bytes(json.loads(raw))
        except (ValueError, TypeError) as e:
            raise VeloValidationError("Invalid Solana key array", field="signing_material") from e
    else:
        hex_body = raw[2:] if raw.startswith("0x") else raw
        if len(hex_body) in (64, 128):
            try:
                key_bytes = bytes.fromhex(hex_body)
            except ValueError:
                key_bytes = None
        if key_bytes is None:
            try:
                key_bytes = base58.b58decode(raw)
            except ValueError as e:
                raise VeloValidationError("Unrecognised Solana key format", field="signing_material") from e

    if len(key_bytes) == 64:
        return Keypair.from_bytes(key_bytes)
    if len(key_bytes) == 32:
        return Keypair.from_seed(key_bytes)
    raise VeloValidationError(
        f"Solana key must be 32 or 64 bytes, got {len(key_bytes)}",
        field="signing_material",
    )


def is_valid_address(address: str) -> bool:
    try:
        return len(base58.b58decode(address)) == 32
    except ValueError:
        return False


class SolanaExecutor(ChainExecutor):
    chain = ChainTag.SOLANA
    batch_delay_seconds = SolanaUnits.BATCH_DELAY_SECONDS
    poll_interval_seconds: float = 1.0

    def __init__(
        self,
        network: Network,
        rpc: FailoverRPCClient,
        confirmation_timeout: float = Timeouts.SOLANA_CONFIRMATION,
        commitment: str = "confirmed",
    ):
        super().__init__(network)
        self._rpc = rpc
        self._confirmation_timeout = confirmation_timeout
        self._commitment = commitment

    def validate_address(self, address: str) -> bool:
        return bool(address) and is_valid_address(address)

    async def _balance_lamports(self, address: str) -> int:
        result = await self._rpc.call("getBalance", [address, {"commitment": self._commitment}])
        return int(result["value"])

    async def get_balance(self, address: str) -> Decimal:
        return from_base_units(await self._balance_lamports(address), SOL_DECIMALS)

    async def _rent_exempt_minimum(self) -> int:
        return int(await self._rpc.call("getMinimumBalanceForRentExemption", [0]))

    async def _required_lamports(self, outputs: Sequence[TransferOutput], transactions: int) -> int:
        """Amounts + signature fees + rent for recipients that do not exist yet."""
        total = sum(to_base_units(o.amount, SOL_DECIMALS) for o in outputs)
        total += SolanaUnits.SIGNATURE_FEE_LAMPORTS * transactions

        rent: Optional[int] = None
        seen: set[str] = set()
        for o in outputs:
            if o.to in seen:
                continue
            seen.add(o.to)
            if await self._balance_lamports(o.to) == 0:
                if rent is None:
                    rent = await self._rent_exempt_minimum()
                total += rent
        return total

    async def _check_funds(self, from_address: str, required: int) -> None:
        available = await self._balance_lamports(from_address)
        if available < required:
            raise InsufficientFundsError(
                "Insufficient SOL balance",
                available=str(from_base_units(available, SOL_DECIMALS)),
                required=str(from_base_units(required, SOL_DECIMALS)),
                token="SOL",
                chain=self.chain.value,
            )

    async def preflight_batch(self, from_address: str, outputs: Sequence[TransferOutput]) -> None:
        await self._check_funds(from_address, await self._required_lamports(outputs, len(outputs)))

    async def _wait_for_signature(self, signature: str) -> None:
        while True:
            result = await self._rpc.call(
                "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
            )
            statuses = (result or {}).get("value") or []
            status = statuses[0] if statuses else None
            if status:
                if status.get("err"):
                    raise SubmissionFailedError(
                        f"Transaction failed: {status['err']}",
                        chain=self.chain.value,
                        tx_hash=signature,
                        reason=str(status["err"]),
                    )
                if status.get("confirmationStatus") in ("confirmed", "finalized"):
                    return
            await asyncio.sleep(self.poll_interval_seconds)

    async def transfer(
        self,
        from_address: str,
        signing_material: SigningMaterial,
        outputs: Sequence[TransferOutput],
    ) -> TransferResult:
        self._require_outputs(outputs)
        for o in outputs:
            if not self.validate_address(o.to):
                raise VeloValidationError(f"Invalid Solana address: {o.to}", field="to")

        keypair = parse_keypair(signing_material.secret)
        if str(keypair.pubkey()) != from_address:
            raise VeloValidationError("Signing key does not match source address", field="from_address")

        await self._check_funds(from_address, await self._required_lamports(outputs, 1))

        blockhash_result = await self._rpc.call("getLatestBlockhash", [{"commitment": self._commitment}])
        blockhash = Hash.from_string(blockhash_result["value"]["blockhash"])

        instructions = [
            transfer(TransferParams(
                from_pubkey=keypair.pubkey(),
                to_pubkey=Pubkey.from_string(o.to),
                lamports=to_base_units(o.amount, SOL_DECIMALS),
            ))
            for o in outputs
        ]
        message = Message.new_with_blockhash(instructions, keypair.pubkey(), blockhash)
        tx = Transaction([keypair], message, blockhash)
        encoded = base64.b64encode(bytes(tx)).decode("ascii")

        try:
            signature = await self._rpc.call(
                "sendTransaction",
                [encoded, {"encoding": "base64", "skipPreflight": False, "preflightCommitment": self._commitment}],
            )
        except RPCError as e:
            raise SubmissionFailedError(
                f"Solana transaction rejected: {e}", chain=self.chain.value, reason=str(e)
            ) from e
        logger.info(f"Solana tx sent: {signature} ({len(outputs)} transfers)")

        try:
            status = await self._await_confirmation(
                signature, self._wait_for_signature(signature), self._confirmation_timeout
            )
        except SubmissionFailedError as e:
            return TransferResult.uniform(signature, outputs, OutputStatus.FAILED, e.message)
        except (RPCError, ProviderUnavailableError) as e:
            logger.warning(f"Could not confirm {signature}: {e}")
            status = OutputStatus.SENT_UNCONFIRMED

        return TransferResult.uniform(signature, outputs, status)

    async def close(self) -> None:
        await self._rpc.close()
