"""
EVM executor: native ETH and ERC-20 (USDT) transfers.

Every output is its own signed transaction with consecutive nonces from
the sender's pending count. There is no rollback: if output N cannot be
submitted, outputs N+1.. are not sent (their nonces would gap) and are
reported failed, while outputs already broadcast keep their status.
"""
from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence

from eth_account import Account
from eth_utils import is_address, to_checksum_address

from ..chains import ChainTag, Network, from_base_units, to_base_units
from ..constants import Timeouts
from ..exceptions import (
    InsufficientFundsError,
    ProviderUnavailableError,
    SubmissionFailedError,
    VeloValidationError,
)
from ..key_vault import SigningMaterial
from .base import ChainExecutor, OutputResult, OutputStatus, TransferOutput, TransferResult
from .rpc_client import FailoverRPCClient, RPCError

logger = logging.getLogger(__name__)

CHAIN_IDS: Dict[Network, int] = {
    Network.MAINNET: 1,
    Network.TESTNET: 11155111,  # Sepolia
}

USDT_CONTRACTS: Dict[Network, str] = {
    Network.MAINNET: "0xdAC17F958D2ee523a2206206994597C13D831ec7",
    Network.TESTNET: "0x516de3a7a567d81737e3a46ec4ff9cfd1fcb0136",
}

NATIVE_TRANSFER_GAS = 21_000
ERC20_TRANSFER_GAS_FALLBACK = 65_000
ETH_DECIMALS = 18


def encode_erc20_transfer(to_address: str, amount: int) -> bytes:
    """Encode ERC20 transfer(address,uint256) call data."""
    selector = bytes.fromhex("a9059cbb")
    to_bytes = bytes.fromhex(to_address[2:].lower().zfill(64))
    amount_bytes = amount.to_bytes(32, "big")
    return selector + to_bytes + amount_bytes


def encode_erc20_balance_of(owner: str) -> bytes:
    """Encode ERC20 balanceOf(address) call data."""
    return bytes.fromhex("70a08231") + bytes.fromhex(owner[2:].lower().zfill(64))


class EvmExecutor(ChainExecutor):
    """ETH or USDT on Ethereum mainnet / Sepolia."""

    poll_interval_seconds: float = 2.0

    def __init__(
        self,
        chain: ChainTag,
        network: Network,
        rpc: FailoverRPCClient,
        confirmation_timeout: float = Timeouts.EVM_CONFIRMATION,
    ):
        if chain not in (ChainTag.ETHEREUM, ChainTag.USDT_ERC20):
            raise ValueError(f"EvmExecutor does not handle {chain}")
        super().__init__(network)
        self.chain = chain
        self._rpc = rpc
        self._confirmation_timeout = confirmation_timeout

    @property
    def is_token(self) -> bool:
        return self.chain == ChainTag.USDT_ERC20

    @property
    def token_contract(self) -> Optional[str]:
        return USDT_CONTRACTS[self.network] if self.is_token else None

    def validate_address(self, address: str) -> bool:
        return bool(address) and is_address(address)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _native_balance_wei(self, address: str) -> int:
        return int(await self._rpc.call("eth_getBalance", [address, "latest"]), 16)

    async def _token_balance_units(self, address: str) -> int:
        data = "0x" + encode_erc20_balance_of(address).hex()
        result = await self._rpc.call("eth_call", [{"to": self.token_contract, "data": data}, "latest"])
        return int(result, 16) if result and result != "0x" else 0

    async def get_balance(self, address: str) -> Decimal:
        if self.is_token:
            return from_base_units(await self._token_balance_units(address), self.token.decimals)
        return from_base_units(await self._native_balance_wei(address), ETH_DECIMALS)

    # ------------------------------------------------------------------
    # Transfer
    # ------------------------------------------------------------------

    def _build_tx(
        self,
        output: TransferOutput,
        nonce: int,
        gas_price: int,
        gas: int,
    ) -> Dict[str, Any]:
        units = to_base_units(output.amount, self.token.decimals)
        if self.is_token:
            return {
                "to": to_checksum_address(self.token_contract),
                "value": 0,
                "data": "0x" + encode_erc20_transfer(output.to, units).hex(),
                "gas": gas,
                "gasPrice": gas_price,
                "nonce": nonce,
                "chainId": CHAIN_IDS[self.network],
            }
        return {
            "to": to_checksum_address(output.to),
            "value": units,
            "gas": gas,
            "gasPrice": gas_price,
            "nonce": nonce,
            "chainId": CHAIN_IDS[self.network],
        }

    async def _estimate_token_gas(self, from_address: str, output: TransferOutput) -> int:
        units = to_base_units(output.amount, self.token.decimals)
        try:
            result = await self._rpc.call("eth_estimateGas", [{
                "from": from_address,
                "to": self.token_contract,
                "data": "0x" + encode_erc20_transfer(output.to, units).hex(),
            }])
            return int(int(result, 16) * 1.2)
        except RPCError as e:
            logger.warning(f"Gas estimation failed ({e}); using {ERC20_TRANSFER_GAS_FALLBACK}")
            return ERC20_TRANSFER_GAS_FALLBACK

    async def _preflight(
        self,
        from_address: str,
        outputs: Sequence[TransferOutput],
        gas_price: int,
        gas_limits: List[int],
    ) -> None:
        gas_cost = gas_price * sum(gas_limits)
        native = await self._native_balance_wei(from_address)
        if self.is_token:
            needed = sum(to_base_units(o.amount, self.token.decimals) for o in outputs)
            available = await self._token_balance_units(from_address)
            if available < needed:
                raise InsufficientFundsError(
                    "Insufficient USDT balance",
                    available=str(from_base_units(available, self.token.decimals)),
                    required=str(from_base_units(needed, self.token.decimals)),
                    token="USDT",
                    chain=self.chain.value,
                )
            if native < gas_cost:
                raise InsufficientFundsError(
                    "Insufficient ETH for gas",
                    available=str(from_base_units(native, ETH_DECIMALS)),
                    required=str(from_base_units(gas_cost, ETH_DECIMALS)),
                    token="ETH",
                    chain=self.chain.value,
                )
            return

        needed = sum(to_base_units(o.amount, ETH_DECIMALS) for o in outputs) + gas_cost
        if native < needed:
            raise InsufficientFundsError(
                "Insufficient ETH balance",
                available=str(from_base_units(native, ETH_DECIMALS)),
                required=str(from_base_units(needed, ETH_DECIMALS)),
                token="ETH",
                chain=self.chain.value,
            )

    async def _wait_for_receipt(self, tx_hash: str) -> Dict[str, Any]:
        while True:
            receipt = await self._rpc.call("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                if int(receipt.get("status", "0x0"), 16) == 0:
                    raise SubmissionFailedError(
                        f"Transaction {tx_hash} reverted",
                        chain=self.chain.value,
                        tx_hash=tx_hash,
                        reason="reverted",
                    )
                return receipt
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
                raise VeloValidationError(f"Invalid EVM address: {o.to}", field="to")

        account = Account.from_key(signing_material.secret)
        if account.address.lower() != from_address.lower():
            raise VeloValidationError("Signing key does not match source address", field="from_address")

        gas_price = int(await self._rpc.call("eth_gasPrice", []), 16)
        if self.is_token:
            gas_limits = [await self._estimate_token_gas(account.address, o) for o in outputs]
        else:
            gas_limits = [NATIVE_TRANSFER_GAS] * len(outputs)
        await self._preflight(account.address, outputs, gas_price, gas_limits)

        nonce = int(await self._rpc.call("eth_getTransactionCount", [account.address, "pending"]), 16)

        sent: List[OutputResult] = []
        halted: Optional[str] = None
        for index, output in enumerate(outputs):
            if halted is not None:
                sent.append(OutputResult(output, OutputStatus.FAILED, error=halted))
                continue
            tx = self._build_tx(output, nonce + index, gas_price, gas_limits[index])
            signed = account.sign_transaction(tx)
            raw = "0x" + bytes(signed.raw_transaction).hex()
            try:
                tx_hash = await self._rpc.call("eth_sendRawTransaction", [raw])
            except (RPCError, ProviderUnavailableError) as e:
                if index == 0:
                    raise SubmissionFailedError(
                        f"Broadcast rejected: {e}", chain=self.chain.value, reason=str(e)
                    ) from e
                logger.error(f"Output {index} to {output.to} not submitted: {e}")
                sent.append(OutputResult(output, OutputStatus.FAILED, error=str(e)))
                halted = f"Not submitted: output {index} failed"
                continue
            logger.info(f"{self.chain.value} tx submitted: {tx_hash} (nonce {nonce + index})")
            sent.append(OutputResult(output, OutputStatus.SENT_UNCONFIRMED, tx_hash=tx_hash))

        for result in sent:
            if result.tx_hash is None:
                continue
            try:
                result.status = await self._await_confirmation(
                    result.tx_hash,
                    self._wait_for_receipt(result.tx_hash),
                    self._confirmation_timeout,
                )
            except SubmissionFailedError as e:
                result.status = OutputStatus.FAILED
                result.error = e.message
            except (RPCError, ProviderUnavailableError) as e:
                # Broadcast succeeded; only the status lookup failed
                logger.warning(f"Could not confirm {result.tx_hash}: {e}")
                result.status = OutputStatus.SENT_UNCONFIRMED

        primary = next((r.tx_hash for r in sent if r.tx_hash), None)
        return TransferResult(tx_hash=primary, outputs=sent)

    async def close(self) -> None:
        await self._rpc.close()
