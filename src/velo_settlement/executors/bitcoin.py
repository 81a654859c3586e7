"""
Bitcoin executor over the Blockstream Esplora REST API.

All outputs of a call (recipients, treasury fee, change) go into a single
P2PKH-signed transaction, so a batch settles atomically. Bitcoin blocks
are slow; a transaction accepted into the mempool is reported as
``sent_unconfirmed``.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import bitcoin
import httpx
from bitcoin.core import CMutableTransaction, CMutableTxIn, CMutableTxOut, COutPoint, Hash160, b2x, lx
from bitcoin.core.script import OP_CHECKSIG, OP_DUP, OP_EQUALVERIFY, OP_HASH160, SIGHASH_ALL, CScript, SignatureHash
from bitcoin.core.scripteval import SCRIPT_VERIFY_P2SH, VerifyScript, VerifyScriptError
from bitcoin.base58 import Base58Error
from bitcoin.bech32 import Bech32Error
from bitcoin.wallet import CBitcoinAddress, CBitcoinAddressError, CBitcoinSecret, P2PKHBitcoinAddress

from ..chains import ChainTag, Network, from_base_units, to_base_units
from ..constants import BitcoinUnits, Timeouts
from ..exceptions import (
    InsufficientFundsError,
    ProviderUnavailableError,
    SubmissionFailedError,
    VeloValidationError,
)
from ..key_vault import SigningMaterial
from ..retry import REST_RETRY_CONFIG
from .base import (
    ChainExecutor,
    OutputKind,
    OutputResult,
    OutputStatus,
    TransferOutput,
    TransferResult,
)
from .rpc_client import UNAVAILABLE_HTTP_STATUSES, EndpointPool

logger = logging.getLogger(__name__)

# python-bitcoinlib keeps the selected network in module state
_PARAMS_LOCK = threading.Lock()

_BITCOIN_PARAMS = {
    Network.MAINNET: "mainnet",
    Network.TESTNET: "testnet",
}

_DECODE_ERRORS = (Base58Error, Bech32Error, CBitcoinAddressError, ValueError)


class BlockstreamServerError(Exception):
    """5xx or 429 from the explorer; worth retrying."""


# =============================================================================
# Coin selection
# =============================================================================

@dataclass(frozen=True)
class Utxo:
    txid: str
    vout: int
    value: int  # satoshis
    confirmed: bool = True


@dataclass
class TxPlan:
    inputs: List[Utxo]
    outputs: List[Tuple[str, int]]
    fee: int
    change: int = 0
    size_bytes: int = 0

    @property
    def input_total(self) -> int:
        return sum(u.value for u in self.inputs)

    @property
    def output_total(self) -> int:
        return sum(value for _, value in self.outputs)


def estimate_size(n_inputs: int, n_outputs: int) -> int:
    return (
        BitcoinUnits.TX_OVERHEAD_BYTES
        + BitcoinUnits.INPUT_BYTES * n_inputs
        + BitcoinUnits.OUTPUT_BYTES * n_outputs
    )


def plan_transaction(
    utxos: Sequence[Utxo],
    outputs: Sequence[Tuple[str, int]],
    fee_rate: int,
    change_address: str,
    max_inputs: int = BitcoinUnits.MAX_INPUTS,
) -> TxPlan:
    """Select inputs and compute fee and change for `outputs`.

    Confirmed UTXOs only, largest first, at most `max_inputs`. The fee is
    sized for one extra (change) output; change below the dust threshold
    is left to the miner.

    Raises:
        VeloValidationError: If an output is below the dust threshold
        InsufficientFundsError: If the selected inputs cannot cover it
    """
    for address, value in outputs:
        if value < BitcoinUnits.DUST_THRESHOLD:
            raise VeloValidationError(
                f"Amount too small for {address}: {value} satoshis "
                f"(minimum {BitcoinUnits.DUST_THRESHOLD} satoshis)",
                field="amount",
            )

    target = sum(value for _, value in outputs)
    candidates = sorted((u for u in utxos if u.confirmed), key=lambda u: u.value, reverse=True)

    selected: List[Utxo] = []
    total = 0
    fee = 0
    for utxo in candidates[:max_inputs]:
        selected.append(utxo)
        total += utxo.value
        fee = estimate_size(len(selected), len(outputs) + 1) * fee_rate
        if total >= target + fee:
            break

    if not selected or total < target + fee:
        required = target + (fee or estimate_size(1, len(outputs) + 1) * fee_rate)
        raise InsufficientFundsError(
            f"Insufficient balance. Required: {required} satoshis, available: {total} satoshis",
            available=str(from_base_units(total, 8)),
            required=str(from_base_units(required, 8)),
            token="BTC",
            chain=ChainTag.BITCOIN.value,
        )

    change = total - target - fee
    planned = list(outputs)
    if change >= BitcoinUnits.DUST_THRESHOLD:
        planned.append((change_address, change))
    else:
        fee += change
        change = 0

    return TxPlan(
        inputs=selected,
        outputs=planned,
        fee=fee,
        change=change,
        size_bytes=estimate_size(len(selected), len(planned)),
    )


# =============================================================================
# Signing
# =============================================================================

def sign_p2pkh(plan: TxPlan, wif: str, network: Network) -> Tuple[str, str]:
    """Build and sign `plan`; returns (raw hex, txid).

    Every input's script is verified before the hex is handed back.
    """
    with _PARAMS_LOCK:
        bitcoin.SelectParams(_BITCOIN_PARAMS[network])
        try:
            seckey = CBitcoinSecret(wif)
        except _DECODE_ERRORS as e:
            raise VeloValidationError("Invalid WIF private key", field="signing_material") from e

        script_pubkey = CScript([OP_DUP, OP_HASH160, Hash160(seckey.pub), OP_EQUALVERIFY, OP_CHECKSIG])
        txins = [CMutableTxIn(COutPoint(lx(u.txid), u.vout)) for u in plan.inputs]
        txouts = [
            CMutableTxOut(value, CBitcoinAddress(address).to_scriptPubKey())
            for address, value in plan.outputs
        ]
        tx = CMutableTransaction(txins, txouts)

        for index, txin in enumerate(txins):
            sighash = SignatureHash(script_pubkey, tx, index, SIGHASH_ALL)
            sig = seckey.sign(sighash) + bytes([SIGHASH_ALL])
            txin.scriptSig = CScript([sig, seckey.pub])
            try:
                VerifyScript(txin.scriptSig, script_pubkey, tx, index, (SCRIPT_VERIFY_P2SH,))
            except VerifyScriptError as e:
                raise SubmissionFailedError(
                    f"Signature for input {index} failed script verification: {e}",
                    chain=ChainTag.BITCOIN.value,
                    reason="script verification failed",
                ) from e

        return b2x(tx.serialize()), b2x(tx.GetTxid()[::-1])


def address_for_wif(wif: str, network: Network) -> str:
    with _PARAMS_LOCK:
        bitcoin.SelectParams(_BITCOIN_PARAMS[network])
        try:
            seckey = CBitcoinSecret(wif)
        except _DECODE_ERRORS as e:
            raise VeloValidationError("Invalid WIF private key", field="signing_material") from e
        return str(P2PKHBitcoinAddress.from_pubkey(seckey.pub))


def is_valid_address(address: str, network: Network) -> bool:
    with _PARAMS_LOCK:
        bitcoin.SelectParams(_BITCOIN_PARAMS[network])
        try:
            CBitcoinAddress(address)
            return True
        except _DECODE_ERRORS:
            return False


# =============================================================================
# Explorer client
# =============================================================================

class BlockstreamClient:
    """Esplora REST client over an ordered list of explorer base URLs.

    Each host gets a few quick retries; when they run out the call moves
    to the next host.
    """

    def __init__(
        self,
        base_urls: Union[str, Sequence[str]],
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if isinstance(base_urls, str):
            base_urls = [base_urls]
        self._http_client = http_client
        self._pool: EndpointPool[str] = EndpointPool(
            "blockstream",
            [url.rstrip("/") for url in base_urls],
            factory=lambda url: url,
            failover_on=(httpx.TransportError, BlockstreamServerError),
            retry_config=REST_RETRY_CONFIG,
        )

    @property
    def pool(self) -> EndpointPool[str]:
        return self._pool

    def _get_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(Timeouts.RPC_CALL, connect=Timeouts.HTTP_CONNECT),
            )
        return self._http_client

    async def _request(
        self,
        method: str,
        path: str,
        content: Optional[str] = None,
        failover: bool = True,
    ) -> httpx.Response:
        async def send(base_url: str) -> httpx.Response:
            response = await self._get_client().request(
                method,
                f"{base_url}{path}",
                content=content,
                headers={"Content-Type": "text/plain"} if content is not None else None,
            )
            if response.status_code in UNAVAILABLE_HTTP_STATUSES:
                raise BlockstreamServerError(f"HTTP {response.status_code}: {response.text[:200]}")
            return response

        return await self._pool.run(f"{method} {path}", send, failover=failover)

    async def get_utxos(self, address: str) -> List[Utxo]:
        response = await self._request("GET", f"/address/{address}/utxo")
        response.raise_for_status()
        return [
            Utxo(
                txid=u["txid"],
                vout=int(u["vout"]),
                value=int(u["value"]),
                confirmed=bool((u.get("status") or {}).get("confirmed", False)),
            )
            for u in response.json()
        ]

    async def get_address(self, address: str) -> Dict[str, Any]:
        response = await self._request("GET", f"/address/{address}")
        response.raise_for_status()
        return response.json()

    async def broadcast(self, raw_hex: str) -> str:
        # Never repeated on another host; the first may already have relayed it
        response = await self._request("POST", "/tx", raw_hex, failover=False)
        if response.status_code >= 400:
            raise SubmissionFailedError(
                f"Broadcast rejected: {response.text[:200]}",
                chain=ChainTag.BITCOIN.value,
                reason=response.text[:200],
            )
        return response.text.strip()

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None


# =============================================================================
# Executor
# =============================================================================

class BitcoinExecutor(ChainExecutor):
    chain = ChainTag.BITCOIN
    batches_in_one_transaction = True

    def __init__(
        self,
        network: Network,
        client: BlockstreamClient,
        fee_rate: int = BitcoinUnits.DEFAULT_FEE_RATE,
    ):
        super().__init__(network)
        self._client = client
        self._fee_rate = fee_rate

    def validate_address(self, address: str) -> bool:
        return bool(address) and is_valid_address(address, self.network)

    async def get_balance(self, address: str) -> Decimal:
        stats = await self._client.get_address(address)
        chain_stats = stats.get("chain_stats", {})
        funded = int(chain_stats.get("funded_txo_sum", 0))
        spent = int(chain_stats.get("spent_txo_sum", 0))
        return from_base_units(funded - spent, 8)

    async def transfer(
        self,
        from_address: str,
        signing_material: SigningMaterial,
        outputs: Sequence[TransferOutput],
    ) -> TransferResult:
        self._require_outputs(outputs)
        for o in outputs:
            if not self.validate_address(o.to):
                raise VeloValidationError(f"Invalid Bitcoin address: {o.to}", field="to")

        wif = signing_material.secret.strip()
        derived = address_for_wif(wif, self.network)
        if derived != from_address:
            raise VeloValidationError("Signing key does not match source address", field="from_address")

        # A fee below dust cannot be an output; leave it for a later sweep
        sendable: List[TransferOutput] = []
        skipped: List[TransferOutput] = []
        for o in outputs:
            sats = to_base_units(o.amount, 8)
            if o.kind == OutputKind.FEE and sats < BitcoinUnits.DUST_THRESHOLD:
                logger.warning(f"Bitcoin fee output of {sats} sats is below dust; not included")
                skipped.append(o)
            else:
                sendable.append(o)
        if not sendable:
            raise VeloValidationError("No output above the dust threshold", field="amount")

        utxos = await self._client.get_utxos(from_address)
        if not utxos:
            raise InsufficientFundsError(
                "No UTXOs found for sender address",
                available="0",
                token="BTC",
                chain=self.chain.value,
            )

        plan = plan_transaction(
            utxos,
            [(o.to, to_base_units(o.amount, 8)) for o in sendable],
            self._fee_rate,
            change_address=from_address,
        )
        raw_hex, txid = sign_p2pkh(plan, wif, self.network)
        logger.info(
            f"Bitcoin tx built: {len(plan.inputs)} inputs, {len(plan.outputs)} outputs, "
            f"fee {plan.fee} sats, ~{plan.size_bytes} bytes"
        )

        broadcast_id = await self._client.broadcast(raw_hex)
        tx_hash = broadcast_id or txid
        logger.info(f"Bitcoin tx broadcast: {tx_hash}")

        results: List[OutputResult] = []
        for o in outputs:
            if o in skipped:
                results.append(OutputResult(o, OutputStatus.SKIPPED, error="below dust threshold"))
            else:
                results.append(OutputResult(o, OutputStatus.SENT_UNCONFIRMED, tx_hash=tx_hash))
        return TransferResult(tx_hash=tx_hash, outputs=results)

    async def transfer_batch(
        self,
        from_address: str,
        signing_material: SigningMaterial,
        outputs: Sequence[TransferOutput],
    ) -> List[TransferResult]:
        """One transaction for the whole batch; it lands or fails as a unit."""
        try:
            combined = await self.transfer(from_address, signing_material, outputs)
        except (InsufficientFundsError, VeloValidationError):
            raise
        except (SubmissionFailedError, ProviderUnavailableError) as e:
            logger.error(f"Bitcoin batch failed: {e.message}")
            return [TransferResult.uniform(None, [o], OutputStatus.FAILED, e.message) for o in outputs]
        return [TransferResult(tx_hash=combined.tx_hash, outputs=[r]) for r in combined.outputs]

    async def close(self) -> None:
        await self._client.close()
