"""Polls custodial addresses and notifies users of incoming deposits."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

from .chains import ChainTag, string_to_chain
from .exceptions import VeloException
from .executors.registry import ExecutorRegistry
from .notifications import NotificationEmitter, NotificationType
from .persistence import RecordStore
from .records import USER_ADDRESSES, UserAddress

logger = logging.getLogger(__name__)

# Token balances are not tracked by the native-balance poll
SKIPPED_CHAINS = frozenset({ChainTag.USDT_ERC20})


def _last_known(value: Optional[str]) -> Decimal:
    try:
        return Decimal(value) if value not in (None, "") else Decimal("0")
    except InvalidOperation:
        return Decimal("0")


class DepositWatcher:
    """Compares on-chain balances with ``last_known_balance`` on a fixed interval.

    The first scan runs as soon as the watcher starts.
    """

    def __init__(
        self,
        store: RecordStore,
        registry: ExecutorRegistry,
        notifier: Optional[NotificationEmitter] = None,
        interval_seconds: float = 300.0,
    ):
        self._store = store
        self._registry = registry
        self._notifier = notifier or NotificationEmitter()
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task[None]] = None
        self.last_run_at: Optional[datetime] = None
        self.scans = 0
        self.deposits_detected = 0
        self.errors = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="deposit-watcher")
        logger.info(f"Deposit watcher started (every {self.interval_seconds}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Deposit watcher stopped")

    def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "last_run_at": self.last_run_at.isoformat() if self.last_run_at else None,
            "scans": self.scans,
            "deposits_detected": self.deposits_detected,
            "errors": self.errors,
        }

    async def _run(self) -> None:
        while True:
            try:
                await self.scan_once()
            except VeloException as e:
                logger.error(f"Deposit scan failed: {e.message}")
            except Exception:
                logger.exception("Deposit scan crashed")
            await asyncio.sleep(self.interval_seconds)

    async def scan_once(self) -> int:
        """Check every stored address once. Returns the number of deposits found."""
        rows = await self._store.find(USER_ADDRESSES)
        found = 0
        for row in rows:
            address = UserAddress.from_dict(row)
            try:
                if await self._check_address(address):
                    found += 1
            except VeloException as e:
                self.errors += 1
                logger.warning(f"Skipping {address.chain} address {address.address}: {e.message}")
        self.scans += 1
        self.deposits_detected += found
        self.last_run_at = datetime.now(timezone.utc)
        logger.debug(f"Deposit scan checked {len(rows)} addresses, {found} deposits")
        return found

    async def _check_address(self, address: UserAddress) -> bool:
        chain = string_to_chain(address.chain)
        if chain in SKIPPED_CHAINS:
            return False
        executor = self._registry.get(chain, address.network)

        balance = await executor.get_balance(address.address)
        previous = _last_known(address.last_known_balance)

        await self._store.update(
            USER_ADDRESSES, {"id": address.id}, {"last_known_balance": str(balance)}
        )
        if balance <= previous:
            return False

        amount = balance - previous
        logger.info(f"Deposit of {amount} {executor.token.symbol} to {address.address}")
        self._notifier.emit(address.user_id, NotificationType.DEPOSIT, {
            "address": address.address,
            "chain": chain.value,
            "network": address.network,
            "amount": str(amount),
            "currency": executor.token.symbol,
            "balance": str(balance),
        })
        return True
