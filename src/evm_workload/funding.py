import asyncio
import logging
import random
from collections import Counter
from decimal import Decimal
from typing import Any, Mapping

from eth_utils import to_wei

import evm_workload.constants as C
from evm_workload.accounts import generate_accounts
from evm_workload.constants import LoopState
from evm_workload.dispatch import Dispatcher
from evm_workload.models import Account, SendRequest
from evm_workload.pool import Pool, pick_peer
from evm_workload.retry import RetryPolicy
from evm_workload.store import WalletStore

log = logging.getLogger("evm_workload.funding")


def _ether_range(section: Mapping[str, Any], default: str) -> tuple[int, int]:
    lo = to_wei(Decimal(str(section.get("amount_min", default))), "ether")
    hi = to_wei(Decimal(str(section.get("amount_max", section.get("amount_min", default)))), "ether")
    if hi < lo:
        raise ValueError(f"amount_max {hi} < amount_min {lo}")
    return lo, hi


class FundingLoop:
    """Generate wallets, fund them from the source account, then keep them trading.

    ``start()`` hands back the task running the loop; ``stop()`` is cooperative
    and is honoured between wallets, so in-flight sends are left to finish.
    """

    def __init__(
        self,
        dispatcher: Dispatcher,
        source: Account,
        pool: Pool | None = None,
        *,
        store: WalletStore | None = None,
        funding_dispatcher: Dispatcher | None = None,
        target_size: int = 30_000_000,
        generation_batch: int = 50,
        persist_every: int = 1000,
        funding_threshold: int = 1000,
        funding_amount: tuple[int, int] = (10**16, 10**16),
        funding_gas_price: int = C.FUNDING_GAS_PRICE,
        funding_max_confirmations: int = C.FUNDING_MAX_CONFIRMATIONS,
        transfer_amount: tuple[int, int] = (10**14, 10**14),
        tps: tuple[int, int] = (1, 100),
        round_pause: float = C.ROUND_PAUSE,
        cooldown: float = C.LOOP_COOLDOWN,
        rng: random.Random | None = None,
    ):
        if tps[0] <= 0 or tps[1] < tps[0]:
            raise ValueError(f"bad TPS range {tps}")
        self.dispatcher = dispatcher
        self.funding_dispatcher = funding_dispatcher or dispatcher
        self.source = source
        self.pool = pool if pool is not None else Pool()
        self.store = store
        self.target_size = target_size
        self.generation_batch = generation_batch
        self.persist_every = persist_every
        self.funding_threshold = funding_threshold
        self.funding_amount = funding_amount
        self.funding_gas_price = funding_gas_price
        self.funding_max_confirmations = funding_max_confirmations
        self.transfer_amount = transfer_amount
        self.tps_min, self.tps_max = tps
        self.round_pause = round_pause
        self.cooldown = cooldown
        self._rng = rng or random.Random()

        self.state = LoopState.IDLE
        self.task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._unsaved: list[Account] = []
        self.rounds = 0
        self.stats: Counter[str] = Counter()

    @classmethod
    def from_config(
        cls,
        cfg: Mapping[str, Any],
        dispatcher: Dispatcher,
        source: Account,
        pool: Pool | None = None,
        *,
        store: WalletStore | None = None,
    ) -> "FundingLoop":
        pool_cfg, fund_cfg = cfg.get("pool", {}), cfg.get("funding", {})
        redis_cfg, loop_cfg = cfg.get("redistribution", {}), cfg.get("loop", {})
        funding_retry = RetryPolicy.from_config(
            cfg.get("retry", {}), max_retries=int(fund_cfg.get("max_retries", C.DEFAULT_MAX_RETRIES))
        )
        return cls(
            dispatcher,
            source,
            pool,
            store=store,
            funding_dispatcher=dispatcher.with_retry(funding_retry),
            target_size=int(pool_cfg.get("target_size", 30_000_000)),
            generation_batch=int(pool_cfg.get("generation_batch", 50)),
            persist_every=int(pool_cfg.get("persist_every", 1000)),
            funding_threshold=int(pool_cfg.get("funding_threshold", 1000)),
            funding_amount=_ether_range(fund_cfg, "0.01"),
            funding_gas_price=int(cfg.get("gas", {}).get("funding_gwei", 2000)) * C.GWEI,
            funding_max_confirmations=int(fund_cfg.get("max_confirmations", C.FUNDING_MAX_CONFIRMATIONS)),
            transfer_amount=_ether_range(redis_cfg, "0.0001"),
            tps=(int(redis_cfg.get("tps_min", 1)), int(redis_cfg.get("tps_max", 100))),
            round_pause=float(loop_cfg.get("round_pause", C.ROUND_PAUSE)),
            cooldown=float(loop_cfg.get("cooldown", C.LOOP_COOLDOWN)),
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            raise RuntimeError("Funding loop already running")
        self._stop = asyncio.Event()
        self.task = asyncio.create_task(self.run(), name="funding_loop")
        return self.task

    def stop(self) -> None:
        if not self._stop.is_set():
            log.info("Stopping continuous operation...")
        self._stop.set()

    async def wait(self) -> None:
        if self.task is not None:
            await self.task

    def status(self) -> dict[str, Any]:
        failed = None
        if self.task is not None and self.task.done() and not self.task.cancelled():
            exc = self.task.exception()
            failed = repr(exc) if exc else None
        return {
            "state": self.state.value,
            "running": self.running,
            "error": failed,
            "pool_size": len(self.pool),
            "funded": self.pool.funded_count,
            "rounds": self.rounds,
            "stats": dict(self.stats),
            "dispatch": dict(self.dispatcher.stats),
        }

    def _set_state(self, new: LoopState) -> None:
        if new is not self.state:
            log.info(f"Loop state {self.state} -> {new}")
            self.state = new

    async def _pause(self, seconds: float) -> None:
        """Sleep, waking early if stop is requested."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            async with asyncio.timeout(seconds):
                await self._stop.wait()
        except TimeoutError:
            pass

    def _draw(self, bounds: tuple[int, int]) -> int:
        lo, hi = bounds
        return lo if lo == hi else self._rng.randint(lo, hi)

    # ------------------------------------------------------------------ #
    # Phases
    # ------------------------------------------------------------------ #

    def _persist(self) -> None:
        if self.store is None or not self._unsaved:
            self._unsaved.clear()
            return
        self.store.save_wallets(self._unsaved)
        log.info(f"Stored {len(self._unsaved)} wallets ({len(self.pool)} total)")
        self._unsaved.clear()

    def add_accounts(self, count: int) -> list[Account]:
        """Generate ``count`` accounts into the pool and persist them."""
        added = self.pool.extend(generate_accounts(count))
        self._unsaved.extend(added)
        self._persist()
        return added

    async def generate(self, until: int) -> None:
        self._set_state(LoopState.GENERATING)
        until = min(until, self.target_size)
        while len(self.pool) < until and not self._stop.is_set():
            n = min(self.generation_batch, until - len(self.pool))
            self._unsaved.extend(self.pool.extend(generate_accounts(n)))
            log.info(f"Generated {len(self.pool)} wallets out of {self.target_size}")
            if len(self._unsaved) >= self.persist_every:
                self._persist()
            await asyncio.sleep(0)
        self._persist()

    async def fund_unfunded(self) -> int:
        """Fund every pool member that has not been funded yet. Returns how many succeeded."""
        todo = self.pool.unfunded()
        if not todo:
            return 0
        self._set_state(LoopState.INITIAL_FUNDING)
        targets = [(a.address, self._draw(self.funding_amount)) for a in todo]
        log.info(f"Funding {len(targets)} wallets from {self.source.address}")

        # stop is checked per batch, a started batch keeps its nonce range gap free
        results = await self.funding_dispatcher.transfer(
            self.source,
            targets,
            gas_price=self.funding_gas_price,
            max_confirmations=self.funding_max_confirmations,
            stop=self._stop,
        )

        funded = []
        for r in results:
            if r.error is not None:
                self.stats["funding_failed"] += len(r.batch)
                continue
            for o in r.outcomes:
                if o.ok:
                    funded.append(o.request.recipient)
                else:
                    self.stats["funding_failed"] += 1
                    log.warning(f"Skipping wallet {o.request.recipient}, funding failed: {o.error}")

        self.pool.mark_funded(funded)
        if self.store is not None and funded:
            self.store.mark_funded(funded)
        self.stats["funded"] += len(funded)
        log.info(f"Funded {len(funded)}/{len(targets)} wallets")
        return len(funded)

    async def _transfer_one(self, sender: Account, recipient: str, value: int) -> None:
        try:
            outcome = await self.dispatcher.send(SendRequest(sender=sender, recipient=recipient, value=value))
        except Exception:
            self.stats["transfers_failed"] += 1
            log.exception(f"Transfer from {sender.address} to {recipient} crashed, skipping")
            return
        if outcome.ok:
            self.stats["transfers"] += 1
        else:
            self.stats["transfers_failed"] += 1
            log.warning(f"Transfer from {sender.address} to {recipient} failed, skipping: {outcome.error}")

    async def redistribute_round(self) -> int:
        """Every funded wallet pays a random other one, paced to a TPS drawn for this round.

        Returns the number of transfers started.
        """
        members = self.pool.funded()
        if len(members) < 2:
            log.info(f"Only {len(members)} funded wallets, nothing to redistribute")
            return 0

        self._set_state(LoopState.REDISTRIBUTING)
        tps = self._rng.randint(self.tps_min, self.tps_max)
        interval = 1.0 / tps
        self.rounds += 1
        log.info(f"Round {self.rounds}: {len(members)} wallets at {tps} TPS")

        started = 0
        async with asyncio.TaskGroup() as tg:
            for i, sender in enumerate(members):
                if self._stop.is_set():
                    log.info(f"Stop requested mid-round after {i}/{len(members)} wallets")
                    break
                recipient = pick_peer(members, i, self._rng)
                tg.create_task(self._transfer_one(sender, recipient.address, self._draw(self.transfer_amount)))
                started += 1
                if started % 1000 == 0:
                    log.info(f"Processed {started} transactions at {tps} TPS")
                await self._pause(interval)
            # leaving the group drains in-flight transfers

        log.info(f"Completed round {self.rounds} ({started} transfers)")
        return started

    async def _cycle(self) -> None:
        threshold = min(self.funding_threshold, self.target_size)
        if len(self.pool) < threshold:
            await self.generate(threshold)
        elif len(self.pool) < self.target_size:
            await self.generate(len(self.pool) + self.generation_batch)
        if self._stop.is_set():
            return

        await self.fund_unfunded()
        if self._stop.is_set():
            return

        await self.redistribute_round()
        if self._stop.is_set():
            return
        await self._pause(self.round_pause)

    async def run(self) -> None:
        log.info(f"Starting continuous operation with {len(self.pool)} wallets in pool")
        try:
            while not self._stop.is_set():
                try:
                    await self._cycle()
                except Exception:
                    self.stats["loop_errors"] += 1
                    log.exception(f"Error in continuous transaction processing, resuming in {self.cooldown}s")
                    await self._pause(self.cooldown)
        finally:
            self._persist()
            self._set_state(LoopState.STOPPED)
            log.info("Continuous operation stopped")
