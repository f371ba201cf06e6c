import asyncio
import copy
import logging
from collections import Counter
from typing import Iterable, Sequence

import evm_workload.constants as C
from evm_workload.accounts import SignedTransfer, sign_transfer
from evm_workload.chain import ChainClient
from evm_workload.constants import DispatchPolicy, Disposition
from evm_workload.errors import (
    AlreadyKnownError,
    BatchError,
    ChainError,
    NonceConflictError,
    RpcError,
    TransactionReverted,
    UnderpricedError,
)
from evm_workload.gas import GasPricer
from evm_workload.models import Account, Batch, BatchResult, DispatchOutcome, SendRequest
from evm_workload.nonce import NonceAllocator
from evm_workload.retry import RetryPolicy

log = logging.getLogger("evm_workload.dispatch")


def prepare_batches(requests: Sequence[SendRequest], start_nonce: int, batch_size: int = C.DEFAULT_BATCH_SIZE) -> list[Batch]:
    """Split ``requests`` into batches of ``batch_size``, numbering nonces from ``start_nonce``.

    Request objects are kept (their ``nonce`` is assigned in place), so the
    concatenated batches reproduce the input order.
    """
    if batch_size <= 0:
        raise ValueError("batch_size must be positive")
    batches: list[Batch] = []
    for offset in range(0, len(requests), batch_size):
        chunk = list(requests[offset:offset + batch_size])
        first = start_nonce + offset
        for i, req in enumerate(chunk):
            req.nonce = first + i
        batches.append(Batch(requests=chunk, start_nonce=first))
    return batches


class Dispatcher:
    """Sends transfers with retries under one process-wide concurrency limit.

    Every attempt (submit plus confirmation wait) holds a slot of the limiter,
    whichever batch or sender it belongs to. Backoff sleeps do not.
    """

    def __init__(
        self,
        client: ChainClient,
        nonces: NonceAllocator,
        gas: GasPricer,
        retry: RetryPolicy,
        *,
        chain_id: int,
        concurrency: int = C.DEFAULT_CONCURRENCY,
        batch_size: int = C.DEFAULT_BATCH_SIZE,
        inter_batch_pause: float = C.INTER_BATCH_PAUSE,
        confirm_timeout: float = C.CONFIRM_TIMEOUT,
        landed_timeout: float = C.LANDED_CHECK_TIMEOUT,
        max_gas_price: int | None = None,
        policy: DispatchPolicy | str = DispatchPolicy.SEQUENTIAL,
    ):
        if concurrency <= 0:
            raise ValueError("concurrency must be positive")
        self.client = client
        self.nonces = nonces
        self.gas = gas
        self.retry = retry
        self.chain_id = chain_id
        self.concurrency = concurrency
        self.batch_size = batch_size
        self.inter_batch_pause = inter_batch_pause
        self.confirm_timeout = confirm_timeout
        self.landed_timeout = landed_timeout
        self.max_gas_price = max_gas_price
        self.policy = DispatchPolicy(policy)
        self._limiter = asyncio.Semaphore(concurrency)
        self.stats: Counter[str] = Counter()

    def with_retry(self, retry: RetryPolicy) -> "Dispatcher":
        """Same limiter, allocator and stats, different retry policy."""
        clone = copy.copy(self)
        clone.retry = retry
        return clone

    def _cap(self, price: int) -> int:
        if self.max_gas_price is not None and price > self.max_gas_price:
            return self.max_gas_price
        return price

    async def _submit(self, signed: SignedTransfer) -> str:
        try:
            return await self.client.submit(signed.raw)
        except AlreadyKnownError:
            # Resubmission of an identical tx after a timeout; it is in the pool already.
            log.debug("Already known, keeping local hash %s", signed.tx_hash)
            return signed.tx_hash

    async def _find_landed(self, hashes: Sequence[str]) -> tuple[str, dict, ChainError | None] | None:
        """Look for an earlier broadcast of the request that made it into a block.

        Returns ``(tx_hash, receipt, error)``; ``error`` is set when it reverted.
        """
        for tx_hash in dict.fromkeys(reversed(hashes)):
            try:
                receipt = await self.client.wait_confirmed(tx_hash, 1, timeout=self.landed_timeout)
            except TransactionReverted as e:
                return tx_hash, e.receipt, e
            except ChainError as e:
                log.debug("No receipt for earlier broadcast %s: %s", tx_hash, e)
                continue
            return tx_hash, receipt, None
        return None

    async def send(self, request: SendRequest) -> DispatchOutcome:
        """Send one logical transfer, retrying until it confirms or fails terminally.

        Never raises ChainError; the result carries the terminal error instead.
        """
        outcome = DispatchOutcome(request=request, nonce=request.nonce)
        try:
            return await self._send(request, outcome)
        finally:
            if outcome.nonce is not None:
                self.nonces.settle(request.sender_address, outcome.nonce)

    async def _send(self, request: SendRequest, outcome: DispatchOutcome) -> DispatchOutcome:
        addr = request.sender_address
        nonce = request.nonce
        gas_price = request.gas_price
        allocated = False  # nonce came from allocate() and may be released
        maybe_sent = False  # an attempt with this nonce may have reached the node
        sent_hashes: list[str] = []
        failures = 0
        attempt = 0

        while True:
            attempt += 1
            outcome.attempts = attempt
            try:
                if nonce is None:
                    nonce = await self.nonces.allocate(addr)
                    allocated = True
                if gas_price is None:
                    gas_price = await self.gas.current_price()
                gas_price = self._cap(gas_price)
                outcome.nonce, outcome.gas_price = nonce, gas_price

                signed = sign_transfer(
                    request.sender,
                    request.recipient,
                    request.value,
                    nonce=nonce,
                    gas_price=gas_price,
                    chain_id=self.chain_id,
                )
                confirmations = min(attempt, request.max_confirmations)
                log.debug(
                    "send attempt=%s from=%s to=%s nonce=%s gas_price=%s confirmations=%s",
                    attempt, addr, request.recipient, nonce, gas_price, confirmations,
                )
                async with self._limiter:
                    try:
                        tx_hash = await self._submit(signed)
                    except RpcError:
                        raise  # rejected by the node
                    except ChainError:
                        # a timed out submit may still have been accepted
                        maybe_sent = True
                        sent_hashes.append(signed.tx_hash)
                        raise
                    maybe_sent = True
                    sent_hashes.append(tx_hash)
                    outcome.tx_hash = tx_hash
                    self.stats["submitted"] += 1
                    receipt = await self.client.wait_confirmed(tx_hash, confirmations, timeout=self.confirm_timeout)

                outcome.receipt = receipt
                self.stats["confirmed"] += 1
                log.info(f"Confirmed {tx_hash} from {addr} nonce={nonce} attempts={attempt}")
                return outcome

            except ChainError as e:
                if isinstance(e, NonceConflictError) and maybe_sent:
                    # the nonce may be taken by our own earlier broadcast
                    found = await self._find_landed(sent_hashes)
                    if found is not None:
                        outcome.tx_hash, outcome.receipt, outcome.error = found
                        if outcome.error is None:
                            self.stats["confirmed"] += 1
                            log.info(f"Earlier broadcast {outcome.tx_hash} from {addr} nonce={nonce} landed")
                        else:
                            self.stats["failed"] += 1
                            log.warning(f"Earlier broadcast {outcome.tx_hash} from {addr} nonce={nonce} reverted")
                        return outcome

                if self.retry.is_retryable(e):
                    failures += 1
                if self.retry.classify(e, failures) is Disposition.TERMINAL:
                    if allocated and not maybe_sent:
                        await self.nonces.release(addr, nonce)
                    outcome.error = e
                    self.stats["failed"] += 1
                    log.warning(
                        f"Send failed for good from {addr} to {request.recipient} nonce={nonce} "
                        f"after {attempt} attempt(s): {type(e).__name__}: {e}"
                    )
                    return outcome

                self.stats["retries"] += 1
                log.warning(f"Retry {failures}/{self.retry.max_retries} from {addr} nonce={nonce}: {type(e).__name__}: {e}")
                if isinstance(e, UnderpricedError) and gas_price is not None:
                    gas_price = self.gas.escalate(gas_price, attempt)
                elif isinstance(e, NonceConflictError):
                    if allocated and not maybe_sent:
                        # never broadcast, swap it for a fresh nonce after the resync
                        self.nonces.settle(addr, nonce)
                        nonce, allocated = None, False
                    try:
                        await self.nonces.resync_from_chain(addr)
                    except ChainError as resync_err:
                        log.warning(f"Nonce resync for {addr} failed: {resync_err}")

                await asyncio.sleep(self.retry.next_delay(attempt))

    def _check_batch(self, batch: Batch) -> None:
        if not batch.requests:
            raise BatchError("Empty batch")
        for expected, req in zip(batch.nonce_range, batch.requests):
            if req.nonce != expected:
                raise BatchError(f"Batch nonces not contiguous: expected {expected}, got {req.nonce}")

    async def dispatch_batch(self, batch: Batch) -> list[DispatchOutcome]:
        """Send every request of the batch concurrently and wait for all of them.

        Per-request failures are returned as outcomes. Only a malformed batch
        raises (BatchError).
        """
        self._check_batch(batch)
        rng = batch.nonce_range
        log.info(f"Dispatching batch of {len(batch)} (nonces {rng.start}..{rng.stop - 1})")

        results = await asyncio.gather(*(self.send(r) for r in batch.requests), return_exceptions=True)

        outcomes: list[DispatchOutcome] = []
        for req, res in zip(batch.requests, results):
            if isinstance(res, DispatchOutcome):
                outcomes.append(res)
            elif isinstance(res, Exception):
                log.error("Unexpected error sending nonce %s from %s", req.nonce, req.sender_address, exc_info=res)
                self.stats["failed"] += 1
                outcomes.append(DispatchOutcome(request=req, nonce=req.nonce, error=res, attempts=1))
            else:
                raise res

        ok = sum(1 for o in outcomes if o.ok)
        log.info(f"Batch completed: {ok} ok, {len(outcomes) - ok} failed (nonces {rng.start}..{rng.stop - 1})")
        if self.inter_batch_pause > 0:
            await asyncio.sleep(self.inter_batch_pause)
        return outcomes

    async def _run_batch(self, batch: Batch) -> BatchResult:
        try:
            return BatchResult(batch=batch, outcomes=await self.dispatch_batch(batch))
        except BatchError as e:
            log.error(f"Batch starting at nonce {batch.start_nonce} aborted: {e}")
            return BatchResult(batch=batch, error=e)

    async def dispatch_all(
        self,
        batches: Sequence[Batch],
        policy: DispatchPolicy | str | None = None,
        *,
        stop: asyncio.Event | None = None,
    ) -> list[BatchResult]:
        policy = DispatchPolicy(policy or self.policy)
        if stop is not None and stop.is_set():
            return []

        if policy is DispatchPolicy.BOUNDED_PARALLEL:
            log.info(f"Dispatching {len(batches)} batches in parallel (limit {self.concurrency})")
            return list(await asyncio.gather(*(self._run_batch(b) for b in batches)))

        results: list[BatchResult] = []
        for i, batch in enumerate(batches, 1):
            if stop is not None and stop.is_set():
                log.info(f"Stop requested, skipping remaining {len(batches) - i + 1} batches")
                break
            results.append(await self._run_batch(batch))
            log.info(f"Completed batch {i}/{len(batches)}")
        return results

    async def transfer(
        self,
        sender: Account,
        targets: Iterable[tuple[str, int]],
        *,
        gas_price: int | None = None,
        max_confirmations: int = 1,
        stop: asyncio.Event | None = None,
    ) -> list[BatchResult]:
        """Pay every ``(recipient, value)`` from ``sender`` using a reserved nonce range."""
        requests = [
            SendRequest(sender=sender, recipient=to, value=value, gas_price=gas_price, max_confirmations=max_confirmations)
            for to, value in targets
        ]
        if not requests:
            return []

        start = await self.nonces.reserve(sender.address, len(requests))
        log.info(f"Starting nonce: {start} for {len(requests)} transfers from {sender.address}")
        batches = prepare_batches(requests, start, self.batch_size)
        log.info(f"Prepared {len(batches)} batches of transactions")
        results = await self.dispatch_all(batches, stop=stop)
        # batches skipped on stop or rejected as malformed never settled theirs
        self.nonces.settle(sender.address, *range(start, start + len(requests)))

        sent = sum(len(r.batch) for r in results if r.error is None)
        failed = sum(r.failed for r in results)
        if sent < len(requests) or failed:
            # unused or failed nonces inside the reserved range leave gaps
            try:
                await self.nonces.resync_from_chain(sender.address)
            except ChainError as e:
                log.warning(f"Nonce resync for {sender.address} failed: {e}")
        return results
