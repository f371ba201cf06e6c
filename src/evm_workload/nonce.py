import asyncio
import logging
from dataclasses import dataclass, field

from evm_workload.chain import ChainClient

log = logging.getLogger("evm_workload.nonce")


@dataclass
class NonceState:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    next_nonce: int | None = None
    live: set[int] = field(default_factory=set)  # handed out, not settled yet


class NonceAllocator:
    """Per-sender nonce counters.

    Each sender gets its own lock, so allocation for one sender is serialized
    while distinct senders never wait on each other. A sender's counter is
    seeded from the chain on first use.

    Nonces stay live from allocation until the owner settles or releases them.
    A resync never moves the counter to or below a live nonce, so a value still
    held by an in-flight send is never handed out twice.
    """

    def __init__(self, client: ChainClient):
        self.client = client
        self._states: dict[str, NonceState] = {}

    def _state_for(self, addr: str) -> NonceState:
        st = self._states.get(addr)
        if st is None:
            log.debug("New nonce state for %s", addr)
            st = NonceState()
            self._states[addr] = st
        return st

    async def _ensure_seeded(self, addr: str, st: NonceState) -> None:
        # caller holds st.lock
        if st.next_nonce is None:
            st.next_nonce = await self.client.get_nonce(addr)
            log.debug("Seeded nonce for %s from chain: %s", addr, st.next_nonce)

    async def allocate(self, addr: str) -> int:
        st = self._state_for(addr)
        async with st.lock:
            await self._ensure_seeded(addr, st)
            n = st.next_nonce
            st.next_nonce += 1
            st.live.add(n)
            return n

    async def reserve(self, addr: str, count: int) -> int:
        """Reserve ``count`` consecutive nonces and return the first one."""
        if count < 0:
            raise ValueError("count must be >= 0")
        st = self._state_for(addr)
        async with st.lock:
            await self._ensure_seeded(addr, st)
            start = st.next_nonce
            st.next_nonce += count
            st.live.update(range(start, start + count))
            return start

    async def release(self, addr: str, nonce: int) -> bool:
        """Roll back a nonce that never reached the network.

        Only the most recently allocated nonce can be released, anything else
        would leave a gap.
        """
        st = self._state_for(addr)
        async with st.lock:
            st.live.discard(nonce)
            if st.next_nonce == nonce + 1:
                st.next_nonce = nonce
                log.debug(f"Released nonce {nonce} for {addr} (never broadcast)")
                return True
            log.warning(f"Cannot release nonce {nonce} for {addr} - next_nonce is {st.next_nonce} (gap would be created)")
            return False

    def settle(self, addr: str, *nonces: int) -> None:
        """Mark nonces as no longer held (confirmed, failed or abandoned)."""
        st = self._states.get(addr)
        if st is not None:
            st.live.difference_update(nonces)

    async def resync(self, addr: str, chain_count: int) -> None:
        """Move the counter to the chain's transaction count, staying above live nonces."""
        st = self._state_for(addr)
        async with st.lock:
            old = st.next_nonce
            new = chain_count
            if st.live and max(st.live) >= new:
                new = max(st.live) + 1
                log.warning(f"Chain count {chain_count} for {addr} is below live nonce {new - 1}, keeping {new}")
            st.next_nonce = new
        log.info(f"Resynced nonce for {addr}: {old} -> {new}")

    async def resync_from_chain(self, addr: str) -> int:
        """Resync from ``get_nonce`` and return the counter's new value."""
        count = await self.client.get_nonce(addr)
        await self.resync(addr, count)
        return self._states[addr].next_nonce

    def peek(self, addr: str) -> int | None:
        st = self._states.get(addr)
        return st.next_nonce if st else None
