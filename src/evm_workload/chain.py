"""Chain client: the only component that talks to the node."""

import asyncio
import itertools
import logging
from typing import Any, Protocol

import httpx

import evm_workload.constants as C
from evm_workload.errors import (
    ChainError,
    ConfirmationTimeout,
    TransactionReverted,
    TransientNetworkError,
    error_from_rpc,
)

log = logging.getLogger("evm_workload.chain")


class ChainClient(Protocol):
    async def get_nonce(self, address: str) -> int: ...
    async def get_gas_price(self) -> int: ...
    async def submit(self, signed_tx: str) -> str: ...
    async def wait_confirmed(self, tx_hash: str, confirmations: int = 1, *, timeout: float = C.CONFIRM_TIMEOUT) -> dict: ...


def _quantity(value: str | int) -> int:
    return value if isinstance(value, int) else int(value, 16)


class JsonRpcClient:
    """Async JSON-RPC 2.0 client over httpx.

    Transport problems surface as TransientNetworkError, node-side rejections
    as the RpcError subclass matching the message.
    """

    def __init__(
        self,
        url: str,
        *,
        timeout: float = C.RPC_TIMEOUT,
        nonce_block: str = "latest",
        poll_interval: float = C.CONFIRM_POLL_INTERVAL,
        http: httpx.AsyncClient | None = None,
    ):
        self.url = url
        self.nonce_block = nonce_block
        self.poll_interval = poll_interval
        self._http = http or httpx.AsyncClient(timeout=timeout)
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "JsonRpcClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def call(self, method: str, params: list | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            r = await self._http.post(self.url, json=payload)
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method}: {e.__class__.__name__}: {e}") from e

        if r.status_code == 429 or r.status_code >= 500:
            raise TransientNetworkError(f"{method}: HTTP {r.status_code}")
        try:
            r.raise_for_status()
            body = r.json()
        except (httpx.HTTPStatusError, ValueError) as e:
            raise ChainError(f"{method}: bad response: {e}") from e

        if body.get("error") is not None:
            raise error_from_rpc(body["error"])
        return body.get("result")

    async def chain_id(self) -> int:
        return _quantity(await self.call("eth_chainId"))

    async def block_number(self) -> int:
        return _quantity(await self.call("eth_blockNumber"))

    async def get_nonce(self, address: str) -> int:
        return _quantity(await self.call("eth_getTransactionCount", [address, self.nonce_block]))

    async def get_gas_price(self) -> int:
        return _quantity(await self.call("eth_gasPrice"))

    async def get_balance(self, address: str) -> int:
        return _quantity(await self.call("eth_getBalance", [address, "latest"]))

    async def submit(self, signed_tx: str) -> str:
        return await self.call("eth_sendRawTransaction", [signed_tx])

    async def get_receipt(self, tx_hash: str) -> dict | None:
        return await self.call("eth_getTransactionReceipt", [tx_hash])

    async def wait_confirmed(self, tx_hash: str, confirmations: int = 1, *, timeout: float = C.CONFIRM_TIMEOUT) -> dict:
        """Poll until the receipt is ``confirmations`` blocks deep.

        A receipt in the latest block counts as one confirmation. Transient
        errors while polling are retried until the deadline.
        """
        try:
            async with asyncio.timeout(timeout):
                while True:
                    try:
                        receipt = await self.get_receipt(tx_hash)
                        if receipt and receipt.get("blockNumber") is not None:
                            if _quantity(receipt.get("status", "0x1")) == 0:
                                raise TransactionReverted(tx_hash, receipt)
                            depth = await self.block_number() - _quantity(receipt["blockNumber"]) + 1
                            if depth >= confirmations:
                                return receipt
                    except TransientNetworkError as e:
                        log.debug("Receipt poll for %s failed: %s", tx_hash, e)
                    await asyncio.sleep(self.poll_interval)
        except TimeoutError:
            raise ConfirmationTimeout(tx_hash, confirmations, timeout) from None

    async def probe(self, max_retries: int = 30, retry_delay: float = 2.0) -> int:
        """Wait for the endpoint to answer eth_chainId, returning the chain id."""
        for attempt in range(1, max_retries + 1):
            try:
                cid = await self.chain_id()
                log.info(f"RPC endpoint responding (attempt {attempt}/{max_retries}), chain id {cid}")
                return cid
            except ChainError as e:
                if attempt < max_retries:
                    log.info(f"RPC not ready yet (attempt {attempt}/{max_retries}): {e} - retrying in {retry_delay}s...")
                    await asyncio.sleep(retry_delay)
                else:
                    log.error(f"RPC failed after {max_retries} attempts")
                    raise
