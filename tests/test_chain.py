import json
from unittest import IsolatedAsyncioTestCase, TestCase

import httpx

from evm_workload.chain import JsonRpcClient
from evm_workload.errors import (
    AlreadyKnownError,
    ChainError,
    ConfirmationTimeout,
    InsufficientFundsError,
    MalformedError,
    NonceConflictError,
    RpcError,
    SignatureError,
    TransactionReverted,
    TransientNetworkError,
    UnderpricedError,
    error_from_rpc,
)

URL = "http://node.test:8545"
ADDR = "0x" + "ab" * 20


def rpc_client(handler, **kwargs) -> JsonRpcClient:
    """JsonRpcClient whose requests go to ``handler(method, params)``.

    The handler returns a result, or an ``httpx.Response`` to send as is.
    """
    calls = []

    def transport(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        calls.append((body["method"], body["params"]))
        out = handler(body["method"], body["params"])
        if isinstance(out, httpx.Response):
            return out
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], **out})

    client = JsonRpcClient(URL, http=httpx.AsyncClient(transport=httpx.MockTransport(transport)), **kwargs)
    client.calls = calls
    return client


def ok(result):
    return {"result": result}


class ErrorMappingTest(TestCase):
    def test_messages_from_different_nodes(self):
        cases = {
            "already known": AlreadyKnownError,
            "Known transaction: 0xabc": AlreadyKnownError,
            "replacement transaction underpriced": UnderpricedError,
            "transaction underpriced": UnderpricedError,
            "max fee per gas less than block base fee": UnderpricedError,
            "nonce too low": NonceConflictError,
            "Nonce too high": NonceConflictError,
            "insufficient funds for gas * price + value": InsufficientFundsError,
            "invalid sender": SignatureError,
            "rlp: expected input list": MalformedError,
            "invalid argument 0: hex string has odd length": MalformedError,
            "execution reverted": RpcError,
        }
        for message, cls in cases.items():
            err = error_from_rpc({"code": -32000, "message": message})
            self.assertIs(type(err), cls, message)
            self.assertEqual(err.code, -32000)

    def test_plain_string_error(self):
        err = error_from_rpc("nonce too low")
        self.assertIsInstance(err, NonceConflictError)
        self.assertIsNone(err.code)


class JsonRpcClientTest(IsolatedAsyncioTestCase):
    async def test_hex_quantities(self):
        results = {"eth_chainId": "0x539", "eth_gasPrice": "0x3b9aca00", "eth_getTransactionCount": "0x1f",
                   "eth_getBalance": "0xde0b6b3a7640000", "eth_blockNumber": "0x10"}
        async with rpc_client(lambda m, p: ok(results[m]), nonce_block="pending") as client:
            self.assertEqual(await client.chain_id(), 1337)
            self.assertEqual(await client.get_gas_price(), 10**9)
            self.assertEqual(await client.get_nonce(ADDR), 31)
            self.assertEqual(await client.get_balance(ADDR), 10**18)
            self.assertEqual(await client.block_number(), 16)
            self.assertIn(("eth_getTransactionCount", [ADDR, "pending"]), client.calls)

    async def test_submit_returns_hash(self):
        async with rpc_client(lambda m, p: ok("0x" + "cd" * 32)) as client:
            self.assertEqual(await client.submit("0xf86c"), "0x" + "cd" * 32)
            self.assertEqual(client.calls, [("eth_sendRawTransaction", ["0xf86c"])])

    async def test_rpc_error_is_classified(self):
        handler = lambda m, p: {"error": {"code": -32000, "message": "transaction underpriced"}}
        async with rpc_client(handler) as client:
            with self.assertRaises(UnderpricedError):
                await client.submit("0x00")

    async def test_server_errors_are_transient(self):
        for status in (429, 502, 503):
            async with rpc_client(lambda m, p: httpx.Response(status)) as client:
                with self.assertRaises(TransientNetworkError):
                    await client.get_gas_price()

    async def test_connection_failure_is_transient(self):
        def handler(m, p):
            raise httpx.ConnectError("connection refused")

        async with rpc_client(handler) as client:
            with self.assertRaises(TransientNetworkError):
                await client.chain_id()

    async def test_bad_body_is_chain_error(self):
        async with rpc_client(lambda m, p: httpx.Response(200, text="<html>")) as client:
            with self.assertRaises(ChainError):
                await client.chain_id()


class WaitConfirmedTest(IsolatedAsyncioTestCase):
    TX = "0x" + "01" * 32

    async def test_waits_for_depth(self):
        state = {"head": 10, "receipt_polls": 0}

        def handler(m, p):
            if m == "eth_getTransactionReceipt":
                state["receipt_polls"] += 1
                if state["receipt_polls"] == 1:
                    return ok(None)  # still pending
                return ok({"transactionHash": p[0], "blockNumber": "0xa", "status": "0x1"})
            state["head"] += 1
            return ok(hex(state["head"] - 1))

        async with rpc_client(handler, poll_interval=0) as client:
            receipt = await client.wait_confirmed(self.TX, 3, timeout=5)

        self.assertEqual(receipt["transactionHash"], self.TX)
        # head reported as 10, 11, 12: depth 1, 2, 3
        self.assertEqual(state["head"], 13)

    async def test_latest_block_counts_as_one(self):
        def handler(m, p):
            if m == "eth_getTransactionReceipt":
                return ok({"blockNumber": "0x5", "status": "0x1"})
            return ok("0x5")

        async with rpc_client(handler, poll_interval=0) as client:
            self.assertEqual((await client.wait_confirmed(self.TX, 1))["blockNumber"], "0x5")

    async def test_reverted(self):
        handler = lambda m, p: ok({"blockNumber": "0x5", "status": "0x0"})
        async with rpc_client(handler, poll_interval=0) as client:
            with self.assertRaises(TransactionReverted):
                await client.wait_confirmed(self.TX)

    async def test_timeout(self):
        async with rpc_client(lambda m, p: ok(None), poll_interval=0.01) as client:
            with self.assertRaises(ConfirmationTimeout) as cm:
                await client.wait_confirmed(self.TX, 2, timeout=0.05)
        self.assertEqual(cm.exception.tx_hash, self.TX)
        self.assertEqual(cm.exception.confirmations, 2)

    async def test_transient_poll_errors_are_retried(self):
        polls = []

        def handler(m, p):
            if m == "eth_getTransactionReceipt":
                polls.append(m)
                if len(polls) < 3:
                    return httpx.Response(503)
                return ok({"blockNumber": "0x1", "status": "0x1"})
            return ok("0x1")

        async with rpc_client(handler, poll_interval=0) as client:
            await client.wait_confirmed(self.TX, timeout=5)
        self.assertEqual(len(polls), 3)


class ProbeTest(IsolatedAsyncioTestCase):
    async def test_probe_retries_until_ready(self):
        attempts = []

        def handler(m, p):
            attempts.append(m)
            if len(attempts) < 3:
                return httpx.Response(503)
            return ok("0x2a")

        async with rpc_client(handler) as client:
            self.assertEqual(await client.probe(max_retries=5, retry_delay=0), 42)
        self.assertEqual(len(attempts), 3)

    async def test_probe_gives_up(self):
        async with rpc_client(lambda m, p: httpx.Response(503)) as client:
            with self.assertRaises(TransientNetworkError):
                await client.probe(max_retries=2, retry_delay=0)
