import logging
from contextlib import asynccontextmanager
from typing import Any, Mapping

from fastapi import APIRouter, FastAPI, HTTPException
from pydantic import BaseModel, PositiveInt

import evm_workload.constants as C
from evm_workload.accounts import account_from_key
from evm_workload.chain import JsonRpcClient
from evm_workload.config import load_config, validate_config
from evm_workload.dispatch import Dispatcher
from evm_workload.funding import FundingLoop
from evm_workload.gas import GasPricer
from evm_workload.logging_config import setup_logging
from evm_workload.nonce import NonceAllocator
from evm_workload.pool import Pool
from evm_workload.retry import RetryPolicy
from evm_workload.store import WalletStore

setup_logging()
log = logging.getLogger("evm_workload.app")

cfg = load_config()


def build_workload(cfg: Mapping[str, Any], client: JsonRpcClient, chain_id: int) -> FundingLoop:
    """Wire allocator, pricer, retry policy, dispatcher, store and pool into a FundingLoop."""
    d, g = cfg["dispatch"], cfg["gas"]

    nonces = NonceAllocator(client)
    gas = GasPricer(
        client,
        premium_percent=int(g.get("premium_percent", C.DEFAULT_GAS_PREMIUM_PERCENT)),
        escalation_percent=int(g.get("escalation_percent", C.DEFAULT_GAS_ESCALATION_PERCENT)),
        fallback=int(g.get("fallback_gwei", 3)) * C.GWEI,
    )
    max_gas = d.get("max_gas_price_gwei")
    dispatcher = Dispatcher(
        client,
        nonces,
        gas,
        RetryPolicy.from_config(cfg["retry"]),
        chain_id=chain_id,
        concurrency=int(d.get("concurrency", C.DEFAULT_CONCURRENCY)),
        batch_size=int(d.get("batch_size", C.DEFAULT_BATCH_SIZE)),
        inter_batch_pause=float(d.get("inter_batch_pause", C.INTER_BATCH_PAUSE)),
        confirm_timeout=float(d.get("confirm_timeout", C.CONFIRM_TIMEOUT)),
        max_gas_price=int(max_gas) * C.GWEI if max_gas else None,
        policy=d.get("policy", C.DispatchPolicy.SEQUENTIAL),
    )

    store = WalletStore(cfg["store"].get("path", "wallets.db"))
    pool = Pool()
    loaded = store.load_wallets()
    pool.extend(a for a, _ in loaded)
    pool.mark_funded(a.address for a, funded in loaded if funded)
    if loaded:
        log.info(f"Loaded {len(pool)} wallets from {store.db_path} ({pool.funded_count} funded)")

    source = account_from_key(cfg["funding_account"]["private_key"])
    return FundingLoop.from_config(cfg, dispatcher, source, pool, store=store)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_config(cfg)
    chain = cfg["chain"]
    client = JsonRpcClient(
        chain["rpc_url"],
        timeout=float(chain.get("rpc_timeout", C.RPC_TIMEOUT)),
        nonce_block=chain.get("nonce_block", "latest"),
    )
    try:
        log.info("Probing RPC endpoint...")
        probed = await client.probe()
        chain_id = int(chain.get("chain_id") or probed)
        log.info(f"Connected to chain {chain_id}")

        workload = build_workload(cfg, client, chain_id)
        app.state.workload = workload
        log.info(f"Funding source is {workload.source.address}")

        if cfg["service"].get("autostart"):
            workload.start()

        try:
            yield
        finally:
            # uvicorn turns SIGINT/SIGTERM into this shutdown path
            log.info("Shutting down...")
            workload.stop()
            if workload.task is not None:
                try:
                    await workload.wait()
                except Exception:
                    log.exception("Funding loop ended with an error")
    finally:
        await client.aclose()
    log.info("Shutdown complete")


app = FastAPI(
    title="EVM Workload",
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Accounts", "description": "Generate and fund pool accounts"},
        {"name": "Workload", "description": "Start and stop the continuous workload"},
    ],
)

r_accounts = APIRouter(prefix="/accounts", tags=["Accounts"])
r_workload = APIRouter(prefix="/workload", tags=["Workload"])


class GenerateReq(BaseModel):
    count: PositiveInt = 100


class GenerateResp(BaseModel):
    generated: int
    pool_size: int


class FundResp(BaseModel):
    funded: int
    pool_size: int
    funded_total: int


@app.get("/health")
def health():
    return {"status": "ok"}


@r_accounts.post("/generate", response_model=GenerateResp)
async def accounts_generate(req: GenerateReq):
    w: FundingLoop = app.state.workload
    added = w.add_accounts(req.count)
    return GenerateResp(generated=len(added), pool_size=len(w.pool))


@r_accounts.post("/fund", response_model=FundResp)
async def accounts_fund():
    """Fund every unfunded pool account from the source account."""
    w: FundingLoop = app.state.workload
    if w.running:
        raise HTTPException(status_code=409, detail="Workload is running and funds new accounts itself")
    n = await w.fund_unfunded()
    return FundResp(funded=n, pool_size=len(w.pool), funded_total=w.pool.funded_count)


@r_workload.post("/start")
async def start_workload():
    w: FundingLoop = app.state.workload
    if w.running:
        raise HTTPException(status_code=400, detail="Workload already running")
    log.info("Starting workload")
    w.start()
    return {"status": "started"}


@r_workload.post("/stop")
async def stop_workload():
    w: FundingLoop = app.state.workload
    if not w.running:
        raise HTTPException(status_code=400, detail="Workload not running")
    log.info("Stopping workload")
    w.stop()
    await w.wait()
    return {"status": "stopped", **w.status()}


@r_workload.get("/status")
async def workload_status():
    return app.state.workload.status()


app.include_router(r_accounts)
app.include_router(r_workload)
