import random
from contextlib import asynccontextmanager
from unittest import TestCase
from unittest.mock import PropertyMock, patch

from fastapi.testclient import TestClient

from evm_workload.app import app
from evm_workload.funding import FundingLoop
from evm_workload.pool import Pool

from tests._fakes import FakeChainClient, fake_account, fake_accounts, make_dispatcher


def make_workload() -> FundingLoop:
    accounts = fake_accounts(2)
    pool = Pool(accounts, funded=[a.address for a in accounts])
    return FundingLoop(
        make_dispatcher(FakeChainClient()),
        fake_account(500),
        pool,
        target_size=2,
        funding_threshold=2,
        tps=(1000, 1000),
        round_pause=0.01,
        cooldown=0,
        rng=random.Random(0),
    )


@asynccontextmanager
async def fake_lifespan(app):
    app.state.workload = make_workload()
    yield
    app.state.workload.stop()
    await app.state.workload.wait()


class ApiTest(TestCase):
    def setUp(self):
        self._lifespan = app.router.lifespan_context
        app.router.lifespan_context = fake_lifespan
        self.client = TestClient(app)
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        app.router.lifespan_context = self._lifespan

    def test_health(self):
        r = self.client.get("/health")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"status": "ok"})

    def test_status_when_idle(self):
        body = self.client.get("/workload/status").json()
        self.assertEqual(body["state"], "IDLE")
        self.assertFalse(body["running"])
        self.assertEqual(body["pool_size"], 2)
        self.assertEqual(body["funded"], 2)

    def test_start_then_stop(self):
        self.assertEqual(self.client.post("/workload/start").json(), {"status": "started"})
        self.assertEqual(self.client.post("/workload/start").status_code, 400)

        r = self.client.post("/workload/stop")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["state"], "STOPPED")
        self.assertFalse(r.json()["running"])

    def test_stop_when_not_running(self):
        self.assertEqual(self.client.post("/workload/stop").status_code, 400)

    def test_generate(self):
        r = self.client.post("/accounts/generate", json={"count": 3})
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"generated": 3, "pool_size": 5})
        self.assertEqual(self.client.post("/accounts/generate", json={"count": 0}).status_code, 422)

    def test_fund_new_accounts(self):
        self.client.post("/accounts/generate", json={"count": 2})
        r = self.client.post("/accounts/fund")
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json(), {"funded": 2, "pool_size": 4, "funded_total": 4})

    def test_fund_refused_while_running(self):
        with patch.object(FundingLoop, "running", new_callable=PropertyMock, return_value=True):
            self.assertEqual(self.client.post("/accounts/fund").status_code, 409)
