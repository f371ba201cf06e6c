import tempfile
from pathlib import Path
from unittest import TestCase

from evm_workload.config import ConfigError, load_config, validate_config

MINIMAL = """
[chain]
rpc_url = "http://from-file:8545"

[funding_account]
private_key = ""
"""


class ConfigTest(TestCase):
    def test_packaged_defaults(self):
        cfg = load_config(env={})
        self.assertEqual(cfg["dispatch"]["batch_size"], 100)
        self.assertEqual(cfg["dispatch"]["policy"], "sequential")
        self.assertEqual(cfg["retry"]["max_retries"], 3)
        self.assertEqual(cfg["gas"]["escalation_percent"], 150)

    def test_environment_overrides(self):
        env = {"RPC_URL": "http://env:8545", "PRIVATE_KEY": "0x" + "22" * 32, "CHAIN_ID": "31337",
               "STORE_PATH": "/tmp/w.db"}
        cfg = load_config(env=env)
        self.assertEqual(cfg["chain"]["rpc_url"], "http://env:8545")
        self.assertEqual(cfg["chain"]["chain_id"], 31337)
        self.assertEqual(cfg["funding_account"]["private_key"], env["PRIVATE_KEY"])
        self.assertEqual(cfg["store"]["path"], "/tmp/w.db")
        validate_config(cfg)

    def test_missing_sections_are_filled_and_validated(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "config.toml"
            path.write_text(MINIMAL)
            cfg = load_config(path, env={})

        self.assertEqual(cfg["chain"]["rpc_url"], "http://from-file:8545")
        self.assertEqual(cfg["loop"], {})
        with self.assertRaises(ConfigError) as cm:
            validate_config(cfg)
        self.assertIn("PRIVATE_KEY", str(cm.exception))
        self.assertNotIn("RPC_URL", str(cm.exception))
