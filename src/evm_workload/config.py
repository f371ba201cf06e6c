import os
import tomllib
from pathlib import Path
from typing import Any, Mapping

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


class ConfigError(Exception):
    """Required configuration is missing or unusable."""


def load_config(path: str | Path | None = None, env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Read the TOML config and apply environment overrides.

    Every section is guaranteed to exist afterwards so callers can use plain
    ``cfg["section"].get(...)`` lookups.
    """
    env = os.environ if env is None else env
    cfg = tomllib.loads(Path(path or config_file).read_text())

    for section in ("chain", "funding_account", "store", "dispatch", "retry", "gas",
                    "pool", "funding", "redistribution", "loop", "service"):
        cfg.setdefault(section, {})

    chain = cfg["chain"]
    chain["rpc_url"] = env.get("RPC_URL", chain.get("rpc_url", ""))
    if env.get("CHAIN_ID"):
        chain["chain_id"] = int(env["CHAIN_ID"])

    fa = cfg["funding_account"]
    fa["private_key"] = env.get("PRIVATE_KEY", fa.get("private_key", ""))

    if env.get("STORE_PATH"):
        cfg["store"]["path"] = env["STORE_PATH"]

    return cfg


def validate_config(cfg: Mapping[str, Any]) -> None:
    """Raise ConfigError when connection parameters are missing."""
    missing = []
    if not cfg.get("chain", {}).get("rpc_url"):
        missing.append("RPC_URL")
    if not cfg.get("funding_account", {}).get("private_key"):
        missing.append("PRIVATE_KEY")
    if missing:
        raise ConfigError(f"Missing required configuration: {', '.join(missing)}")
