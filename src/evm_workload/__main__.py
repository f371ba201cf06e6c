import logging
import sys

import uvicorn

from evm_workload.config import ConfigError, load_config, validate_config
from evm_workload.logging_config import setup_logging

log = logging.getLogger("evm_workload.main")


def main():
    setup_logging()
    cfg = load_config()
    try:
        validate_config(cfg)
    except ConfigError as e:
        log.error(f"{e}. Set them in the environment or config.toml.")
        sys.exit(1)
    svc = cfg["service"]
    uvicorn.run("evm_workload.app:app", host=svc.get("host", "0.0.0.0"), port=int(svc.get("port", 8000)), lifespan="on")


if __name__ == "__main__":
    main()
