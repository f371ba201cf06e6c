import logging
import tempfile
from pathlib import Path
from unittest import TestCase

from evm_workload.logging_config import QUIET_LOGGERS, build_config, setup_logging


class LoggingConfigTest(TestCase):
    def tearDown(self):
        setup_logging()

    def test_only_service_and_noisy_loggers_are_configured(self):
        cfg = build_config("DEBUG", "/tmp/x.log")
        self.assertEqual(set(cfg["loggers"]), {"evm_workload", *QUIET_LOGGERS})
        self.assertEqual(cfg["loggers"]["evm_workload"]["level"], "DEBUG")
        self.assertEqual(cfg["handlers"]["file"]["filename"], "/tmp/x.log")

    def test_setup_applies_levels_and_writes_file(self):
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "svc.log"
            setup_logging("DEBUG", str(path))

            self.assertEqual(logging.getLogger("evm_workload").level, logging.DEBUG)
            self.assertEqual(logging.getLogger("httpx").level, logging.WARNING)
            logging.getLogger("evm_workload.dispatch").debug("batch done")
            for h in logging.getLogger("evm_workload").handlers:
                h.flush()
            self.assertIn("evm_workload.dispatch", path.read_text())
            # release the file before the directory goes away
            setup_logging()
