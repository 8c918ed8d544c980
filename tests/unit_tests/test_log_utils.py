"""
Unit tests for logging utilities.
"""

import logging
import os
import tempfile
import unittest

from log_utils import setup_logging


class TestLogUtils(unittest.TestCase):
    """Test logging utilities."""

    def tearDown(self):
        for handler in logging.getLogger().handlers:
            handler.close()
        logging.basicConfig(handlers=[logging.NullHandler()], force=True)

    def test_setup_logging_default(self):
        """Test default logging setup without a log file."""
        logger = setup_logging(log_file=None)
        self.assertIsInstance(logger, logging.Logger)
        self.assertEqual(logging.getLogger().level, logging.INFO)
        self.assertEqual(len(logging.getLogger().handlers), 1)

    def test_setup_logging_verbose(self):
        """Test verbose logging setup."""
        setup_logging(verbose=True, log_file=None)
        self.assertEqual(logging.getLogger().level, logging.DEBUG)

    def test_http_libraries_quiet_unless_verbose(self):
        setup_logging(log_file=None)
        self.assertEqual(logging.getLogger("urllib3").level, logging.WARNING)

        setup_logging(verbose=True, log_file=None)
        self.assertEqual(logging.getLogger("urllib3").level, logging.DEBUG)

    def test_setup_logging_file(self):
        """Test that records also land in the log file."""
        with tempfile.TemporaryDirectory() as tmp:
            path = os.path.join(tmp, "keycloak-migration.log")
            setup_logging(log_file=path)

            logging.getLogger("orchestrator").info("Step 1/4: 17.0.1")
            for handler in logging.getLogger().handlers:
                handler.flush()
                handler.close()

            with open(path) as f:
                self.assertIn("INFO - Step 1/4: 17.0.1", f.read())


if __name__ == "__main__":
    unittest.main()
