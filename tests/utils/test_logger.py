"""Unit tests for the package logger."""

import logging
import unittest
from unittest.mock import patch

import reconcompare.utils.logger as logger_utils


class TestLogger(unittest.TestCase):
    """Unit tests for the worker-aware logger."""

    def test_worker_id_outside_dask(self) -> None:
        with patch("socket.gethostname", return_value="testhost"):
            self.assertEqual(logger_utils._detect_worker_id(), "testhost-main")

    def test_logger_has_single_handler(self) -> None:
        logger_utils.get_logger()
        logger_utils.get_logger()

        self.assertEqual(len(logging.getLogger(logger_utils.LOGGER_NAME).handlers), 1)

    def test_records_carry_worker_id(self) -> None:
        logger = logger_utils.get_logger()

        with self.assertLogs(logger_utils.LOGGER_NAME, level="INFO") as captured:
            logger.info("aligned %d cameras", 3)

        self.assertEqual(captured.records[0].getMessage(), "aligned 3 cameras")
        self.assertEqual(captured.records[0].worker_id, logger_utils.get_worker_id())


if __name__ == "__main__":
    unittest.main()
