"""Tests for logging_utils module."""

from __future__ import annotations

import sys
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(PROJECT_ROOT))

from loguru import logger

from sprint_agents.logging_utils import configure_logging, failure_digest, pretty, summarize_pytest_failures

PYTEST_OUTPUT = """
collected 10 items

test_module.py::test_success PASSED
test_module.py::test_fail FAILED
test_module.py::test_error FAILED

================================= FAILURES =================================
_______________________________ test_fail _______________________________

    def test_fail():
>       assert 1 == 2
E       AssertionError: assert 1 == 2

test_module.py:10: AssertionError
=========================== short test summary info ========================
FAILED test_module.py::test_fail - AssertionError: assert 1 == 2
FAILED test_module.py::test_error - ValueError: intentional error
"""


class TestSummarizePytestFailures:
    """Test summarize_pytest_failures function."""

    def test_empty_log(self):
        result = summarize_pytest_failures("")

        assert result["failed"] == []
        assert result["headline"] is None
        assert result["first_error"] is None

    def test_max_failed_limit(self):
        """Test that max_failed limits the number of failures captured."""
        log_text = "\n".join(f"test_a.py::test_{i} FAILED" for i in range(1, 8))

        assert len(summarize_pytest_failures(log_text, max_failed=3)["failed"]) == 3
        assert len(summarize_pytest_failures(log_text)["failed"]) == 5

    def test_no_headline(self):
        result = summarize_pytest_failures("FAILED test_module.py::test_something\nE   AssertionError: failed\n")

        assert result["failed"] == ["test_module.py::test_something"]
        assert result["headline"] is None
        assert result["first_error"] == "E   AssertionError: failed"

    def test_complex_pytest_output(self):
        """Test with realistic complex pytest output."""
        result = summarize_pytest_failures(PYTEST_OUTPUT)

        assert result["failed"] == ["test_module.py::test_fail", "test_module.py::test_error"]
        assert result["headline"] == "test_fail"
        assert "AssertionError" in str(result["first_error"])


class TestFailureDigest:
    def test_lists_failures_and_first_error(self):
        digest = failure_digest(PYTEST_OUTPUT)

        assert digest.splitlines() == [
            "Failing tests: test_module.py::test_fail, test_module.py::test_error",
            "First error: E       AssertionError: assert 1 == 2",
        ]

    def test_non_pytest_output_gives_empty_digest(self):
        assert failure_digest("make: *** [lint] Error 1") == ""


class TestConfigureLogging:
    def test_role_files_only_receive_their_role(self, tmp_path: Path):
        configure_logging("DEBUG", log_dir=tmp_path, roles=["dev", "qa"])
        try:
            with logger.contextualize(role="dev"):
                logger.info("dev message")
            with logger.contextualize(role="qa"):
                logger.info("qa message")
            logger.info("unscoped message")
            logger.complete()
        finally:
            configure_logging("INFO")

        dev_log = (tmp_path / "dev-agent.log").read_text()
        qa_log = (tmp_path / "qa-agent.log").read_text()
        assert "dev message" in dev_log and "qa message" not in dev_log
        assert "qa message" in qa_log and "dev message" not in qa_log
        assert "unscoped message" not in dev_log + qa_log
        assert "| dev |" in dev_log

    def test_without_log_dir_no_files(self, tmp_path: Path):
        configure_logging("WARNING", roles=["dev"])
        logger.warning("only stderr")
        assert list(tmp_path.iterdir()) == []
        configure_logging("INFO")


class TestPretty:
    def test_sorted_and_indented(self):
        assert pretty({"b": 1, "a": [1]}) == '{\n  "a": [\n    1\n  ],\n  "b": 1\n}'

    def test_falls_back_to_str(self):
        from datetime import datetime

        assert "2024-01-01" in pretty({"timestamp": datetime(2024, 1, 1, 12, 0, 0)})
        assert pretty({1, 2}) == '"{1, 2}"'
