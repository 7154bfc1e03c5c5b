"""
Tests for logger functionality.
"""

import pytest

from jobcredits.logger import StructuredLogger, get_logger, reset_logger


@pytest.fixture
def quiet(tmp_path):
    return StructuredLogger(name="test", log_dir=tmp_path, enable_console=False)


class TestStructuredLogger:
    """Test structured logging functionality."""

    def test_logger_creation(self, quiet):
        assert quiet.logger.name == "test"
        assert quiet.metrics["events_received"] == 0
        assert quiet.logger.propagate is False

    def test_log_methods(self, quiet):
        """All log level methods should work."""
        quiet.debug("Debug message")
        quiet.info("Info message")
        quiet.warning("Warning message")
        quiet.error("Error message")
        quiet.critical("Critical message")

    def test_context_written_as_sorted_json(self, quiet, tmp_path):
        quiet.info("Credits used", user_id="emp-1", consumed={"universal": 1})

        [log_file] = list(tmp_path.glob("jobcredits_*.log"))
        content = log_file.read_text()
        assert 'Credits used | Context: {"consumed": {"universal": 1}, "user_id": "emp-1"}' in content

    def test_event_metrics(self, quiet):
        quiet.record_event("completed")
        quiet.record_event("duplicate")
        quiet.record_event("duplicate")
        quiet.record_event("unknown_purchase")

        metrics = quiet.get_metrics()
        assert metrics["events_received"] == 4
        assert metrics["events_duplicate"] == 2
        assert metrics["events_unknown"] == 1
        assert metrics["duplicate_event_rate"] == 0.5

    def test_mint_and_status_metrics(self, quiet):
        quiet.record_status_change("completed")
        quiet.record_status_change("failed")
        quiet.record_status_change("pending")
        quiet.record_mint(12)
        quiet.record_mint(0)

        assert quiet.metrics["purchases_completed"] == 1
        assert quiet.metrics["purchases_failed"] == 1
        assert "purchases_pending" not in quiet.metrics
        assert quiet.metrics["credits_minted"] == 12
        assert quiet.metrics["mints_skipped"] == 1

    def test_consumption_success_rate(self, quiet):
        quiet.record_consumption(True, 2)
        quiet.record_consumption(True, 1)
        quiet.record_consumption(False)

        metrics = quiet.get_metrics()
        assert metrics["credits_consumed"] == 3
        assert metrics["consumption_success_rate"] == pytest.approx(0.667, rel=0.01)

    def test_rates_absent_without_activity(self, quiet):
        metrics = quiet.get_metrics()
        assert "consumption_success_rate" not in metrics
        assert "duplicate_event_rate" not in metrics

    def test_errors_by_type(self, quiet):
        quiet.record_error("ClaimConflict")
        quiet.record_error("ClaimConflict")
        quiet.record_error("ProviderError")

        errors = quiet.get_metrics()["errors_by_type"]
        assert errors == {"ClaimConflict": 2, "ProviderError": 1}

        # get_metrics hands out a copy
        errors["ClaimConflict"] = 99
        assert quiet.metrics["errors_by_type"]["ClaimConflict"] == 2

    def test_metrics_summary(self, quiet, tmp_path):
        quiet.record_sweep_repair(3)
        quiet.record_error("MintFailed")
        quiet.log_metrics_summary()

        content = next(tmp_path.glob("*.log")).read_text()
        assert "=== Credit Ledger Metrics ===" in content
        assert "Sweep repairs: 3" in content
        assert "MintFailed: 1" in content


class TestGlobalLogger:
    """Test global logger singleton."""

    def setup_method(self):
        reset_logger()

    def teardown_method(self):
        reset_logger()

    def test_get_logger_singleton(self, tmp_path):
        logger1 = get_logger(log_dir=tmp_path, enable_console=False)
        logger2 = get_logger()
        assert logger1 is logger2

    def test_reset_logger(self, tmp_path):
        logger1 = get_logger(log_dir=tmp_path, enable_console=False)
        logger1.record_event("completed")

        reset_logger()
        logger2 = get_logger(log_dir=tmp_path, enable_console=False)

        assert logger2 is not logger1
        assert logger2.metrics["events_received"] == 0

    def test_level_and_dir_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("JOBCREDITS_LOG_LEVEL", "WARNING")
        monkeypatch.setenv("JOBCREDITS_LOG_DIR", str(tmp_path / "logs"))

        logger = get_logger(enable_console=False)
        logger.warning("sweep lagging")

        assert logger.logger.level == 30
        assert list((tmp_path / "logs").glob("jobcredits_*.log"))

    def test_no_file_without_log_dir(self, monkeypatch):
        monkeypatch.delenv("JOBCREDITS_LOG_DIR", raising=False)
        logger = get_logger(enable_console=False)
        assert logger.logger.handlers == []
