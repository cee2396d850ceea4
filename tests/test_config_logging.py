"""
Tests for configuration loading and structured logging
"""

import json
import logging
from decimal import Decimal

import pytest

from lending_ledger import config as config_module
from lending_ledger.config import LedgerConfig, get_config, reload_config
from lending_ledger.currency import Currency
from lending_ledger.logging_config import (
    JSONFormatter, component_logger, configure_logging, log_action, setup_logging
)


class TestLedgerConfig:
    """Settings defaults and environment overrides"""

    def test_defaults(self):
        config = LedgerConfig()
        assert config.ledger_currency == Currency.NGN
        assert config.default_rate == Decimal('0.15')
        assert config.tolerance == Decimal('0')
        assert config.min_term_months == 3
        assert config.max_term_months == 60
        assert not config.allow_multiple_open_loans

    def test_environment_overrides(self, monkeypatch):
        """LEDGER_ prefixed variables override defaults"""
        monkeypatch.setenv("LEDGER_CURRENCY", "kes")
        monkeypatch.setenv("LEDGER_OVERPAYMENT_TOLERANCE", "0.50")
        monkeypatch.setenv("LEDGER_ALLOW_MULTIPLE_OPEN_LOANS", "true")

        config = LedgerConfig()
        assert config.ledger_currency == Currency.KES
        assert config.tolerance == Decimal('0.50')
        assert config.allow_multiple_open_loans

    def test_reload_config(self, monkeypatch):
        """reload_config replaces the global instance"""
        monkeypatch.setattr(config_module, "config", config_module.config)
        monkeypatch.setenv("LEDGER_API_PORT", "9100")

        reloaded = reload_config()
        assert reloaded.api_port == 9100
        assert get_config() is reloaded


class TestStructuredLogging:
    """JSON log records"""

    def test_json_formatter_includes_action_fields(self):
        record = logging.LogRecord("lending_ledger.test", logging.INFO, __file__, 1,
                                   "Repayment applied", None, None)
        record.user_id = "user-1"
        record.action = "apply_repayment"
        record.extra = {"amount": Decimal('5000')}

        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Repayment applied"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "user-1"
        assert entry["action"] == "apply_repayment"
        assert entry["extra"] == {"amount": "5000"}
        assert "correlation_id" not in entry

    def test_setup_logging_writes_json_file(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        logger = setup_logging("DEBUG", logger_name="lending_ledger_test", log_file=str(log_file))

        log_action(logger, "info", "Loan approved", user_id="officer",
                   action="approve_loan", resource="L1")
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["resource"] == "L1"
        assert entry["logger"] == "lending_ledger_test"

    def test_ledger_ids_promoted_from_extra(self):
        record = logging.LogRecord("lending_ledger.payments", logging.INFO, __file__, 1,
                                   "Fee charged", None, None)
        record.extra = {"payment_id": "P1", "loan_id": "L1", "amount": "500"}

        entry = json.loads(JSONFormatter(service="ledger-test").format(record))
        assert entry["service"] == "ledger-test"
        assert entry["payment_id"] == "P1"
        assert entry["loan_id"] == "L1"
        assert entry["extra"] == {"amount": "500"}
        assert record.extra["payment_id"] == "P1"

    def test_component_levels(self):
        setup_logging("INFO", logger_name="lending_ledger_test", component_levels={"store": "DEBUG"})
        assert logging.getLogger("lending_ledger_test").level == logging.INFO
        assert logging.getLogger("lending_ledger_test.store").level == logging.DEBUG

        with pytest.raises(ValueError):
            setup_logging("INFO", logger_name="lending_ledger_test", component_levels={"ledgers": "DEBUG"})
        with pytest.raises(ValueError):
            setup_logging("LOUD", logger_name="lending_ledger_test")

    def test_component_logger(self):
        assert component_logger("payments").name == "lending_ledger.payments"
        with pytest.raises(ValueError):
            component_logger("gateway")


class TestConfigureLogging:
    """Ledger logging driven by LedgerConfig"""

    def setup_method(self):
        self.root = logging.getLogger("lending_ledger")
        self.saved = (self.root.handlers[:], self.root.level, self.root.propagate,
                      logging.getLogger("lending_ledger.store").level)

    def teardown_method(self):
        handlers, level, propagate, store_level = self.saved
        for handler in self.root.handlers[:]:
            self.root.removeHandler(handler)
            handler.close()
        for handler in handlers:
            self.root.addHandler(handler)
        self.root.setLevel(level)
        self.root.propagate = propagate
        logging.getLogger("lending_ledger.store").setLevel(store_level)

    def test_configure_from_environment(self, monkeypatch, tmp_path):
        log_file = tmp_path / "ledger.log"
        monkeypatch.setenv("LEDGER_LOG_LEVEL", "warning")
        monkeypatch.setenv("LEDGER_LOG_FILE", str(log_file))
        monkeypatch.setenv("LEDGER_COMPONENT_LOG_LEVELS", '{"store": "DEBUG"}')

        logger = configure_logging(LedgerConfig())
        assert logger.name == "lending_ledger"
        assert logger.level == logging.WARNING
        assert logging.getLogger("lending_ledger.store").level == logging.DEBUG

        log_action(component_logger("store"), "debug", "Retrying transaction",
                   extra={"loan_id": "L1"})
        log_action(component_logger("payments"), "info", "Repayment applied")
        for handler in logger.handlers:
            handler.flush()

        entries = [json.loads(line) for line in log_file.read_text().strip().splitlines()]
        assert [e["message"] for e in entries] == ["Retrying transaction"]
        assert entries[0]["loan_id"] == "L1"
        assert entries[0]["logger"] == "lending_ledger.store"
