from __future__ import annotations

import json
import logging

from taxometrics.core.logging import JSONFormatter, get_logger


def test_json_formatter_includes_run_context():
    record = logging.LogRecord("taxometrics.test", logging.INFO, __file__, 1, "Run state: matching", None, None)
    record.tenant_id = "acme"
    record.run_state = "matching"
    entry = json.loads(JSONFormatter().format(record))
    assert entry["message"] == "Run state: matching"
    assert entry["tenant_id"] == "acme"
    assert entry["run_state"] == "matching"
    assert "source" not in entry


def test_get_logger_is_namespaced_and_configured_once():
    logger = get_logger("tests")
    assert logger.name == "taxometrics.tests"
    assert get_logger("tests").handlers == logger.handlers
    assert len(logger.handlers) == 1
