import io
import json
import logging

from tubedigest.logging_utils import ContextFilter, JsonFormatter, configure_logging, log_event


def _json_logger(name):
    stream = io.StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(ContextFilter("staging"))
    log = logging.getLogger(name)
    log.handlers = [handler]
    log.setLevel(logging.DEBUG)
    log.propagate = False
    return log, stream


def test_event_fields_become_json_keys():
    log, stream = _json_logger("tubedigest.tests.events")

    log_event(log, logging.INFO, "ledger.reserved", account=7, amount=5, level="ignored")

    payload = json.loads(stream.getvalue())
    assert payload["event"] == "ledger.reserved"
    assert payload["account"] == 7
    assert payload["amount"] == 5
    assert payload["level"] == "INFO"
    assert payload["field_level"] == "ignored"
    assert payload["environment"] == "staging"
    assert payload["service"] == "tubedigest"
    assert payload["message"] == "ledger.reserved account=7 amount=5 level=ignored"


def test_plain_records_are_named_by_function():
    log, stream = _json_logger("tubedigest.tests.plain")

    log.warning("Fetched %d items", 3)

    payload = json.loads(stream.getvalue())
    assert payload["message"] == "Fetched 3 items"
    assert payload["event"] == "test_plain_records_are_named_by_function"


def test_disabled_level_emits_nothing():
    log, stream = _json_logger("tubedigest.tests.quiet")
    log.setLevel(logging.INFO)

    log_event(log, logging.DEBUG, "pipeline.stage", stage="fetching")

    assert stream.getvalue() == ""


def test_configured_file_handler_writes_json_lines(config):
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        configure_logging(config)
        log_event(logging.getLogger("tubedigest.tests.file"), logging.WARNING, "pipeline.failed", run="r1")
        for handler in root.handlers:
            handler.flush()
        lines = config.log_path.read_text(encoding="utf-8").splitlines()
    finally:
        for handler in list(root.handlers):
            root.removeHandler(handler)
            handler.close()
        for handler in saved_handlers:
            root.addHandler(handler)
        root.setLevel(saved_level)

    payload = json.loads(lines[-1])
    assert payload["event"] == "pipeline.failed"
    assert payload["run"] == "r1"
    assert payload["environment"] == config.environment
