"""
Tests for structured logging
"""

import json
import logging

from approval_engine.logging_config import JSONFormatter, get_logger, log_action, setup_logging


def make_record(message="Approved level 1", **attrs):
    record = logging.LogRecord("approval_engine.test", logging.INFO, __file__, 1, message, (), None)
    for key, value in attrs.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:

    def test_structured_fields(self):
        output = json.loads(JSONFormatter().format(make_record(
            user_id="fiona", action="approve", resource="req-1", tenant_id="school-1",
            extra={"request_status": "in_review"}
        )))
        assert output["level"] == "INFO"
        assert output["logger"] == "approval_engine.test"
        assert output["message"] == "Approved level 1"
        assert output["user_id"] == "fiona"
        assert output["tenant_id"] == "school-1"
        assert output["extra"] == {"request_status": "in_review"}

    def test_absent_fields_omitted(self):
        output = json.loads(JSONFormatter().format(make_record()))
        assert "user_id" not in output
        assert "correlation_id" not in output


class TestSetupLogging:

    def test_json_handler(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("DEBUG", logger_name="approval_engine_test_json", log_file=str(log_file))
        log_action(logger, "info", "Escalated", user_id="system", action="escalate",
                   resource="req-9", tenant_id="school-1")
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert entry["action"] == "escalate"
        assert entry["resource"] == "req-9"
        assert logger.level == logging.DEBUG

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "engine.txt"
        logger = setup_logging("INFO", logger_name="approval_engine_test_text",
                               log_format="text", log_file=str(log_file))
        logger.info("Sweep finished")
        for handler in logger.handlers:
            handler.flush()
        assert "INFO [approval_engine_test_text] Sweep finished" in log_file.read_text()

    def test_repeated_setup_does_not_duplicate_handlers(self):
        setup_logging(logger_name="approval_engine_test_dupes")
        logger = setup_logging(logger_name="approval_engine_test_dupes")
        assert len(logger.handlers) == 1

    def test_log_action_respects_level(self, tmp_path):
        log_file = tmp_path / "quiet.log"
        logger = setup_logging("WARNING", logger_name="approval_engine_test_quiet", log_file=str(log_file))
        log_action(logger, "info", "Not written")
        for handler in logger.handlers:
            handler.flush()
        assert log_file.read_text() == ""

    def test_get_logger(self):
        assert get_logger("approval_engine.sweeper").name == "approval_engine.sweeper"
