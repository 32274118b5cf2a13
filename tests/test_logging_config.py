"""Unit tests for marketpulse.core.logging_config."""

import io
import json
import logging

from marketpulse.core.context import job_id_var, request_id_var
from marketpulse.core.logging_config import ContextFilter, PlaywrightPipeFilter, configure_logging


def make_record(msg: str) -> logging.LogRecord:
    return logging.LogRecord("test", logging.INFO, __file__, 1, msg, None, None)


class TestFilters:
    def test_context_filter_injects_ids(self):
        rid = request_id_var.set("req-1")
        jid = job_id_var.set("job-9")
        try:
            record = make_record("hello")
            assert ContextFilter().filter(record) is True
            assert record.request_id == "req-1"
            assert record.job_id == "job-9"
        finally:
            request_id_var.reset(rid)
            job_id_var.reset(jid)

    def test_pipe_closed_noise_dropped(self):
        f = PlaywrightPipeFilter()
        assert f.filter(make_record("pipe closed by peer")) is False
        assert f.filter(make_record("navigated")) is True


class TestConfigureLogging:
    def test_json_output_has_renamed_fields(self):
        configure_logging(log_format="json", log_level="INFO")
        handler = logging.getLogger().handlers[0]
        stream = io.StringIO()
        handler.setStream(stream)

        token = job_id_var.set("job-7")
        try:
            logging.getLogger("marketpulse.test").info("processed")
        finally:
            job_id_var.reset(token)

        line = json.loads(stream.getvalue().strip().splitlines()[-1])
        assert line["message"] == "processed"
        assert line["level"] == "INFO"
        assert line["logger"] == "marketpulse.test"
        assert line["job_id"] == "job-7"
        assert "timestamp" in line

    def test_boto_loggers_quieted(self):
        configure_logging(log_format="text", log_level="DEBUG")
        assert logging.getLogger("botocore").level == logging.WARNING
        assert logging.getLogger().level == logging.DEBUG
