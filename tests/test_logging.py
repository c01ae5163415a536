"""
Tests for structured logging: context tracking, JSON output, timing,
exception logging and filtering of OAuth secrets.
"""

import json
import logging
from io import StringIO
from unittest.mock import patch

import pytest

from src.exceptions import UnsubscribeHttpError
from src.structured_logging import PipelineLogger, SensitiveDataFilter, configure_logging


@pytest.fixture
def captured():
    """PipelineLogger wired to an in-memory stream."""
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    logger = PipelineLogger("executor")
    logger.logger.addHandler(handler)
    logger.logger.setLevel(logging.DEBUG)
    yield logger, stream
    logger.logger.removeHandler(handler)


def records(stream):
    return [json.loads(line) for line in stream.getvalue().splitlines() if line.strip()]


class TestStructuredLogging:

    def test_logger_creation(self):
        logger = PipelineLogger("scanner")

        assert logger.logger.name == "pipeline.scanner"
        assert logger.component == "scanner"
        assert logger.context == {}

    def test_context_is_included_in_output(self, captured):
        logger, stream = captured
        logger.add_context("subscription_id", 42)

        logger.info("Unsubscribe succeeded", {"method": "HTTP_ONECLICK"})

        record = records(stream)[0]
        assert record['message'] == "Unsubscribe succeeded"
        assert record['component'] == "executor"
        assert record['context'] == {"subscription_id": 42}
        assert record['extra'] == {"method": "HTTP_ONECLICK"}
        assert 'timestamp' in record

    def test_log_levels_and_methods(self):
        logger = PipelineLogger("validator")
        logger.logger.setLevel(logging.DEBUG)

        with patch.object(logger.logger, 'log') as mock_log:
            logger.debug("Debug message")
            logger.info("Info message")
            logger.warning("Warning message")
            logger.error("Error message")

        levels = [call.args[0] for call in mock_log.call_args_list]
        assert levels == [logging.DEBUG, logging.INFO, logging.WARNING, logging.ERROR]

    def test_disabled_level_is_skipped(self):
        logger = PipelineLogger("quiet")
        logger.logger.setLevel(logging.WARNING)

        with patch.object(logger.logger, 'log') as mock_log:
            logger.info("Not shown")

        mock_log.assert_not_called()

    def test_scoped_context_is_removed_afterwards(self, captured):
        logger, stream = captured
        logger.add_context("user_id", "alice")

        with logger.scoped_context({"scan_run_id": 7}):
            logger.info("inside")
        logger.info("outside")

        inside, outside = records(stream)
        assert inside['context'] == {"user_id": "alice", "scan_run_id": 7}
        assert outside['context'] == {"user_id": "alice"}

    def test_time_operation_success(self, captured):
        logger, stream = captured

        with logger.time_operation("unsubscribe_http_oneclick"):
            pass

        completed = records(stream)[-1]
        assert completed['extra']['status'] == 'success'
        assert completed['extra']['operation'] == 'unsubscribe_http_oneclick'
        assert logger.get_operation_stats()['unsubscribe_http_oneclick'] == {
            'total': 1, 'success': 1, 'failure': 0
        }

    def test_time_operation_failure_reraises(self, captured):
        logger, stream = captured

        with pytest.raises(ValueError):
            with logger.time_operation("unsubscribe_mailto"):
                raise ValueError("bad address")

        failed = records(stream)[-1]
        assert failed['extra']['status'] == 'failure'
        assert failed['extra']['error'] == 'bad address'
        assert logger.get_operation_stats()['unsubscribe_mailto']['failure'] == 1

    def test_log_exception_includes_error_context(self, captured):
        logger, stream = captured
        error = UnsubscribeHttpError("HTTP unsubscribe failed (500)", status_code=500)

        logger.log_exception(error, {"attempt_id": 3})

        output = stream.getvalue()
        record = json.loads(output.splitlines()[0])
        assert record['exception']['type'] == 'UnsubscribeHttpError'
        assert record['exception']['context'] == {'status_code': 500}
        assert record['extra'] == {"attempt_id": 3}


class TestSensitiveDataFilter:

    def test_token_query_parameters(self):
        data_filter = SensitiveDataFilter()

        filtered = data_filter.filter_message("refresh with refresh_token=abc123&client_id=x")

        assert 'abc123' not in filtered
        assert 'refresh_token=***' in filtered

    def test_bearer_header(self):
        filtered = SensitiveDataFilter().filter_message("Authorization: Bearer ya29.secret-token")

        assert 'ya29' not in filtered
        assert 'Bearer ***' in filtered

    def test_sensitive_keys_in_dicts(self):
        filtered = SensitiveDataFilter().filter_dict({
            'access_token': 'ya29.secret',
            'nested': {'client_secret': 'shh', 'user_id': 'alice'},
            'count': 3,
        })

        assert filtered == {
            'access_token': '***',
            'nested': {'client_secret': '***', 'user_id': 'alice'},
            'count': 3,
        }

    def test_secrets_never_reach_output(self, captured):
        logger, stream = captured
        logger.add_context("access_token", "ya29.secret")

        logger.info("Token refreshed: access_token=ya29.other")

        output = stream.getvalue()
        assert 'ya29' not in output


class TestLoggingConfiguration:

    def test_log_level_configuration(self):
        logger = configure_logging(level="WARNING")

        assert logger.name == "pipeline"
        assert logger.level == logging.WARNING
        assert len(logger.handlers) == 1

    def test_reconfiguring_replaces_handlers(self):
        configure_logging(level="INFO")
        logger = configure_logging(level="DEBUG", format="text")

        assert len(logger.handlers) == 1
        assert logger.level == logging.DEBUG

    def test_file_output(self, tmp_path):
        log_file = tmp_path / "pipeline.log"
        logger = configure_logging(level="INFO", output="file", filename=str(log_file))
        try:
            PipelineLogger("scanner").info("Scan completed", {"messages_scanned": 3})
            for handler in logger.handlers:
                handler.flush()
        finally:
            for handler in list(logger.handlers):
                handler.close()
                logger.removeHandler(handler)

        record = json.loads(log_file.read_text().splitlines()[0])
        assert record['message'] == "Scan completed"
