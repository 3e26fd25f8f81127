import json

import pytest
import structlog

from forq.config import LoggingConfig
from forq.logging import bind_turn_context, configure_logging


@pytest.fixture(autouse=True)
def _reset_structlog():
    yield
    structlog.reset_defaults()


def test_json_logs_to_file_include_turn_context(tmp_path):
    log_file = tmp_path / "logs" / "forq.log"
    configure_logging(LoggingConfig(level="INFO", format="json", file=str(log_file)))
    logger = structlog.get_logger("forq.test")

    with bind_turn_context(user="tester") as turn_id:
        logger.info("Executing tool", tool="echo")
    logger.debug("Filtered out")

    lines = [json.loads(line) for line in log_file.read_text().splitlines()]
    assert len(lines) == 1
    assert lines[0]["event"] == "Executing tool"
    assert lines[0]["tool"] == "echo"
    assert lines[0]["turn_id"] == turn_id
    assert lines[0]["user"] == "tester"
    assert lines[0]["level"] == "info"
