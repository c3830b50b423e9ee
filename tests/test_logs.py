import io
import json
import logging

from shepherd.logs import configure_logging, provider_event_logger


def test_json_lines_include_event_fields() -> None:
    stream = io.StringIO()
    configure_logging("DEBUG", json_output=True, stream=stream)
    try:
        provider_event_logger()({"event": "opencode_cli_exit", "exit_code": 0})
        logging.getLogger("shepherd.dispatcher").warning("run %s failed", "run-1")
    finally:
        logging.getLogger("shepherd").handlers.clear()

    entries = [json.loads(line) for line in stream.getvalue().splitlines()]

    assert entries[0]["logger"] == "shepherd.providers"
    assert entries[0]["event"] == "opencode_cli_exit"
    assert entries[0]["exit_code"] == 0
    assert entries[1]["level"] == "WARNING"
    assert entries[1]["message"] == "run run-1 failed"


def test_plain_format_respects_level() -> None:
    stream = io.StringIO()
    configure_logging("warning", stream=stream)
    try:
        logging.getLogger("shepherd.supervisor").info("quiet")
        logging.getLogger("shepherd.supervisor").error("loud")
    finally:
        logging.getLogger("shepherd").handlers.clear()

    output = stream.getvalue()
    assert "quiet" not in output
    assert "ERROR" in output and "shepherd.supervisor: loud" in output
