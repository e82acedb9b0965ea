import io
import json

from hearth.config import LoggingConfig
from hearth.logging import bind_request_context, configure_logging, get_logger


def test_json_logging_carries_request_context():
    stream = io.StringIO()
    configure_logging(LoggingConfig(level="INFO", format="json"), stream=stream)
    log = get_logger("hearth.test")

    with bind_request_context(method="POST", path="/agent"):
        log.info("Handled", status=200)
    log.debug("Hidden")
    log.warning("Outside")

    events = [json.loads(line) for line in stream.getvalue().splitlines()]
    assert [event["event"] for event in events] == ["Handled", "Outside"]
    assert events[0]["path"] == "/agent"
    assert events[0]["level"] == "info"
    assert "path" not in events[1]
    configure_logging(LoggingConfig(level="ERROR"))
