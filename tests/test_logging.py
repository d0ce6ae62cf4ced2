import io
import logging

import orjson

from utils.logging import ContextFilter, JsonFormatter, log_context


def make_logger(stream: io.StringIO) -> logging.Logger:
    handler = logging.StreamHandler(stream)
    handler.setFormatter(JsonFormatter())
    handler.addFilter(ContextFilter())

    logger = logging.getLogger("tests.logging")
    logger.handlers = [handler]
    logger.setLevel(logging.INFO)
    logger.propagate = False
    return logger


def test_json_formatter_includes_extra_fields():
    stream = io.StringIO()
    logger = make_logger(stream)

    logger.info("Lease finalized: %s", "msg#1-0", extra={"status": "COMPLETED"})

    record = orjson.loads(stream.getvalue())
    assert record["message"] == "Lease finalized: msg#1-0"
    assert record["level"] == "INFO"
    assert record["status"] == "COMPLETED"


def test_log_context_is_attached_and_nested():
    stream = io.StringIO()
    logger = make_logger(stream)

    with log_context(message_id="1-0"):
        with log_context(job_id="job-123"):
            logger.info("inside")
        logger.info("outer")
    logger.info("outside")

    inside, outer, outside = [orjson.loads(line) for line in stream.getvalue().splitlines()]
    assert inside["message_id"] == "1-0" and inside["job_id"] == "job-123"
    assert outer["message_id"] == "1-0" and "job_id" not in outer
    assert "message_id" not in outside


def test_exceptions_are_rendered():
    stream = io.StringIO()
    logger = make_logger(stream)

    try:
        raise ValueError("bad archive")
    except ValueError:
        logger.error("Extraction failed", exc_info=True)

    record = orjson.loads(stream.getvalue())
    assert "ValueError: bad archive" in record["exc_info"]
