# tests/test_logger.py
import json
import logging

from jobdriver.utils.logger import HumanFormatter, JSONFormatter, StructuredLoggerAdapter

def _record(**extra):
    rec = logging.LogRecord("jobdriver.driver", logging.INFO, __file__, 1, "forked %d", (3,), None)
    for k, v in extra.items():
        setattr(rec, k, v)
    return rec

def test_json_formatter_carries_extra_and_pid():
    out = json.loads(JSONFormatter().format(_record(job="resize")))
    assert out["message"] == "forked 3"
    assert out["level"] == "INFO"
    assert out["extra"] == {"job": "resize"}
    assert isinstance(out["pid"], int)
    assert out["service"] == "jobdriver"

def test_human_formatter_appends_job():
    assert HumanFormatter().format(_record(job="resize")).endswith("forked 3 | job=resize")

def test_adapter_merges_component(caplog):
    log = StructuredLoggerAdapter(logging.getLogger("jobdriver.test"), {"component": "driver"})
    with caplog.at_level(logging.INFO, logger="jobdriver.test"):
        log.info("hello", extra={"job": "a"})
    rec = caplog.records[-1]
    assert rec.component == "driver"
    assert rec.job == "a"
