from __future__ import annotations

import json
import logging

import failover.logging_config as logging_config


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="failover.reconciler",
        level=logging.INFO,
        pathname=__file__,
        lineno=10,
        msg="Attached ENI %s",
        args=("nic-1",),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter():
    formatter = logging_config.FailoverJSONFormatter(instance_id="i-bbb")
    payload = json.loads(formatter.format(_record(outcome="converged", steps=["attach"])))

    assert payload["service"] == "vip-failover"
    assert payload["instance_id"] == "i-bbb"
    assert payload["message"] == "Attached ENI nic-1"
    assert payload["level"] == "INFO"
    assert payload["extra"] == {"outcome": "converged", "steps": ["attach"]}
    assert "timestamp" in payload


def test_json_formatter_without_extras():
    payload = json.loads(logging_config.FailoverJSONFormatter().format(_record()))
    assert "extra" not in payload
    assert payload["instance_id"] is None


def test_text_formatter():
    message = logging_config.FailoverTextFormatter(instance_id="i-bbb").format(_record())

    assert "[i-bbb]" in message
    assert "Attached ENI nic-1" in message


def test_setup_installs_one_handler_set(monkeypatch):
    monkeypatch.setattr(logging_config.settings, "log_format", "json")
    monkeypatch.setattr(logging_config.settings, "log_syslog", False)

    logging_config.setup_failover_logging()
    logging_config.setup_failover_logging(instance_id="i-bbb")

    ours = [h for h in logging.getLogger().handlers if getattr(h, "_failover_handler", False)]
    assert len(ours) == 1
    assert isinstance(ours[0].formatter, logging_config.FailoverJSONFormatter)
    assert ours[0].formatter.instance_id == "i-bbb"


def test_setup_adds_syslog_handler(monkeypatch):
    created = []

    class FakeSysLogHandler(logging.Handler):
        LOG_DAEMON = 3

        def __init__(self, address, facility):
            super().__init__()
            created.append((address, facility))

    monkeypatch.setattr(logging_config.settings, "log_format", "text")
    monkeypatch.setattr(logging_config.settings, "log_syslog", True)
    monkeypatch.setattr(logging_config.settings, "syslog_address", "/dev/log")
    monkeypatch.setattr(logging_config.logging.handlers, "SysLogHandler", FakeSysLogHandler)

    logging_config.setup_failover_logging(instance_id="i-bbb")

    ours = [h for h in logging.getLogger().handlers if getattr(h, "_failover_handler", False)]
    assert created == [("/dev/log", 3)]
    assert len(ours) == 2
    assert ours[-1].ident == "vip-failover: "
    assert isinstance(ours[-1].formatter, logging_config.FailoverTextFormatter)
