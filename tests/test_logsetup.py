import json
import logging
from datetime import datetime

import pytest

from swgproxy.logsetup import production_console_formatter, setup_logging


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)


def make_record(name="swgproxy.server", level=logging.INFO, msg="Started service", **extra):
    record = logging.LogRecord(name, level, "/srv/pkg/relay.py", 42, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_console_formatter_without_timestamps():
    out = production_console_formatter(True).format(make_record())
    tokens = out.split(" ")
    assert "INFO" in tokens[0]
    assert tokens[1] == "swgproxy.server"
    assert tokens[2] == "relay.py:42"
    assert out.endswith("Started service")


def test_console_formatter_with_timestamps():
    record = make_record()
    out = production_console_formatter(False).format(record)
    stamp = datetime.strptime(out.split(" ")[0], "%Y-%m-%dT%H:%M:%S.%f%z")
    assert abs(stamp.timestamp() - record.created) < 0.01
    assert "INFO" in out.split(" ")[1]


def test_console_formatter_levels_are_distinct():
    formatter = production_console_formatter(True)
    warn = formatter.format(make_record(level=logging.WARNING))
    error = formatter.format(make_record(level=logging.ERROR))
    assert "WARN" in warn.split(" ")[0]
    assert "ERROR" in error.split(" ")[0]
    assert warn.split(" ")[0] != error.split(" ")[0]


def test_console_formatter_appends_fields():
    record = make_record(fields={"client": "wg0", "packetLength": 148})
    out = production_console_formatter(True).format(record)
    _, _, tail = out.partition("Started service ")
    assert json.loads(tail) == {"client": "wg0", "packetLength": 148}


def test_console_preset_with_level_override():
    root = setup_logging("console", "warn")
    assert root.level == logging.WARNING
    assert len(root.handlers) == 1


def test_default_preset_level():
    root = setup_logging(None, None)
    assert root.level == logging.INFO


def test_development_preset_level():
    root = setup_logging("development", None)
    assert root.level == logging.DEBUG


def test_invalid_level():
    with pytest.raises(ValueError, match="unrecognized level"):
        setup_logging("console", "verbose")


def test_production_preset_writes_json(capsys):
    setup_logging("production", None)
    logging.getLogger("swgproxy.test").warning("hello", extra={"fields": {"server": "wg0"}})
    line = capsys.readouterr().err.strip().splitlines()[-1]
    entry = json.loads(line)
    assert entry["msg"] == "hello"
    assert entry["level"] == "warn"
    assert entry["logger"] == "swgproxy.test"
    assert entry["server"] == "wg0"


def test_systemd_preset_has_no_timestamp(capsys):
    setup_logging("systemd", None)
    logging.getLogger("swgproxy.test").info("ready")
    line = capsys.readouterr().err.strip().splitlines()[-1]
    assert "INFO" in line.split(" ")[0]
    assert line.endswith("ready")


def test_info_preset_drops_debug(capsys):
    setup_logging("console", None)
    logging.getLogger("swgproxy.test").debug("hidden")
    assert "hidden" not in capsys.readouterr().err


def test_sampling_limits_repeated_messages(capsys):
    setup_logging("production", None)
    logger = logging.getLogger("swgproxy.test")
    for _ in range(250):
        logger.info("repeated")
    lines = [line for line in capsys.readouterr().err.splitlines() if "repeated" in line]
    assert 100 <= len(lines) < 250


def test_json_file_preset(tmp_path):
    path = tmp_path / "logging.json"
    path.write_text(json.dumps({"version": 1, "root": {"level": "ERROR"}}))
    root = setup_logging(str(path), None)
    assert root.level == logging.ERROR
    root = setup_logging(str(path), "debug")
    assert root.level == logging.DEBUG


def test_missing_json_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        setup_logging(str(tmp_path / "missing.json"), None)