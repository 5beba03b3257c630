"""Tests for configuration loading and the log plumbing."""
import logging
from pathlib import Path

import pytest

from netx.config import ProtocolVersion, Role, build_parser, load_config
from netx.errors import SetupError
from netx.log import TRACE, CallbackHandler, ConsoleFormatter, get_logger


def _load(*argv):
    return load_config(build_parser().parse_args(list(argv)))


def test_command_line_only(tmp_path):
    config = _load("-c", str(tmp_path / "absent.ini"), "--role", "relay", "--dir", str(tmp_path))
    assert config.role is Role.RELAY
    assert config.shared_dir == tmp_path
    assert config.protocol is ProtocolVersion.STREAMING
    assert config.listen_port == 8080
    assert config.verify_ssl
    assert config.socks_proxy is None


def test_command_line_overrides_ini(tmp_path):
    ini = tmp_path / "config.ini"
    ini.write_text(
        "[netx]\n"
        "role = proxy\n"
        f"shared_dir = {tmp_path}\n"
        "listen_port = 9000\n"
        "protocol = v1\n"
        "verify_ssl = false\n"
        "socks_proxy = socks5://127.0.0.1:1080\n"
        f"data_dir = {tmp_path / 'data'}\n"
    )
    config = _load("-c", str(ini), "--port", "9100", "--verify-ssl")
    assert config.role is Role.PROXY
    assert config.listen_port == 9100
    assert config.protocol is ProtocolVersion.LEGACY
    assert not config.streaming
    assert config.verify_ssl
    assert config.socks_proxy == "socks5://127.0.0.1:1080"
    assert config.cert_dir == tmp_path / "data" / "certs"


def test_missing_role_or_dir(tmp_path):
    with pytest.raises(SetupError, match="role"):
        _load("-c", str(tmp_path / "absent.ini"), "--dir", str(tmp_path))
    with pytest.raises(SetupError, match="shared directory"):
        _load("-c", str(tmp_path / "absent.ini"), "--role", "proxy")


def test_verbosity_counts():
    assert build_parser().parse_args(["-vv"]).verbose == 2


def test_trace_level():
    logger = get_logger("netx.test.trace")
    logger.setLevel(TRACE)
    events = []
    handler = CallbackHandler(events.append, level=TRACE)
    logger.addHandler(handler)
    try:
        logger.trace("chunk %d", 3)
    finally:
        logger.removeHandler(handler)
    assert [(e.level, e.message) for e in events] == [("trace", "chunk 3")]


def test_console_formatter_leaves_record_alone():
    record = logging.LogRecord("netx", logging.WARNING, __file__, 1, "chunk %d", (7,), None)
    out = ConsoleFormatter("%(levelname)s %(message)s").format(record)
    assert out == "\033[1;33mWARNING \033[0m \033[1;33mchunk 7\033[0m"
    assert record.msg == "chunk %d"
    assert record.args == (7,)
    assert record.levelname == "WARNING"


def test_console_formatter_debug_is_plain():
    record = logging.LogRecord("netx", logging.DEBUG, __file__, 1, "plain", None, None)
    out = ConsoleFormatter("%(elapsed)s|%(levelname)s %(message)s").format(record)
    assert out.endswith("|DEBUG plain")
    assert float(out.split("|")[0]) >= 0


def test_failing_callback_is_contained(monkeypatch):
    def boom(event):
        raise RuntimeError("ui gone")

    handled = []
    handler = CallbackHandler(boom)
    monkeypatch.setattr(handler, "handleError", handled.append)
    handler.emit(logging.LogRecord("netx", logging.INFO, __file__, 1, "x", None, None))
    assert len(handled) == 1


def test_example_config_is_loadable():
    example = Path(__file__).parent.parent / "config.ini.example"
    config = _load("-c", str(example))
    assert config.role is Role.PROXY
    assert config.shared_dir.name == "netx"
