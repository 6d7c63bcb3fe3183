"""Tests for the agent command line and logging helpers."""
import argparse
import datetime
import json
import logging
import tempfile
from pathlib import Path

import pytest
from agent.__main__ import build_arg_parser, main, parse_register, resolve_config
from core.logging_utils import close_logger, jsonl_path, log_jsonl, setup_rotating_logger


def test_parse_register_with_origin():
    entry = parse_register("svc1.local,_http._tcp.local,8080,host1.local")
    assert (entry.id, entry.service_type, entry.port, entry.origin) == (
        "svc1.local", "_http._tcp.local", 8080, "host1.local")


def test_parse_register_default_origin():
    entry = parse_register("svc1.local,_http._tcp.local,8080")
    assert entry.origin == ""
    assert entry.to_record().origin.endswith(".local")


def test_parse_register_bad_values():
    with pytest.raises(argparse.ArgumentTypeError):
        parse_register("svc1.local,_http._tcp.local")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_register("svc1.local,_http._tcp.local,http")


def test_resolve_config_overrides():
    args = build_arg_parser().parse_args([
        "--service-type", "_ipp._tcp.local",
        "--query-interval", "2",
        "--advertise-interval", "3",
        "--register", "p.local,_ipp._tcp.local,631,h.local",
        "-v",
    ])
    config = resolve_config(args)
    assert config.service_type == "_ipp._tcp.local"
    assert config.query_interval_s == 2.0
    assert config.advertise_interval_s == 3.0
    assert config.log_level == "DEBUG"
    assert [s.id for s in config.services] == ["p.local"]


def test_resolve_config_rejects_invalid():
    args = build_arg_parser().parse_args(["--query-interval", "0"])
    with pytest.raises(ValueError):
        resolve_config(args)


def test_main_returns_2_on_bad_config(capsys):
    assert main(["--query-interval", "-1"]) == 2
    assert "query_interval_s" in capsys.readouterr().err


def test_main_returns_2_on_bad_service_type(capsys):
    assert main(["--service-type", "a..b"]) == 2
    assert "agent.service_type" in capsys.readouterr().err


def test_main_returns_2_on_mistyped_config(tmp_path, capsys):
    path = tmp_path / "agent.toml"
    path.write_text('agent = "not a table"\n', encoding="utf-8")
    assert main(["--config", str(path)]) == 2
    assert "[agent] must be a table" in capsys.readouterr().err


def test_main_returns_2_on_missing_config_file(tmp_path):
    assert main(["--config", str(tmp_path / "missing.toml")]) == 2


def test_bad_register_exits():
    with pytest.raises(SystemExit):
        build_arg_parser().parse_args(["--register", "only-one-field"])


def test_log_jsonl_appends():
    with tempfile.TemporaryDirectory() as d:
        log_dir = Path(d) / "logs"
        path = log_jsonl(log_dir, {"services": [], "nodes": []})
        log_jsonl(log_dir, {"services": [], "nodes": [{"id": "h.local"}]})
        assert path.name.startswith("peerbeacon-") and path.suffix == ".jsonl"
        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["nodes"] == [{"id": "h.local"}]


def test_jsonl_path_is_dated():
    path = jsonl_path(Path("logs"), datetime.date(2024, 3, 9))
    assert path == Path("logs") / "peerbeacon-2024-03-09.jsonl"


def test_setup_rotating_logger_writes_file(tmp_path):
    logger = setup_rotating_logger("peerbeacon-test", tmp_path, level=logging.DEBUG)
    try:
        assert len(logger.handlers) == 2
        # A second call must not stack handlers
        setup_rotating_logger("peerbeacon-test", tmp_path)
        assert len(logger.handlers) == 2
        logger.debug("hello %s", "file")
    finally:
        close_logger("peerbeacon-test")
    assert logger.handlers == []
    assert "hello file" in (tmp_path / "peerbeacon-test.log").read_text(encoding="utf-8")


def test_setup_rotating_logger_console_only():
    logger = setup_rotating_logger("peerbeacon-console-test", None)
    try:
        assert [type(h) for h in logger.handlers] == [logging.StreamHandler]
    finally:
        close_logger("peerbeacon-console-test")
