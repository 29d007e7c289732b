"""Tests for the package logger configured on import."""

from __future__ import annotations

import logging

import fers


def test_package_logger_writes_to_shop_log():
    assert fers.log.name == "fers"
    assert fers.LOG_FILE.name == "fers.log"
    assert fers.LOG_FILE.parent == fers.LOG_DIR


def test_reconfiguring_does_not_stack_handlers():
    before = list(fers.log.handlers)
    assert fers._configure_logging() is fers.log
    assert fers.log.handlers == before
    assert any(isinstance(handler, logging.StreamHandler) for handler in before)


def test_file_handler_uses_shared_format(tmp_path, monkeypatch):
    monkeypatch.setattr(fers, "LOG_DIR", tmp_path / "logs")
    monkeypatch.setattr(fers, "LOG_FILE", tmp_path / "logs" / "fers.log")
    formatter = logging.Formatter(fmt=fers.LOG_FORMAT, datefmt=fers.LOG_DATE_FORMAT)

    handler = fers._shop_file_handler(formatter)
    try:
        assert handler is not None
        assert handler.formatter is formatter
        assert (tmp_path / "logs").is_dir()
    finally:
        handler.close()
