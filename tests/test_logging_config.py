from __future__ import annotations

import logging

import pytest

from core import app_paths, logging_config


@pytest.mark.parametrize(
    "value, expected",
    [(logging.DEBUG, logging.DEBUG), ("warning", logging.WARNING), (" Error ", logging.ERROR), ("chatty", logging.INFO)],
)
def test_resolve_level(value, expected):
    assert logging_config.resolve_level(value) == expected


def test_resolve_level_reads_environment(monkeypatch):
    monkeypatch.setenv(logging_config.LEVEL_ENV_VAR, "debug")

    assert logging_config.resolve_level(None) == logging.DEBUG


def test_configure_logging_attaches_one_file_handler(tmp_path):
    target = tmp_path / "logs" / "unitsync.log"
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        assert logging_config.configure_logging(logging.INFO, path=target) == target.resolve()
        logging_config.configure_logging(logging.INFO, path=target)
        logging.getLogger("unitsync.test").warning("hello log")

        added = [handler for handler in root.handlers if handler not in before]
        assert len(added) == 1
        added[0].flush()
        assert "hello log" in target.read_text(encoding="utf-8")
    finally:
        for handler in root.handlers[:]:
            if handler not in before:
                root.removeHandler(handler)
                handler.close()


def test_resolve_home_prefers_override(tmp_path):
    assert app_paths.resolve_home({"UNITSYNC_HOME": str(tmp_path)}) == tmp_path.resolve()
    assert app_paths.resolve_home({"APPDATA": str(tmp_path)}) == tmp_path.resolve() / "UnitSync"
