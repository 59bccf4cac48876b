import logging
import pathlib
from collections.abc import Iterator
from typing import Any

import pytest

from embd.config import LoggingSettings
from embd.logging_setup import LOG_ENV_VAR, _parse_level, configure_logging


@pytest.fixture(autouse=True)
def _restore_root_logger() -> Iterator[None]:
    root = logging.getLogger()
    handlers = root.handlers[:]
    level = root.level

    yield

    for handler in root.handlers:
        if handler not in handlers:
            handler.close()

    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.parametrize(
    ("value", "expected"),
    [
        ("critical", logging.CRITICAL),
        ("ERROR", logging.ERROR),
        (" warn ", logging.WARNING),
        ("warning", logging.WARNING),
        ("debug", logging.DEBUG),
        ("info", logging.INFO),
        ("nonsense", logging.INFO),
    ],
)
def test_parse_level(value: str, expected: int) -> None:
    assert _parse_level(value) == expected


def test_configure_logging_writes_to_file(
    tmp_path: pathlib.Path,
    monkeypatch: Any,
) -> None:
    monkeypatch.delenv(LOG_ENV_VAR, raising=False)
    log_file = tmp_path / "logs" / "embd.log"

    log_path = configure_logging(
        LoggingSettings(level="WARNING", file_path=log_file),
        component="test",
    )
    logging.getLogger("embd.test").warning("hello log")

    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_path == log_file
    assert logging.getLogger().level == logging.WARNING
    assert "hello log" in log_file.read_text(encoding="utf-8")


def test_configure_logging_without_file(monkeypatch: Any) -> None:
    monkeypatch.delenv(LOG_ENV_VAR, raising=False)

    log_path = configure_logging(
        LoggingSettings(level="ERROR", file_path=None),
        component="test",
    )

    assert log_path is None
    assert logging.getLogger().level == logging.ERROR


def test_env_var_overrides_settings_level(monkeypatch: Any) -> None:
    monkeypatch.setenv(LOG_ENV_VAR, "debug")

    configure_logging(
        LoggingSettings(level="ERROR", file_path=None),
        component="test",
    )

    assert logging.getLogger().level == logging.DEBUG


def test_level_override_beats_env_var(monkeypatch: Any) -> None:
    monkeypatch.setenv(LOG_ENV_VAR, "debug")

    configure_logging(
        LoggingSettings(level="INFO", file_path=None),
        component="test",
        level_override="critical",
    )

    assert logging.getLogger().level == logging.CRITICAL
