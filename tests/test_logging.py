"""Tests for the logging setup helpers."""

from __future__ import annotations

import logging
import logging.handlers
from pathlib import Path
from typing import Iterator

import pytest

from chatweave.utils import logging as logging_utils


@pytest.fixture(autouse=True)
def _restore_root_logger(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    noisy = {name: logging.getLogger(name).level for name in ("asyncio", "httpx", "httpcore", "openai")}
    monkeypatch.setattr(logging_utils, "_LOG_PATH", None)
    yield
    for handler in list(root.handlers):
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)
    for name, noisy_level in noisy.items():
        logging.getLogger(name).setLevel(noisy_level)
    logging.captureWarnings(False)


def test_setup_logging_writes_to_rotating_file(tmp_path: Path) -> None:
    log_path = logging_utils.setup_logging("DEBUG", log_dir=tmp_path, console=False, force=True)

    logging.getLogger("chatweave.test").info("hello log")
    for handler in logging.getLogger().handlers:
        handler.flush()

    assert log_path == tmp_path / "chatweave.log"
    assert logging_utils.get_log_path() == log_path
    assert "hello log" in log_path.read_text(encoding="utf-8")
    assert logging.getLogger().level == logging.DEBUG
    assert any(isinstance(h, logging.handlers.RotatingFileHandler) for h in logging.getLogger().handlers)
    for name in ("asyncio", "httpx", "httpcore", "openai"):
        assert logging.getLogger(name).level >= logging.WARNING


def test_setup_logging_is_idempotent_without_force(tmp_path: Path) -> None:
    first = logging_utils.setup_logging(log_dir=tmp_path / "one", console=False)
    second = logging_utils.setup_logging(log_dir=tmp_path / "two", console=False)

    assert first == second == tmp_path / "one" / "chatweave.log"
    assert not (tmp_path / "two").exists()


def test_setup_logging_honours_environment_directory(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CHATWEAVE_LOG_DIR", str(tmp_path / "env-logs"))

    log_path = logging_utils.setup_logging(console=False, force=True)

    assert log_path.parent == tmp_path / "env-logs"


@pytest.mark.parametrize(
    ("level", "debug", "expected"),
    [
        (None, False, logging.INFO),
        ("warning", False, logging.WARNING),
        (" error ", False, logging.ERROR),
        (logging.CRITICAL, False, logging.CRITICAL),
        ("error", True, logging.DEBUG),
    ],
)
def test_resolve_level(level: int | str | None, debug: bool, expected: int) -> None:
    assert logging_utils.resolve_level(level, debug=debug) == expected


def test_resolve_level_rejects_unknown_names() -> None:
    with pytest.raises(ValueError):
        logging_utils.resolve_level("chatty")
