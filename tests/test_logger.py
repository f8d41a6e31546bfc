import logging
import sys

from change_viewer import logger as cv_logger


def _stderr_handlers(base: logging.Logger) -> list[logging.Handler]:
    return [
        h
        for h in base.handlers
        if isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
    ]


def test_setup_logger_idempotent_handlers(monkeypatch):
    """Calling setup_logger() repeatedly should leave exactly one stderr StreamHandler."""
    monkeypatch.delenv("CHANGE_VIEWER_LOG_CATS", raising=False)
    base = cv_logger.setup_logger(level=logging.DEBUG)
    _ = cv_logger.setup_logger(level=logging.DEBUG)

    assert len(_stderr_handlers(base)) == 1
    assert base.propagate is False


def test_env_level_overrides_argument(monkeypatch):
    monkeypatch.setenv("CHANGE_VIEWER_LOG_LEVEL", "warning")
    base = cv_logger.setup_logger(level=logging.DEBUG)
    assert base.level == logging.WARNING

    monkeypatch.setenv("CHANGE_VIEWER_LOG_LEVEL", "nonsense")
    base = cv_logger.setup_logger(level=logging.INFO)
    assert base.level == logging.INFO


def test_category_filter_keeps_listed_suffixes(monkeypatch):
    monkeypatch.setenv("CHANGE_VIEWER_LOG_CATS", "loader, cache")
    base = cv_logger.setup_logger()
    (handler,) = _stderr_handlers(base)
    (flt,) = handler.filters

    def record(name: str) -> logging.LogRecord:
        return logging.LogRecord(name, logging.INFO, __file__, 1, "msg", None, None)

    assert flt.filter(record("change_viewer.loader"))
    assert flt.filter(record("change_viewer.cache"))
    assert not flt.filter(record("change_viewer.preloader"))

    monkeypatch.delenv("CHANGE_VIEWER_LOG_CATS")
    cv_logger.setup_logger()
    assert handler.filters == []


def test_get_logger_returns_children():
    child = cv_logger.get_logger("navigation")
    assert child.name == "change_viewer.navigation"
    assert cv_logger.get_logger().name == "change_viewer"
