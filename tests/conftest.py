# tests/conftest.py
import logging
import os
import sys

# Ensure repository root is on PYTHONPATH for tests
repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), os.pardir))
if repo_root not in sys.path:
    sys.path.insert(0, repo_root)
# Shared fakes live beside this file
tests_dir = os.path.abspath(os.path.dirname(__file__))
if tests_dir not in sys.path:
    sys.path.insert(0, tests_dir)

# Keep a developer's .env or shell from changing test behaviour
os.environ.setdefault("TRAIL_LOG_LEVEL", "WARNING")
os.environ.setdefault("ENABLE_RICH_PROGRESS", "false")

import pytest  # noqa: E402
import structlog  # noqa: E402
from config import settings  # noqa: E402


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """Retry without sleeping so retry paths stay quick."""
    monkeypatch.setattr(settings, "PIPELINE_RETRY_BASE_DELAY_SECS", 0.0)
    monkeypatch.setattr(settings, "PIPELINE_RETRY_MAX_DELAY_SECS", 0.0)
    monkeypatch.setattr(settings, "PIPELINE_REQUEST_DEADLINE_SECS", None)


@pytest.fixture(autouse=True)
def stdlib_structlog():
    """Send structlog events through stdlib logging so TRAIL_LOG_LEVEL applies."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    root.setLevel(settings.LOG_LEVEL_STR)
    yield
    for handler in root.handlers:
        if handler not in saved_handlers:
            handler.close()
    root.handlers[:] = saved_handlers
    root.setLevel(saved_level)
    structlog.reset_defaults()
