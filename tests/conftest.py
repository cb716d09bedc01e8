"""Pytest fixtures for meta-ralph-mcp tests."""

import asyncio
from unittest.mock import MagicMock

import pytest

from meta_ralph_mcp import context
from meta_ralph_mcp.config import Config
from meta_ralph_mcp.context import ProcessingContext
from meta_ralph_mcp.executor import logging
from meta_ralph_mcp.executor.sessions import SessionRegistry


@pytest.fixture
def reset_logger_singleton():
    """Reset the module-level logger between tests.

    Saves logging._logger, sets it to None for the test and restores the
    original value afterwards.
    """
    original_value = logging._logger

    logging._logger = None

    yield

    logging._logger = original_value


@pytest.fixture
def reset_context_singleton():
    """Reset the default processing context between tests."""
    original_value = context._context

    context._context = None

    yield

    context._context = original_value


@pytest.fixture
def clean_env(monkeypatch):
    """Remove environment variables that feed the configuration."""
    for name in (
        "RALPH_CONFIG_FILE",
        "META_RALPH_PATH",
        "TARGET_REPO",
        "PROVIDERS",
        "GITHUB_TOKEN",
        "GITHUB_REPO",
        "RALPH_LOG_FILE",
        "RALPH_LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture
def registry():
    """Fresh session registry per test."""
    return SessionRegistry()


@pytest.fixture
def processing_context(registry):
    return ProcessingContext(registry=registry)


@pytest.fixture
def script_path(tmp_path):
    """A meta-ralph.sh entry script on disk."""
    script = tmp_path / "meta-ralph.sh"
    script.write_text("#!/bin/bash\necho ok\n", encoding="utf-8")
    return script


@pytest.fixture
def ralph_config(script_path, tmp_path):
    return Config(script_path=script_path, target_repo=tmp_path)


@pytest.fixture
def temp_config_file(tmp_path):
    """Write a ralph.yaml with a few non-default values and return its path."""
    config_file = tmp_path / "ralph.yaml"

    config_content = """script_path: /opt/ralph/meta-ralph.sh
providers: sentry
max_activities: 50
ci:
  interval_ms: 1000
  max_retries: 3
default_options:
  mode: plan
  model: opus
  maxIterations: 5
"""

    config_file.write_text(config_content, encoding="utf-8")

    return config_file


def make_stream(data: bytes = b"", chunks=None) -> asyncio.StreamReader:
    """Build a finished StreamReader holding the given bytes.

    Must be called with a running event loop.
    """
    reader = asyncio.StreamReader()
    for chunk in chunks if chunks is not None else [data]:
        if chunk:
            reader.feed_data(chunk)
    reader.feed_eof()
    return reader


def make_process(stdout: bytes = b"", stderr: bytes = b"", return_code: int = 0, stdout_chunks=None):
    """Mock asyncio subprocess whose pipes are already at EOF."""
    mock_process = MagicMock()
    mock_process.returncode = None
    mock_process.stdout = make_stream(stdout, stdout_chunks)
    mock_process.stderr = make_stream(stderr)

    async def wait():
        mock_process.returncode = return_code
        return return_code

    mock_process.wait = wait
    mock_process.terminate = MagicMock()
    return mock_process


@pytest.fixture
def mock_process_factory():
    """Factory for mock subprocesses; see make_process()."""
    return make_process


@pytest.fixture
def invalid_config_file(tmp_path, clean_env, reset_context_singleton):
    """Point RALPH_CONFIG_FILE at a ralph.yaml that fails validation."""
    config_file = tmp_path / "ralph.yaml"
    config_file.write_text("max_activities: lots\n", encoding="utf-8")
    clean_env.setenv("RALPH_CONFIG_FILE", str(config_file))
    return config_file
