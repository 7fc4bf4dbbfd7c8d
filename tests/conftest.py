"""Shared fixtures for folder_mirror tests."""

import logging
import os
from pathlib import Path
from unittest.mock import patch

import pytest

import folder_mirror
from folder_mirror import RetryPolicy, SyncEngine

# Fixed, whole-second timestamps so comparisons do not depend on filesystem granularity
BASE_MTIME = 1_700_000_000


def make_file(path: Path, content: bytes, mtime: int = BASE_MTIME) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    os.utime(path, (mtime, mtime))
    return path


@pytest.fixture(name="make_file")
def make_file_fixture():
    return make_file


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def replica(tmp_path):
    path = tmp_path / "replica"
    path.mkdir()
    return path


@pytest.fixture
def no_delay_policy():
    return RetryPolicy(base_delay_sec=0.0)


@pytest.fixture
def engine(no_delay_policy):
    return SyncEngine(retry_policy=no_delay_policy, max_workers=4)


@pytest.fixture
def clean_logger():
    """Undo whatever setup_logger did to the shared logger."""
    logger = logging.getLogger(folder_mirror.LOGGER_NAME)
    with patch.object(folder_mirror, "colorama_init"):
        yield logger
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
