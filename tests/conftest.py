"""
Shared fixtures for the heatmap test suite.
"""

import io
import os

# Must be set before config_logging builds its global config
os.environ.setdefault('WHM_LOG_TO_FILE', 'false')
os.environ.setdefault('WHM_LOG_LEVEL', 'WARNING')

import pytest

from config_logging import AppConfig
from heatmap.cache import HeatmapCache
from heatmap.sources import MemoryDataSource
from job_manager import JobManager

# Offsets: The(0) quick(4) brown(10) fox(16) jumps(20) over(26) the(31)
# lazy(35) dog(40) .(43) \n(44) A(45) second(47) line(54) here(59) .(63)
BASE_TEXT = "The quick brown fox jumps over the lazy dog.\nA second line here."
SECOND_TEXT = "The quick red fox leaps over the lazy dog.\nA second line."
THIRD_TEXT = "The slow brown fox jumps over a lazy dog!\nA second line here."

SET_ID = 1


class ExhaustedStream(io.StringIO):
    """Content stream that runs out of memory on first read."""

    def read(self, size=-1):
        raise MemoryError()


class ExhaustedSource(MemoryDataSource):
    """Content stream that cannot be held in memory."""

    def __init__(self, source: MemoryDataSource):
        super().__init__()
        self.__dict__.update({k: v for k, v in source.__dict__.items() if k != '_lock'})

    def open_content(self, witness_id):
        return ExhaustedStream()


@pytest.fixture
def source() -> MemoryDataSource:
    """Comparison set 1 with base witness 1 and witnesses 2 and 3."""
    data = MemoryDataSource()
    data.add_witness(1, BASE_TEXT, name="Base")
    data.add_witness(2, SECOND_TEXT, name="Second")
    data.add_witness(3, THIRD_TEXT, name="Third")
    data.add_set(SET_ID, [1, 2, 3], name="Sample")

    # base vs 2: brown -> red, jumps -> leaps, " here" dropped
    data.add_difference(SET_ID, 1, (1, 10, 15), (2, 10, 13))
    data.add_difference(SET_ID, 2, (1, 20, 25), (2, 18, 23))
    data.add_difference(SET_ID, 3, (1, 58, 63), (2, 57, 57))

    # base vs 3: quick -> slow, the -> a, . -> !
    data.add_difference(SET_ID, 4, (1, 4, 9), (3, 4, 8))
    data.add_difference(SET_ID, 5, (1, 31, 34), (3, 30, 31))
    data.add_difference(SET_ID, 6, (1, 43, 44), (3, 40, 41))
    return data


@pytest.fixture
def config(tmp_path) -> AppConfig:
    return AppConfig(
        temp_dir=tmp_path / 'render',
        log_dir=tmp_path / 'logs',
        cache_db_path=tmp_path / 'heatmap_cache.db',
        log_to_file=False,
        log_level='WARNING',
        heatmap_batch_size=2,
        render_workers=2
    )


@pytest.fixture
def cache(config) -> HeatmapCache:
    return HeatmapCache(str(config.cache_db_path))


@pytest.fixture
def manager():
    jobs = JobManager(max_workers=2, max_jobs=20, job_ttl=60)
    jobs.start()
    yield jobs
    jobs.shutdown(wait=True, cancel_pending=True)
