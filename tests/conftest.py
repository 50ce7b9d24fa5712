import importlib
import sys
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

ENV_KEYS = ("NDCG_MF_BETA", "NDCG_MF_GAMMA", "NDCG_MF_LAMBDA", "NDCG_MF_WORKERS", "NDCG_MF_PARALLEL")


@pytest.fixture
def fresh_config(monkeypatch):
    """
    Reload config with the NDCG_MF_* environment cleared to keep tests isolated.
    """
    def _clear_env():
        for key in ENV_KEYS:
            monkeypatch.delenv(key, raising=False)

    _clear_env()
    import ndcg_mf.config as config

    importlib.reload(config)
    yield config

    # Tests may set overrides; drop them before restoring module defaults
    _clear_env()
    importlib.reload(config)


@pytest.fixture
def ratings():
    """A small dataset with codes deliberately given out of order."""
    return [
        (30, "b", 4.0),
        (10, "a", 5.0),
        (10, "c", 1.0),
        (20, "a", 3.0),
        (20, "b", 2.0),
        (30, "c", 5.0),
        (10, "b", 3.0),
        (40, "d", 4.0),
    ]


@pytest.fixture
def registry(ratings):
    from ndcg_mf.registry import RatingRegistry

    return RatingRegistry.from_ratings(ratings)


@pytest.fixture
def serial_dispatcher():
    from ndcg_mf.dispatcher import Dispatcher

    return Dispatcher(max_workers=1, parallel=False)
