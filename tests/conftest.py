import os
import sys
from pathlib import Path

import pytest

os.environ.setdefault("PG_HOST", "localhost")
os.environ.setdefault("PG_PORT", "5432")
os.environ.setdefault("PG_DB", "agro_analysis_test")
os.environ.setdefault("PG_USER", "agro")
os.environ.setdefault("PG_PASS", "agro_dev")

repo_root = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
services_path = Path(repo_root) / "services"
sys.path.insert(0, repo_root)
sys.path.insert(0, str(services_path))

from tests.factories import InMemoryAlertStore, InMemoryReadingStore  # noqa: E402


@pytest.fixture
def reading_store() -> InMemoryReadingStore:
    return InMemoryReadingStore()


@pytest.fixture
def alert_store() -> InMemoryAlertStore:
    return InMemoryAlertStore()
