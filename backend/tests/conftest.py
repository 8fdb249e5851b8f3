"""
Общие фикстуры. Запуск из корня репо: pytest (пути и маркеры в pyproject.toml).
"""
import sys
from pathlib import Path

# Корень backend = родитель папки tests
BACKEND_ROOT = Path(__file__).resolve().parent.parent
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from fastapi.testclient import TestClient

import api.auth
from api.limits import limiter
from api.main import app


@pytest.fixture(autouse=True)
def header_auth(monkeypatch):
    """X-Player-Id как идентичность (как за доверенным шлюзом); лимиты выключены."""
    monkeypatch.setattr(api.auth, "ALLOW_HEADER_AUTH", True)
    limiter.enabled = False
    yield
    limiter.enabled = True


@pytest.fixture(scope="module")
def client():
    """TestClient без lifespan: init_db не вызывается, сервисы подменяются monkeypatch."""
    return TestClient(app, raise_server_exceptions=False)
