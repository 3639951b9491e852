from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from uem_gateway.config.settings import clear_settings_cache
from uem_gateway.main import create_app
from uem_gateway.metrics import reset_metrics


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> TestClient:
    monkeypatch.setenv("UEMGW_API_KEYS", "test-key")
    monkeypatch.setenv("UEMGW_ADMIN_API_KEYS", "admin-key")
    monkeypatch.setenv("UEMGW_AUDIT_LOG_PATH", str(tmp_path / "usage.jsonl"))
    clear_settings_cache()
    reset_metrics()
    app = create_app()
    return TestClient(app)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {
        "Authorization": "Bearer test-key",
        "x-uem-user-id": "user-1",
        "x-uem-domain-id": "domain-a",
        "x-uem-tenant-id": "tenant-a",
    }


@pytest.fixture
def admin_headers(auth_headers: dict[str, str]) -> dict[str, str]:
    return {**auth_headers, "Authorization": "Bearer admin-key"}
