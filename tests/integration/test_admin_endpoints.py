_GENERATE_BODY = {"purpose": "List services", "target_os": "linux", "script_type": "bash"}


def test_cache_stats_and_clear(client, auth_headers, admin_headers) -> None:
    client.post("/v1/ai/scripts/generate", headers=auth_headers, json=_GENERATE_BODY)
    client.post("/v1/ai/scripts/generate", headers=auth_headers, json=_GENERATE_BODY)

    stats = client.get("/v1/admin/cache", headers=admin_headers).json()
    assert stats == {"size": 1, "hits": 1, "misses": 1, "hit_rate": 0.5}

    cleared = client.delete("/v1/admin/cache", headers=admin_headers)
    assert cleared.json() == {"cleared": 1}
    assert client.get("/v1/admin/cache", headers=admin_headers).json()["size"] == 0


def test_budget_summary_reports_scope_spend(client, auth_headers, admin_headers) -> None:
    client.post("/v1/ai/scripts/generate", headers=auth_headers, json=_GENERATE_BODY)

    summary = client.get("/v1/admin/budget", headers=admin_headers).json()

    assert summary["scope"] == '["user-1","domain-a","tenant-a"]'
    assert summary["daily_budget"] == 1000.0
    assert summary["spent_today"] > 0


def test_rate_limit_window(client, auth_headers, admin_headers) -> None:
    client.post("/v1/ai/scripts/generate", headers=auth_headers, json=_GENERATE_BODY)

    window = client.get("/v1/admin/rate-limit", headers=admin_headers).json()

    assert window["count"] == 1
    assert window["limit"] == 100
    assert window["window_minutes"] == 60


def test_config_can_be_read_and_patched(client, auth_headers, admin_headers) -> None:
    config = client.get("/v1/admin/config", headers=admin_headers).json()
    assert config["content_filtering_enabled"] is True

    patched = client.patch(
        "/v1/admin/config",
        headers=admin_headers,
        json={"content_filtering_enabled": False, "max_daily_cost": 50},
    )
    assert patched.status_code == 200
    assert patched.json()["max_daily_cost"] == 50.0

    response = client.post(
        "/v1/ai/scripts/generate",
        headers=auth_headers,
        json={**_GENERATE_BODY, "purpose": "Remove virus definitions cache"},
    )
    assert response.status_code == 200


def test_empty_config_patch_is_rejected(client, admin_headers) -> None:
    response = client.patch("/v1/admin/config", headers=admin_headers, json={})
    assert response.status_code == 422
    assert response.json()["error"]["code"] == "config_update_empty"


def test_invalid_config_value_is_rejected(client, admin_headers) -> None:
    response = client.patch(
        "/v1/admin/config", headers=admin_headers, json={"rate_limit_requests": 0}
    )
    assert response.status_code == 422


def test_metrics_count_requests(client, auth_headers) -> None:
    client.post("/v1/ai/scripts/generate", headers=auth_headers, json=_GENERATE_BODY)
    client.post("/v1/ai/scripts/generate", headers=auth_headers, json=_GENERATE_BODY)

    body = client.get("/metrics", headers=auth_headers).text

    assert "uemgw_requests_total" in body
    assert 'uemgw_cache_hits_total{endpoint="script-generation"} 1.0' in body
    assert 'uemgw_cache_hit_ratio{endpoint="script-generation"} 0.5' in body
    assert "uemgw_request_duration_seconds_bucket" in body
