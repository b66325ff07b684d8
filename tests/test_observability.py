# tests/test_observability.py
import pytest
from prometheus_client import REGISTRY

from experiment_service.utils.metrics import REQUEST_COUNT

VISITORS = ["visitor-1", "visitor-2"]


def _sample(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.asyncio
async def test_healthz_readyz(client):
    for visitor in VISITORS:
        params = {"projectId": "proj-1", "visitorId": visitor}

        r = await client.get("/healthz", params=params)
        assert r.status_code == 200
        assert r.text == "ok"

        r = await client.get("/readyz", params=params)
        assert r.status_code == 200
        assert r.text == "ready"


@pytest.mark.asyncio
async def test_readyz_reports_storage_outage(unavailable_client):
    r = await unavailable_client.get("/readyz")
    assert r.status_code == 503
    assert r.text == "not ready"

    # liveness does not depend on storage
    r = await unavailable_client.get("/healthz")
    assert r.status_code == 200


@pytest.mark.asyncio
async def test_metrics_counter_increment(client):
    before = {
        tuple(s.labels.items()): s.value
        for s in REQUEST_COUNT.collect()[0].samples
        if s.name == "http_requests_total"
    }

    requests = ["/healthz", "/readyz", "/healthz"]
    for path in requests:
        await client.get(path)

    after = {
        tuple(s.labels.items()): s.value
        for s in REQUEST_COUNT.collect()[0].samples
        if s.name == "http_requests_total"
    }

    key = (("path", "/healthz"), ("method", "GET"), ("status", "200"))
    assert after[key] == before.get(key, 0) + 2
    key = (("path", "/readyz"), ("method", "GET"), ("status", "200"))
    assert after[key] == before.get(key, 0) + 1


@pytest.mark.asyncio
async def test_evaluation_and_assignment_counters(client, add_flag, add_experiment):
    await add_flag()
    await add_experiment()
    enabled_before = _sample("flag_evaluations_total", reason="enabled")
    new_before = _sample("experiment_assignments_total", source="new")
    existing_before = _sample("experiment_assignments_total", source="existing")

    await client.post("/v1/evaluate", json={"flagKey": "new-ui", "visitorId": "abc-123"})
    params = {"projectId": "proj-1", "visitorId": "visitor-2"}
    await client.get("/v1/sdk/config", params=params)
    await client.get("/v1/sdk/config", params=params)

    assert _sample("flag_evaluations_total", reason="enabled") == enabled_before + 1
    assert _sample("experiment_assignments_total", source="new") == new_before + 1
    assert _sample("experiment_assignments_total", source="existing") == existing_before + 1


@pytest.mark.asyncio
async def test_metrics_endpoint_exposes_counters(client):
    await client.get("/healthz")
    r = await client.get("/metrics")
    assert r.status_code == 200
    assert "http_requests_total" in r.text
    assert "flag_evaluations_total" in r.text
    assert "experiment_assignments_total" in r.text
