# tests/test_sdk_api.py
import pytest
from sqlalchemy import func, select

from experiment_service.models import ExperimentAssignment, ExperimentEvent

CONFIG_URL = "/v1/sdk/config"
EVENTS_URL = "/v1/sdk/events"


async def _count(session_factory, model):
    async with session_factory() as db:
        return (await db.execute(select(func.count()).select_from(model))).scalar_one()


# -------------------------
# Config
# -------------------------
@pytest.mark.asyncio
async def test_config_requires_project_id(client):
    resp = await client.get(CONFIG_URL, params={"visitorId": "test123"})
    assert resp.status_code == 400
    assert "projectId" in resp.json()["error"]
    assert resp.headers["access-control-allow-origin"] == "*"


@pytest.mark.asyncio
async def test_config_requires_visitor_id(client):
    resp = await client.get(CONFIG_URL, params={"projectId": "proj-1"})
    assert resp.status_code == 400
    assert "visitorId" in resp.json()["error"]


@pytest.mark.asyncio
async def test_config_for_unknown_project_is_empty(client):
    resp = await client.get(CONFIG_URL, params={"projectId": "nobody", "visitorId": "visitor-123"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["experiments"] == []
    assert body["visitorId"] == "visitor-123"
    assert "timestamp" in body


@pytest.mark.asyncio
async def test_config_headers_disable_caching(client):
    resp = await client.get(CONFIG_URL, params={"projectId": "proj-1", "visitorId": "v"})
    assert resp.headers["access-control-allow-origin"] == "*"
    assert resp.headers["cache-control"] == "no-cache, no-store, must-revalidate"


@pytest.mark.asyncio
async def test_config_preflight(client):
    resp = await client.options(CONFIG_URL)
    assert resp.status_code == 200
    assert resp.headers["access-control-allow-origin"] == "*"
    assert "GET" in resp.headers["access-control-allow-methods"]


@pytest.mark.asyncio
async def test_config_shape(client, session_factory, add_experiment):
    await add_experiment(
        variants=[
            {"variant_key": "control", "traffic_percentage": 50, "is_control": True},
            {
                "variant_key": "treatment",
                "traffic_percentage": 50,
                "visual_changes": [{"selector": "#cta", "text": "Start free"}],
                "page_url": "/pricing",
            },
        ],
        goals=[{"name": "signup", "goal_type": "pageview", "target_url": "/welcome"}],
    )
    resp = await client.get(CONFIG_URL, params={"projectId": "proj-1", "visitorId": "visitor-1"})
    assert resp.status_code == 200
    [experiment] = resp.json()["experiments"]

    assert experiment["id"] == "exp-checkout"
    assert experiment["key"] == "exp-checkout-key"
    assert experiment["status"] == "running"
    assert experiment["trafficAllocation"] == 100
    # integer percentages on the wire, never 100.0
    assert type(experiment["trafficAllocation"]) is int
    assert all(type(v["weight"]) is int for v in experiment["variants"])
    assert '"weight":50.0' not in resp.text
    assert experiment["assignedVariant"] == "treatment"
    assert experiment["variants"] == [
        {"key": "control", "weight": 50, "isControl": True, "changes": []},
        {
            "key": "treatment",
            "weight": 50,
            "isControl": False,
            "changes": [{"selector": "#cta", "text": "Start free"}],
            "pageUrl": "/pricing",
        },
    ]
    assert experiment["goals"][0]["name"] == "signup"
    assert experiment["goals"][0]["type"] == "pageview"
    assert experiment["goals"][0]["url"] == "/welcome"
    assert "selector" not in experiment["goals"][0]

    assert await _count(session_factory, ExperimentAssignment) == 1


@pytest.mark.asyncio
async def test_config_is_consistent_for_a_visitor(client, session_factory, add_experiment):
    await add_experiment()
    params = {"projectId": "proj-1", "visitorId": "visitor-6"}
    first = (await client.get(CONFIG_URL, params=params)).json()
    second = (await client.get(CONFIG_URL, params=params)).json()

    assert first["experiments"][0]["assignedVariant"] == second["experiments"][0]["assignedVariant"]
    assert await _count(session_factory, ExperimentAssignment) == 1


@pytest.mark.asyncio
async def test_config_soft_degrades_when_storage_is_down(unavailable_client):
    resp = await unavailable_client.get(CONFIG_URL, params={"projectId": "proj-1", "visitorId": "v"})
    assert resp.status_code == 200
    assert resp.json()["experiments"] == []


# -------------------------
# Events
# -------------------------
@pytest.mark.asyncio
async def test_events_require_events_array(client):
    resp = await client.post(EVENTS_URL, json={"projectId": "proj-1", "visitorId": "v"})
    assert resp.status_code == 400
    assert "events" in resp.json()["error"]


@pytest.mark.asyncio
async def test_events_require_project_id(client):
    resp = await client.post(EVENTS_URL, json={"events": [{"eventType": "conversion"}]})
    assert resp.status_code == 400
    assert "projectId" in resp.json()["error"]


@pytest.mark.asyncio
async def test_events_are_tracked(client, session_factory, add_experiment):
    await add_experiment()
    resp = await client.post(
        EVENTS_URL,
        json={
            "projectId": "proj-1",
            "visitorId": "visitor-1",
            "events": [
                {
                    "experimentId": "exp-checkout",
                    "variantKey": "treatment",
                    "eventType": "conversion",
                    "eventName": "signup",
                    "eventValue": 1,
                },
                {"experimentId": "exp-123", "variantKey": "treatment",
                 "eventType": "pageview", "eventName": "page_load"},
                {"eventType": "click"},
            ],
        },
    )
    assert resp.status_code == 200
    assert resp.json() == {"success": True, "tracked": 1}
    assert resp.headers["access-control-allow-origin"] == "*"
    assert await _count(session_factory, ExperimentEvent) == 1


@pytest.mark.asyncio
async def test_events_preflight(client):
    resp = await client.options(EVENTS_URL)
    assert resp.status_code == 200
    assert "POST" in resp.headers["access-control-allow-methods"]


@pytest.mark.asyncio
async def test_events_storage_outage_is_500(unavailable_client):
    resp = await unavailable_client.post(
        EVENTS_URL,
        json={
            "projectId": "proj-1",
            "visitorId": "v",
            "events": [{"experimentId": "e", "variantKey": "k", "eventType": "click", "eventName": "cta"}],
        },
    )
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to track events"}
