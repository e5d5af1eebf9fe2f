from __future__ import annotations

import pytest

from feedloom.app import create_app
from feedloom.app.db import InMemoryContentStore
from feedloom.app.services.container import AppServices
from feedloom.app.services.feed_config import AutoFetchConfig, FeedConfig
from feedloom.app.services.feed_pipeline import JoinedEntity

from conftest import build_item


class _Outage:
    def __init__(self) -> None:
        self.down = False


@pytest.fixture
def app(music_store: InMemoryContentStore):
    config = FeedConfig(page_size=2, auto_fetch=AutoFetchConfig(max_pages=0))
    services = AppServices.create(store=music_store, config=config)
    return create_app(services)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.mark.asyncio
async def test_compose_then_load_more(client) -> None:
    response = await client.get("/feed", query_string={"q": "music"})
    assert response.status_code == 200
    first = await response.get_json()

    assert [item["id"] for item in first["items"]] == ["p1", "p2"]
    assert first["items"][1]["joined"]["title"] == "Music Theory"
    assert first["state"] == "ready"
    assert first["mode"] == "fresh-search"
    session_id = first["session_id"]

    response = await client.post(f"/feed/{session_id}/more")
    second = await response.get_json()

    assert second["items"] == []
    assert second["page"] == 2
    assert second["has_more"] is False
    assert second["visible_count"] == 2


@pytest.mark.asyncio
async def test_creator_scope_toggle_uses_cached_snapshot(client, music_store) -> None:
    music_store.add(
        build_item("p0", author="userB", body="music box"),
        JoinedEntity(title="Tiny tunes"),
    )
    response = await client.get("/feed", query_string={"q": "music"})
    session_id = (await response.get_json())["session_id"]

    response = await client.get(
        "/feed", query_string={"q": "music", "creator": "userB", "session": session_id}
    )
    scoped = await response.get_json()

    assert [item["id"] for item in scoped["items"]] == ["p0"]
    assert scoped["from_cache"] is True
    assert scoped["applied_scope"] == "userB"
    assert scoped["mode"] == "scoped"


@pytest.mark.asyncio
async def test_invalid_filter_is_a_bad_request(client) -> None:
    response = await client.get("/feed", query_string={"sort": "loudest"})

    assert response.status_code == 400
    assert "sort key" in (await response.get_json())["error"]


@pytest.mark.asyncio
async def test_unknown_session_is_not_found(client) -> None:
    for method, path in (
        ("post", "/feed/missing/more"),
        ("post", "/feed/missing/retry"),
        ("get", "/feed/missing/state"),
        ("delete", "/feed/missing"),
    ):
        response = await getattr(client, method)(path)
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_state_and_reset(client) -> None:
    response = await client.get("/feed", query_string={"q": "music"})
    session_id = (await response.get_json())["session_id"]

    response = await client.get(f"/feed/{session_id}/state")
    state = await response.get_json()
    assert state["state"] == "ready"
    assert state["session_id"] == session_id
    assert state["query"]["text"] == "music"

    response = await client.delete(f"/feed/{session_id}")
    assert response.status_code == 204

    response = await client.get(f"/feed/{session_id}/state")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_store_outage_is_retryable(client, music_store, monkeypatch) -> None:
    outage = _Outage()
    original = music_store.execute

    async def _execute(spec):
        if outage.down:
            raise ConnectionError("primary store unavailable")
        return await original(spec)

    monkeypatch.setattr(music_store, "execute", _execute)

    response = await client.get("/feed")
    session_id = (await response.get_json())["session_id"]

    outage.down = True
    response = await client.post(f"/feed/{session_id}/more")
    failure = await response.get_json()

    assert response.status_code == 503
    assert failure["retryable"] is True

    outage.down = False
    response = await client.post(f"/feed/{session_id}/retry")
    recovered = await response.get_json()

    assert response.status_code == 200
    assert [item["id"] for item in recovered["items"]] == ["p3"]
    assert recovered["state"] == "ready"
