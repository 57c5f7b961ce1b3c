"""Link management API tests."""

import datetime

import pytest
from httpx import AsyncClient

from redirector.config import get_settings

settings = get_settings()

OWNER = {"X-User-Id": "owner-1"}
OTHER = {"X-User-Id": "owner-2"}
STAFF = {"X-User-Id": "support-1", "X-User-Role": "staff"}


def _future(days: int = 7) -> str:
    return (datetime.datetime.now(datetime.timezone.utc) + datetime.timedelta(days=days)).isoformat()


@pytest.mark.asyncio
async def test_create_link_generates_code(client: AsyncClient) -> None:
    response = await client.post("/api/links", json={"destination": "https://www.example.com"}, headers=OWNER)
    assert response.status_code == 201
    data = response.json()
    assert len(data["code"]) == settings.SHORT_CODE_LENGTH
    assert data["code"].isalnum()
    assert data["short_url"].endswith(f"/r/{data['code']}")
    assert data["destination"] == "https://www.example.com"
    assert data["owner_id"] == "owner-1"
    assert data["active"] is True
    assert data["click_count"] == 0
    assert data["tags"] == []


@pytest.mark.asyncio
async def test_create_link_with_custom_code(client: AsyncClient) -> None:
    response = await client.post(
        "/api/links",
        json={"destination": "https://github.com", "custom_code": "my_gh-1", "tags": ["Dev", "dev", "code"]},
        headers=OWNER,
    )
    assert response.status_code == 201
    data = response.json()
    assert data["code"] == "my_gh-1"
    assert data["tags"] == ["code", "dev"]


@pytest.mark.asyncio
async def test_create_link_duplicate_custom_code(client: AsyncClient) -> None:
    first = await client.post("/api/links", json={"destination": "https://a.example.com", "custom_code": "dup1"}, headers=OWNER)
    assert first.status_code == 201

    second = await client.post("/api/links", json={"destination": "https://b.example.com", "custom_code": "dup1"}, headers=OTHER)
    assert second.status_code == 409

    follow = await client.get("/r/dup1", follow_redirects=False)
    assert follow.headers["location"] == "https://a.example.com"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"destination": "not-a-valid-url"},
        {"destination": "ftp://files.example.com/archive.zip"},
        {"destination": "https://example.com", "custom_code": "ab"},
        {"destination": "https://example.com", "custom_code": "has space"},
        {"destination": "https://example.com", "custom_code": "x" * 33},
        {"destination": "https://example.com", "expires_at": "2001-01-01T00:00:00Z"},
        {"destination": "https://example.com", "tags": ["bad tag!"]},
    ],
)
async def test_create_link_validation(client: AsyncClient, payload: dict) -> None:
    response = await client.post("/api/links", json=payload, headers=OWNER)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_management_requires_identity(client: AsyncClient) -> None:
    response = await client.post("/api/links", json={"destination": "https://example.com"})
    assert response.status_code == 401

    response = await client.get("/api/links")
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_get_link_ownership(client: AsyncClient) -> None:
    await client.post("/api/links", json={"destination": "https://example.com", "custom_code": "mine1"}, headers=OWNER)

    assert (await client.get("/api/links/mine1", headers=OWNER)).status_code == 200
    assert (await client.get("/api/links/mine1", headers=OTHER)).status_code == 403
    assert (await client.get("/api/links/mine1", headers=STAFF)).status_code == 200
    assert (await client.get("/api/links/nothere", headers=OWNER)).status_code == 404


@pytest.mark.asyncio
async def test_update_link(client: AsyncClient) -> None:
    await client.post(
        "/api/links",
        json={"destination": "https://example.com/v1", "custom_code": "upd1", "expires_at": _future(), "tags": ["a"]},
        headers=OWNER,
    )

    response = await client.patch(
        "/api/links/upd1",
        json={"destination": "https://example.com/v2", "expires_at": None, "tags": ["b", "c"]},
        headers=OWNER,
    )
    assert response.status_code == 200
    data = response.json()
    assert data["destination"] == "https://example.com/v2"
    assert data["expires_at"] is None
    assert data["tags"] == ["b", "c"]
    assert data["active"] is True

    follow = await client.get("/r/upd1", follow_redirects=False)
    assert follow.headers["location"] == "https://example.com/v2"


@pytest.mark.asyncio
async def test_deactivate_link_blocks_redirect(client: AsyncClient) -> None:
    await client.post("/api/links", json={"destination": "https://example.com", "custom_code": "off2"}, headers=OWNER)

    response = await client.patch("/api/links/off2", json={"active": False}, headers=OWNER)
    assert response.status_code == 200
    assert response.json()["active"] is False

    assert (await client.get("/r/off2", follow_redirects=False)).status_code == 403


@pytest.mark.asyncio
async def test_update_link_rejects_bad_input(client: AsyncClient) -> None:
    await client.post("/api/links", json={"destination": "https://example.com", "custom_code": "upd2"}, headers=OWNER)

    assert (await client.patch("/api/links/upd2", json={"destination": None}, headers=OWNER)).status_code == 422
    assert (await client.patch("/api/links/upd2", json={"destination": "nope"}, headers=OWNER)).status_code == 422
    assert (await client.patch("/api/links/upd2", json={"active": True}, headers=OTHER)).status_code == 403


@pytest.mark.asyncio
async def test_delete_link_tombstones_code(client: AsyncClient) -> None:
    await client.post("/api/links", json={"destination": "https://example.com", "custom_code": "del1"}, headers=OWNER)

    assert (await client.delete("/api/links/del1", headers=OTHER)).status_code == 403
    assert (await client.delete("/api/links/del1", headers=OWNER)).status_code == 204
    assert (await client.get("/r/del1", follow_redirects=False)).status_code == 404
    assert (await client.get("/api/links/del1", headers=OWNER)).status_code == 404

    again = await client.post("/api/links", json={"destination": "https://example.com", "custom_code": "del1"}, headers=OWNER)
    assert again.status_code == 409


@pytest.mark.asyncio
async def test_list_links_scoped_to_caller(client: AsyncClient) -> None:
    for code, headers in [("own1", OWNER), ("own2", OWNER), ("oth1", OTHER)]:
        await client.post("/api/links", json={"destination": "https://example.com", "custom_code": code}, headers=headers)

    mine = (await client.get("/api/links", headers=OWNER)).json()
    assert mine["total"] == 2
    assert {item["code"] for item in mine["items"]} == {"own1", "own2"}

    # Non-staff callers cannot widen the owner filter.
    spoofed = (await client.get("/api/links", params={"owner_id": "owner-2"}, headers=OWNER)).json()
    assert {item["code"] for item in spoofed["items"]} == {"own1", "own2"}

    everyone = (await client.get("/api/links", headers=STAFF)).json()
    assert everyone["total"] == 3

    only_other = (await client.get("/api/links", params={"owner_id": "owner-2"}, headers=STAFF)).json()
    assert [item["code"] for item in only_other["items"]] == ["oth1"]


@pytest.mark.asyncio
async def test_list_links_filters_and_pagination(client: AsyncClient, manager) -> None:
    await client.post("/api/links", json={"destination": "https://example.com", "custom_code": "lst1", "tags": ["promo"]}, headers=OWNER)
    await client.post("/api/links", json={"destination": "https://example.com", "custom_code": "lst2", "active": False}, headers=OWNER)
    await client.post("/api/links", json={"destination": "https://example.com", "custom_code": "lst3", "tags": ["promo"]}, headers=OWNER)

    for _ in range(3):
        await client.get("/r/lst3", follow_redirects=False)
    await client.get("/r/lst1", follow_redirects=False)
    assert await manager.recorder.drain(timeout=10)

    promo = (await client.get("/api/links", params={"tag": "promo"}, headers=OWNER)).json()
    assert {item["code"] for item in promo["items"]} == {"lst1", "lst3"}

    inactive = (await client.get("/api/links", params={"active": "false"}, headers=OWNER)).json()
    assert [item["code"] for item in inactive["items"]] == ["lst2"]

    busy = (await client.get("/api/links", params={"min_clicks": 2}, headers=OWNER)).json()
    assert [item["code"] for item in busy["items"]] == ["lst3"]

    by_clicks = (
        await client.get("/api/links", params={"sort": "click_count", "order": "desc"}, headers=OWNER)
    ).json()
    assert [item["code"] for item in by_clicks["items"]] == ["lst3", "lst1", "lst2"]

    page = (
        await client.get("/api/links", params={"sort": "code", "order": "asc", "page": 2, "page_size": 2}, headers=OWNER)
    ).json()
    assert page["total"] == 3
    assert page["page"] == 2
    assert [item["code"] for item in page["items"]] == ["lst3"]


@pytest.mark.asyncio
async def test_list_links_rejects_bad_paging(client: AsyncClient) -> None:
    assert (await client.get("/api/links", params={"page": 0}, headers=OWNER)).status_code == 422
    assert (await client.get("/api/links", params={"page_size": 1000}, headers=OWNER)).status_code == 422
    assert (await client.get("/api/links", params={"sort": "destination"}, headers=OWNER)).status_code == 422
