"""
Tests for the channel settings API endpoints.

Endpoints tested:
- GET /api/v1/channels/{slug}
- PATCH /api/v1/channels/{slug}
"""

from httpx import AsyncClient

from tests.factories import build_ipa


async def _first_upload(client: AsyncClient, path) -> dict:
    with open(path, "rb") as f:
        response = await client.post(
            "/api/v1/apps/upload", files={"file": ("demo.ipa", f, "application/octet-stream")}
        )
    return response.json()["channel"]


async def _reupload(client: AsyncClient, path, key: str):
    with open(path, "rb") as f:
        return await client.post(
            "/api/v1/apps/upload",
            files={"file": ("demo.ipa", f, "application/octet-stream")},
            data={"channel_key": key},
        )


class TestGetChannel:
    async def test_settings(self, client: AsyncClient, tmp_path):
        channel = await _first_upload(client, build_ipa(tmp_path / "demo.ipa"))

        response = await client.get(f"/api/v1/channels/{channel['slug']}")

        assert response.status_code == 200
        data = response.json()
        assert data["key"] == channel["key"]
        assert data["device_type"] == "iOS"
        assert data["bundle_id"] is None
        assert data["has_password"] is False

    async def test_unknown_channel(self, client: AsyncClient):
        response = await client.get("/api/v1/channels/nope")
        assert response.status_code == 404


class TestUpdateChannel:
    async def test_bundle_id_enforced_on_upload(self, client: AsyncClient, tmp_path):
        channel = await _first_upload(client, build_ipa(tmp_path / "demo.ipa"))

        response = await client.patch(
            f"/api/v1/channels/{channel['slug']}", json={"bundle_id": "com.example.demo"}
        )
        assert response.status_code == 200
        assert response.json()["bundle_id"] == "com.example.demo"

        other = build_ipa(tmp_path / "other.ipa", bundle_id="com.example.other")
        rejected = await _reupload(client, other, channel["key"])
        assert rejected.status_code == 422
        assert rejected.json()["error"] == "bundle_mismatch"

        accepted = await _reupload(client, build_ipa(tmp_path / "again.ipa"), channel["key"])
        assert accepted.status_code == 201

    async def test_wildcard_accepts_any_bundle(self, client: AsyncClient, tmp_path):
        channel = await _first_upload(client, build_ipa(tmp_path / "demo.ipa"))
        await client.patch(f"/api/v1/channels/{channel['slug']}", json={"bundle_id": "com.example.demo"})

        response = await client.patch(f"/api/v1/channels/{channel['slug']}", json={"bundle_id": "*"})
        assert response.json()["bundle_id"] == "*"

        other = build_ipa(tmp_path / "other.ipa", bundle_id="com.example.other")
        assert (await _reupload(client, other, channel["key"])).status_code == 201

    async def test_omitted_fields_unchanged(self, client: AsyncClient, tmp_path):
        channel = await _first_upload(client, build_ipa(tmp_path / "demo.ipa"))
        slug = channel["slug"]
        await client.patch(f"/api/v1/channels/{slug}", json={"git_url": "https://git.example.com/demo"})

        response = await client.patch(f"/api/v1/channels/{slug}", json={"password": "s3cret"})

        data = response.json()
        assert data["git_url"] == "https://git.example.com/demo"
        assert data["has_password"] is True

    async def test_empty_string_clears(self, client: AsyncClient, tmp_path):
        channel = await _first_upload(client, build_ipa(tmp_path / "demo.ipa"))
        slug = channel["slug"]
        await client.patch(f"/api/v1/channels/{slug}", json={"password": "s3cret"})

        response = await client.patch(f"/api/v1/channels/{slug}", json={"password": ""})

        assert response.json()["has_password"] is False
