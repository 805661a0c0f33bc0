"""
Tests for the upload API endpoint.

Endpoints tested:
- POST /api/v1/apps/upload
"""

import json

import pytest
from httpx import AsyncClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from appdrop.config import get_settings
from appdrop.db.models import AppDB, ChannelDB, ReleaseDB
from appdrop.services import package_info
from appdrop.services.auth_service import create_access_token

from tests.factories import StaticParser, build_ipa, make_user, make_web_hook


def _files(path, filename: str = "demo.ipa") -> dict:
    return {"file": (filename, open(path, "rb"), "application/octet-stream")}


async def _upload(client: AsyncClient, path, data=None, headers=None, filename="demo.ipa"):
    files = _files(path, filename)
    try:
        return await client.post("/api/v1/apps/upload", files=files, data=data or {}, headers=headers)
    finally:
        files["file"][1].close()


class TestUploadCreatePath:
    async def test_first_upload_creates_release(self, client: AsyncClient, tmp_path):
        path = build_ipa(tmp_path / "demo.ipa", release_version="2.1.0", build_version="210")

        response = await _upload(client, path)

        assert response.status_code == 201
        data = response.json()
        assert data["version"] == 1
        assert data["bundle_id"] == "com.example.demo"
        assert data["release_version"] == "2.1.0"
        assert data["build_version"] == "210"
        assert data["release_type"] == "release"
        assert data["app_name"] == "Demo production variant iOS"
        assert data["source"] == "API"
        assert data["file"].startswith("packages/")
        assert data["download_filename"].endswith(".ipa")
        assert data["channel"]["device_type"] == "iOS"
        assert data["channel"]["key"]

    async def test_reupload_with_channel_key(self, client: AsyncClient, db_session: AsyncSession, tmp_path):
        path = build_ipa(tmp_path / "demo.ipa")
        first = (await _upload(client, path)).json()

        response = await _upload(client, path, data={"channel_key": first["channel"]["key"]})

        assert response.status_code == 201
        second = response.json()
        assert second["version"] > first["version"]
        assert second["channel"]["id"] == first["channel"]["id"]
        assert await db_session.scalar(select(func.count()).select_from(AppDB)) == 1
        assert await db_session.scalar(select(func.count()).select_from(ChannelDB)) == 1

    async def test_adhoc_devices(self, client: AsyncClient, tmp_path):
        path = build_ipa(tmp_path / "demo.ipa", provisioned_devices=["UDID1", "UDID2", "UDID1"])

        response = await _upload(client, path, data={"devices": "ignored"})

        assert response.status_code == 201
        data = response.json()
        assert data["version"] == 1
        assert data["release_type"] == "adhoc"
        assert data["devices_count"] == 2
        assert data["icon"].startswith("icons/")

    async def test_optional_fields(self, client: AsyncClient, tmp_path):
        path = build_ipa(tmp_path / "demo.ipa")

        response = await _upload(
            client,
            path,
            data={
                "name": "Custom Name",
                "changelog": "fix login\nnew icon",
                "custom_fields": json.dumps({"env": "qa"}),
                "branch": "origin/develop",
                "git_commit": "abcdef0123456789",
                "ci_url": "https://ci.example.com/7",
                "source": "jenkins",
                "release_type": "beta",
            },
        )

        assert response.status_code == 201
        data = response.json()
        assert data["app_name"].startswith("Custom Name ")
        assert data["changelog"] == [{"message": "fix login"}, {"message": "new icon"}]
        assert data["custom_fields"] == {"env": "qa"}
        assert data["branch"] == "develop"
        assert data["short_git_commit"] == "abcdef012"
        assert data["source"] == "API"
        assert data["release_type"] == "beta"


class TestUploadUpdatePath:
    async def test_updates_channel_fields(self, client: AsyncClient, db_session: AsyncSession, tmp_path):
        path = build_ipa(tmp_path / "demo.ipa")
        first = (await _upload(client, path)).json()

        response = await _upload(
            client, path,
            data={"channel_key": first["channel"]["key"], "slug": "demo-beta", "git_url": "https://git/demo"},
        )

        assert response.status_code == 201
        assert response.json()["channel"]["slug"] == "demo-beta"
        channel = await db_session.get(ChannelDB, first["channel"]["id"])
        assert channel.git_url == "https://git/demo"

    async def test_bundle_mismatch(self, client: AsyncClient, db_session: AsyncSession, tmp_path):
        first = (await _upload(client, build_ipa(tmp_path / "demo.ipa"))).json()
        channel = await db_session.get(ChannelDB, first["channel"]["id"])
        channel.bundle_id = "com.example.demo"
        await db_session.commit()

        other = build_ipa(tmp_path / "other.ipa", bundle_id="com.example.other")
        response = await _upload(client, other, data={"channel_key": first["channel"]["key"]})

        assert response.status_code == 422
        data = response.json()
        assert data["error"] == "bundle_mismatch"
        assert data["expected"] == "com.example.demo"
        assert data["actual"] == "com.example.other"
        assert data["channel_id"] == first["channel"]["id"]
        count = await db_session.scalar(select(func.count()).select_from(ReleaseDB))
        assert count == 1

    async def test_wildcard_channel_accepts_any_bundle(self, client: AsyncClient, db_session: AsyncSession, tmp_path):
        first = (await _upload(client, build_ipa(tmp_path / "demo.ipa"))).json()
        channel = await db_session.get(ChannelDB, first["channel"]["id"])
        channel.bundle_id = "*"
        await db_session.commit()

        other = build_ipa(tmp_path / "other.ipa", bundle_id="com.example.other")
        response = await _upload(client, other, data={"channel_key": first["channel"]["key"]})

        assert response.status_code == 201
        assert response.json()["version"] == 2


class TestUploadRejected:
    async def test_unsupported_file(self, client: AsyncClient, tmp_path):
        path = tmp_path / "notes.txt"
        path.write_text("not a package")

        response = await _upload(client, path, filename="notes.txt")

        assert response.status_code == 415

    async def test_malformed_package(self, client: AsyncClient, tmp_path):
        import zipfile

        path = tmp_path / "broken.ipa"
        with zipfile.ZipFile(path, "w") as zf:
            zf.writestr("Payload/Demo.app/Info.plist", b"garbage")

        response = await _upload(client, path)

        assert response.status_code == 422

    async def test_unknown_failure_hides_detail(self, client: AsyncClient, tmp_path, monkeypatch):
        monkeypatch.setattr(
            package_info, "get_package_parser", lambda: StaticParser(error=RuntimeError("secret internals"))
        )
        path = build_ipa(tmp_path / "demo.ipa")

        response = await _upload(client, path)

        assert response.status_code == 422
        assert "secret internals" not in response.text

    async def test_too_large(self, client: AsyncClient, tmp_path, monkeypatch):
        monkeypatch.setenv("MAX_UPLOAD_SIZE", "16")
        get_settings.cache_clear()
        path = build_ipa(tmp_path / "demo.ipa")

        response = await _upload(client, path)

        assert response.status_code == 413

    async def test_missing_file(self, client: AsyncClient):
        response = await client.post("/api/v1/apps/upload", data={"name": "x"})
        assert response.status_code == 422


class TestUploadWebHooks:
    async def test_upload_notifies_channel_hooks(
        self, client: AsyncClient, db_session: AsyncSession, notifier, webhook_transport, tmp_path
    ):
        path = build_ipa(tmp_path / "demo.ipa")
        first = (await _upload(client, path)).json()
        await notifier.drain()
        assert webhook_transport.requests == []

        channel = await db_session.get(ChannelDB, first["channel"]["id"])
        channel.web_hooks.append(make_web_hook(url="https://hooks.example.com/ci"))
        await db_session.commit()

        response = await _upload(client, path, data={"channel_key": first["channel"]["key"]})
        assert response.status_code == 201
        await notifier.drain()

        assert len(webhook_transport.requests) == 1
        payload = json.loads(webhook_transport.requests[0].content)
        assert payload["event"] == "upload_events"
        assert payload["release"]["version"] == 2

    async def test_failing_hook_does_not_fail_upload(
        self, client: AsyncClient, db_session: AsyncSession, notifier, webhook_transport, tmp_path
    ):
        path = build_ipa(tmp_path / "demo.ipa")
        first = (await _upload(client, path)).json()
        channel = await db_session.get(ChannelDB, first["channel"]["id"])
        channel.web_hooks.append(make_web_hook(url="https://down.example.com/ci"))
        await db_session.commit()
        webhook_transport.fail_hosts = ("down.example.com",)

        response = await _upload(client, path, data={"channel_key": first["channel"]["key"]})
        await notifier.drain()

        assert response.status_code == 201
        assert len(webhook_transport.requests) == 1


class TestUploadAuth:
    @pytest.fixture(autouse=True)
    def _enable_auth(self, monkeypatch):
        monkeypatch.setenv("AUTH_ENABLED", "true")
        monkeypatch.setenv("JWT_SECRET_KEY", "test-secret")
        get_settings.cache_clear()

    async def test_requires_token(self, client: AsyncClient, tmp_path):
        response = await _upload(client, build_ipa(tmp_path / "demo.ipa"))
        assert response.status_code == 401

    async def test_rejects_bad_token(self, client: AsyncClient, tmp_path):
        response = await _upload(
            client, build_ipa(tmp_path / "demo.ipa"), headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    async def test_owner_from_token(self, client: AsyncClient, db_session: AsyncSession, tmp_path):
        user = make_user(username="ci-bot")
        db_session.add(user)
        await db_session.commit()
        token = create_access_token(user.id, user.username, user.role, "test-secret")

        response = await _upload(
            client, build_ipa(tmp_path / "demo.ipa"), headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 201
        app = (await db_session.execute(select(AppDB))).scalar_one()
        assert app.creator_id == user.id
