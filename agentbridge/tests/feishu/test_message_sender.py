"""Tests for the Feishu API client against a local fake API server."""

import json

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from agentbridge.core.settings import FeishuSettings
from agentbridge.feishu.message_sender import MessageSender


class FakeFeishuApi:
    """Minimal stand-in for the Open API endpoints the sender uses."""

    def __init__(self):
        self.token_requests = 0
        self.requests = []
        self.message_code = 0
        self.image_bytes = b"\x89PNG-data"
        self.app = web.Application()
        self.app.router.add_post("/open-apis/auth/v3/tenant_access_token/internal", self.token)
        self.app.router.add_post("/open-apis/im/v1/messages", self.create_message)
        self.app.router.add_patch("/open-apis/im/v1/messages/{message_id}", self.patch_message)
        self.app.router.add_get("/open-apis/im/v1/messages/{message_id}/resources/{key}", self.resource)
        self.app.router.add_post("/open-apis/im/v1/images", self.upload_image)
        self.app.router.add_post("/open-apis/im/v1/files", self.upload_file)

    async def token(self, request):
        self.token_requests += 1
        body = await request.json()
        assert body == {"app_id": "cli_test", "app_secret": "secret"}
        return web.json_response({"code": 0, "tenant_access_token": f"t-{self.token_requests}", "expire": 7200})

    def _record(self, request, body):
        self.requests.append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "auth": request.headers.get("Authorization"),
                "body": body,
            }
        )

    async def create_message(self, request):
        self._record(request, await request.json())
        if self.message_code:
            code, self.message_code = self.message_code, 0
            return web.json_response({"code": code, "msg": "token invalid"})
        return web.json_response({"code": 0, "data": {"message_id": "om_new"}})

    async def patch_message(self, request):
        self._record(request, await request.json())
        if request.match_info["message_id"] == "om_missing":
            return web.json_response({"code": 230001, "msg": "message not found"}, status=400)
        return web.json_response({"code": 0, "data": {}})

    async def resource(self, request):
        self._record(request, None)
        if request.match_info["key"] == "img_missing":
            return web.Response(status=404, text="not found")
        return web.Response(body=self.image_bytes, content_type="image/png")

    async def upload_image(self, request):
        form = await request.post()
        self._record(request, {"image_type": form["image_type"], "filename": form["image"].filename})
        return web.json_response({"code": 0, "data": {"image_key": "img_uploaded"}})

    async def upload_file(self, request):
        form = await request.post()
        self._record(
            request,
            {"file_type": form["file_type"], "file_name": form["file_name"], "content": form["file"].file.read()},
        )
        return web.json_response({"code": 0, "data": {"file_key": "file_uploaded"}})


@pytest_asyncio.fixture
async def api():
    fake = FakeFeishuApi()
    server = test_utils.TestServer(fake.app)
    await server.start_server()
    fake.base_url = str(server.make_url(""))
    yield fake
    await server.close()


@pytest_asyncio.fixture
async def sender(api):
    settings = FeishuSettings(app_id="cli_test", app_secret="secret", base_url=api.base_url)
    client = MessageSender(settings, timeout_seconds=5.0)
    yield client
    await client.close()


class TestMessages:
    """Test sending and updating messages."""

    @pytest.mark.asyncio
    async def test_send_card(self, sender, api):
        message_id = await sender.send_card("oc_1", '{"elements": []}')

        assert message_id == "om_new"
        request = api.requests[0]
        assert request["query"] == {"receive_id_type": "chat_id"}
        assert request["auth"] == "Bearer t-1"
        assert request["body"] == {"receive_id": "oc_1", "msg_type": "interactive", "content": '{"elements": []}'}

    @pytest.mark.asyncio
    async def test_token_is_cached(self, sender, api):
        await sender.send_card("oc_1", "{}")
        await sender.send_text("oc_1", "hello")

        assert api.token_requests == 1
        assert json.loads(api.requests[1]["body"]["content"]) == {"text": "hello"}

    @pytest.mark.asyncio
    async def test_invalid_token_code_forces_refresh(self, sender, api):
        api.message_code = 99991663

        assert await sender.send_card("oc_1", "{}") is None
        assert await sender.send_card("oc_1", "{}") == "om_new"

        assert api.token_requests == 2
        assert api.requests[1]["auth"] == "Bearer t-2"

    @pytest.mark.asyncio
    async def test_update_card(self, sender, api):
        assert await sender.update_card("om_1", '{"a": 1}') is True

        request = api.requests[0]
        assert request["method"] == "PATCH"
        assert request["path"] == "/open-apis/im/v1/messages/om_1"
        assert request["body"] == {"content": '{"a": 1}'}

    @pytest.mark.asyncio
    async def test_update_card_failure_returns_false(self, sender):
        assert await sender.update_card("om_missing", "{}") is False


class TestMedia:
    """Test image and file transfer."""

    @pytest.mark.asyncio
    async def test_download_image(self, sender, api, tmp_path):
        dest = tmp_path / "nested" / "img.png"

        assert await sender.download_image("om_1", "img_v2_1", dest) is True

        assert dest.read_bytes() == api.image_bytes
        assert api.requests[0]["query"] == {"type": "image"}

    @pytest.mark.asyncio
    async def test_download_image_failure(self, sender, tmp_path):
        dest = tmp_path / "img.png"

        assert await sender.download_image("om_1", "img_missing", dest) is False
        assert not dest.exists()

    @pytest.mark.asyncio
    async def test_send_image_file(self, sender, api, tmp_path):
        image = tmp_path / "chart.png"
        image.write_bytes(b"png")

        assert await sender.send_image_file("oc_1", image) is True

        upload, send = api.requests
        assert upload["body"] == {"image_type": "message", "filename": "chart.png"}
        assert send["body"]["msg_type"] == "image"
        assert json.loads(send["body"]["content"]) == {"image_key": "img_uploaded"}

    @pytest.mark.asyncio
    async def test_send_local_file(self, sender, api, tmp_path):
        report = tmp_path / "report.pdf"
        report.write_bytes(b"%PDF-1.4")

        assert await sender.send_local_file("oc_1", str(report), "pdf") is True

        upload, send = api.requests
        assert upload["body"] == {"file_type": "pdf", "file_name": "report.pdf", "content": b"%PDF-1.4"}
        assert send["body"]["msg_type"] == "file"
        assert json.loads(send["body"]["content"]) == {"file_key": "file_uploaded"}

    @pytest.mark.asyncio
    async def test_missing_local_file(self, sender, api, tmp_path):
        assert await sender.send_local_file("oc_1", tmp_path / "nope.pdf") is False
        assert api.requests == []


class TestUnreachableApi:
    """Test transport failures are absorbed."""

    @pytest.mark.asyncio
    async def test_connection_refused(self, unused_tcp_port):
        settings = FeishuSettings(app_id="cli_test", app_secret="secret", base_url=f"http://127.0.0.1:{unused_tcp_port}")
        sender = MessageSender(settings, timeout_seconds=2.0)
        try:
            assert await sender.send_card("oc_1", "{}") is None
            assert await sender.update_card("om_1", "{}") is False
        finally:
            await sender.close()
