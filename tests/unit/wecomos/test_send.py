"""Tests for outbound sends and reply delivery."""

from pathlib import Path

import httpx
import pytest

from wecom_fakes import FakeWeComApi, make_config
from wecomos.channels.wecom.client import WeComClient
from wecomos.channels.wecom.delivery import deliver_reply
from wecomos.channels.wecom.send import (
    MediaError,
    OutboundSender,
    load_media,
    normalize_target,
    resolve_media_type,
)
from wecomos.channels.wecom.targets import WebhookTarget
from wecomos.channels.wecom.token_cache import AccessTokenCache
from wecomos.host import ReplyPayload
from wecomos.host_local import LocalHostRuntime


def _sender(api: FakeWeComApi, **wecom) -> OutboundSender:
    client = WeComClient(transport=api.transport)
    return OutboundSender(client, AccessTokenCache(client), make_config(**wecom), media_transport=api.transport)


@pytest.mark.parametrize("target,expected", [
    ("bob", {"touser": "bob"}),
    ("@bob", {"touser": "bob"}),
    (" party:2 ", {"toparty": "2"}),
    ("tag:7", {"totag": "7"}),
])
def test_normalize_target(target, expected):
    assert normalize_target(target) == expected


@pytest.mark.parametrize("content_type,expected", [
    ("image/png", "image"),
    ("IMAGE/JPEG", "image"),
    ("audio/amr", "voice"),
    ("voice/silk", "voice"),
    ("video/mp4", "video"),
    ("application/pdf", "file"),
    (None, "file"),
])
def test_resolve_media_type(content_type, expected):
    assert resolve_media_type(content_type) == expected


class TestLoadMedia:
    @pytest.mark.asyncio
    async def test_local_file(self, tmp_path: Path):
        path = tmp_path / "photo.png"
        path.write_bytes(b"\x89PNG data")

        media = await load_media(str(path), 1024)

        assert media.data == b"\x89PNG data"
        assert media.content_type == "image/png"
        assert media.filename == "photo.png"

    @pytest.mark.asyncio
    async def test_local_file_too_large(self, tmp_path: Path):
        path = tmp_path / "big.bin"
        path.write_bytes(b"x" * 100)
        with pytest.raises(MediaError):
            await load_media(str(path), 10)

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path: Path):
        with pytest.raises(MediaError):
            await load_media(str(tmp_path / "nope.png"), 1024)

    @pytest.mark.asyncio
    async def test_http_download(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(
            200, content=b"%PDF", headers={"content-type": "application/pdf; charset=binary"}
        ))

        media = await load_media("https://files.example.com/docs/report%20v1.pdf", 1024, transport=transport)

        assert media.data == b"%PDF"
        assert media.content_type == "application/pdf"
        assert media.filename == "report v1.pdf"

    @pytest.mark.asyncio
    async def test_http_too_large(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, content=b"x" * 100))
        with pytest.raises(MediaError):
            await load_media("https://files.example.com/a.bin", 10, transport=transport)

    @pytest.mark.asyncio
    async def test_http_error_status(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404))
        with pytest.raises(MediaError):
            await load_media("https://files.example.com/a.bin", 10, transport=transport)


class TestSendText:
    @pytest.mark.asyncio
    async def test_send_text(self, api: FakeWeComApi):
        result = await _sender(api).send_text("bob", "hello")

        assert result.ok
        assert result.message_id == "msg-1"
        assert api.sent[0]["touser"] == "bob"
        assert api.sent[0]["agentid"] == 1000002
        assert api.sent[0]["safe"] == 0

    @pytest.mark.asyncio
    async def test_truncates_to_text_limit(self, api: FakeWeComApi):
        await _sender(api).send_text("party:2", "x" * 3000)

        assert api.sent[0]["toparty"] == "2"
        assert len(api.texts()[0]) == 2048

    @pytest.mark.asyncio
    async def test_unconfigured_account(self, api: FakeWeComApi):
        result = await _sender(api, secret=None).send_text("bob", "hello")

        assert not result.ok
        assert "not configured" in result.error
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_missing_target_or_text(self, api: FakeWeComApi):
        sender = _sender(api)
        assert not (await sender.send_text(" ", "hello")).ok
        assert not (await sender.send_text("bob", "  ")).ok
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_vendor_error_returned(self, api: FakeWeComApi):
        api.fail_sends.add(1)
        result = await _sender(api).send_text("ghost", "hello")
        assert not result.ok
        assert "81013" in result.error

    @pytest.mark.asyncio
    async def test_token_reused_across_sends(self, api: FakeWeComApi):
        sender = _sender(api)
        await sender.send_text("bob", "one")
        await sender.send_text("bob", "two")
        assert api.token_calls == 1


class TestSendMedia:
    @pytest.mark.asyncio
    async def test_caption_then_media(self, api: FakeWeComApi, tmp_path: Path):
        path = tmp_path / "chart.png"
        path.write_bytes(b"\x89PNG")

        result = await _sender(api).send_media("bob", str(path), caption="see chart")

        assert result.ok
        assert api.uploads == ["image"]
        assert [m["msgtype"] for m in api.sent] == ["text", "image"]
        assert api.sent[0]["text"]["content"] == "see chart"
        assert api.sent[1]["image"] == {"media_id": "media-1"}

    @pytest.mark.asyncio
    async def test_media_too_large(self, api: FakeWeComApi, tmp_path: Path):
        path = tmp_path / "big.bin"
        path.write_bytes(b"x" * 2048)

        result = await _sender(api, mediaMaxMb=0.001).send_media("bob", str(path))

        assert not result.ok
        assert api.uploads == []
        assert api.sent == []


class TestDeliverReply:
    def _target(self, **wecom) -> WebhookTarget:
        status = {}
        target = WebhookTarget(
            account=make_config(**wecom).account(),
            path="/webhook/wecom/default",
            status_sink=status.update,
        )
        target.status = status
        return target

    @pytest.mark.asyncio
    async def test_chunks_text(self, api: FakeWeComApi):
        target = self._target(textChunkLimit=10)

        await deliver_reply(ReplyPayload(text="aaaa bbbb cccc"), "bob", target, _sender(api, textChunkLimit=10), LocalHostRuntime())

        assert api.texts() == ["aaaa bbbb", "cccc"]
        assert "last_outbound_at" in target.status

    @pytest.mark.asyncio
    async def test_failed_chunk_does_not_stop_the_rest(self, api: FakeWeComApi):
        api.fail_sends.add(1)
        target = self._target(textChunkLimit=10)

        await deliver_reply(
            ReplyPayload(text="aaaa bbbb cccc dddd"), "bob", target, _sender(api, textChunkLimit=10), LocalHostRuntime()
        )

        assert api.texts() == ["aaaa bbbb", "cccc dddd"]

    @pytest.mark.asyncio
    async def test_media_reply(self, api: FakeWeComApi, tmp_path: Path):
        first = tmp_path / "a.png"
        first.write_bytes(b"a")
        second = tmp_path / "b.mp4"
        second.write_bytes(b"b")

        await deliver_reply(
            ReplyPayload(text="two files", media_urls=[str(first), "", str(second)]),
            "bob",
            self._target(),
            _sender(api),
            LocalHostRuntime(),
        )

        assert [m["msgtype"] for m in api.sent] == ["text", "image", "video"]
        assert api.texts() == ["two files"]

    @pytest.mark.asyncio
    async def test_empty_reply_sends_nothing(self, api: FakeWeComApi):
        await deliver_reply(ReplyPayload(text="  "), "bob", self._target(), _sender(api), LocalHostRuntime())
        assert api.requests == []

    @pytest.mark.asyncio
    async def test_tables_converted_before_chunking(self, api: FakeWeComApi):
        text = "| a | b |\n| --- | --- |\n| 1 | 2 |"

        await deliver_reply(ReplyPayload(text=text), "bob", self._target(), _sender(api), LocalHostRuntime(), table_mode="bullets")

        assert api.texts() == ["- a: 1; b: 2"]
