"""Tests for WeCom payload parsing and canonicalization."""

import pytest

from wecomos.channels.wecom.payload import (
    WeComMessage,
    canonicalize_payload,
    extract_encrypt,
    lookup,
    parse_body,
    parse_xml,
)

TEXT_XML = """<xml>
<ToUserName><![CDATA[wwcorp0001]]></ToUserName>
<FromUserName><![CDATA[bob]]></FromUserName>
<CreateTime>1700000000</CreateTime>
<MsgType><![CDATA[text]]></MsgType>
<Content><![CDATA[hello <b>&amp; world</b>]]></Content>
<MsgId>007</MsgId>
<AgentID>1000002</AgentID>
</xml>"""


class TestParseXml:
    def test_documented_example(self):
        xml = "<xml><ToUserName><![CDATA[a]]></ToUserName><CreateTime>123</CreateTime></xml>"
        assert parse_xml(xml) == {"ToUserName": "a", "CreateTime": 123}

    def test_cdata_kept_verbatim(self):
        record = parse_xml(TEXT_XML)
        assert record["Content"] == "hello <b>&amp; world</b>"
        assert record["FromUserName"] == "bob"

    def test_non_canonical_numbers_stay_strings(self):
        record = parse_xml(TEXT_XML)
        assert record["MsgId"] == "007"
        assert record["AgentID"] == 1000002
        assert record["CreateTime"] == 1700000000

    def test_plain_values_unescaped(self):
        record = parse_xml("<xml><Content>a &lt; b &amp; c</Content></xml>")
        assert record["Content"] == "a < b & c"

    def test_without_wrapper(self):
        assert parse_xml("<Encrypt><![CDATA[abc]]></Encrypt>") == {"Encrypt": "abc"}

    @pytest.mark.parametrize("value", [None, "", "not xml at all", 42])
    def test_unreadable_input_gives_empty_record(self, value):
        assert parse_xml(value) == {}


class TestParseBody:
    def test_json_object(self):
        assert parse_body('{"encrypt": "abc"}') == {"encrypt": "abc"}

    def test_json_non_object_falls_back_to_xml(self):
        assert parse_body("[1, 2]") is None

    def test_xml(self):
        assert parse_body(TEXT_XML)["MsgType"] == "text"

    @pytest.mark.parametrize("value", [None, "", "   \n"])
    def test_empty(self, value):
        assert parse_body(value) is None

    def test_garbage(self):
        assert parse_body("hello") is None


class TestLookup:
    @pytest.mark.parametrize("key", ["FromUserName", "fromUserName", "fromusername"])
    def test_case_insensitive(self, key):
        assert lookup({key: "bob"}, "FromUserName") == "bob"

    def test_missing(self):
        assert lookup({"a": 1}, "FromUserName") is None

    def test_canonicalize_backfills_keys(self):
        canonical = canonicalize_payload({"fromusername": "bob", "msgtype": "text"})
        assert canonical["FromUserName"] == "bob"
        assert canonical["MsgType"] == "text"
        assert canonical["fromusername"] == "bob"


class TestExtractEncrypt:
    @pytest.mark.parametrize("payload", [
        {"Encrypt": " abc "},
        {"encrypt": "abc"},
        {"ENCRYPT": "abc"},
    ])
    def test_found(self, payload):
        assert extract_encrypt(payload) == "abc"

    @pytest.mark.parametrize("payload", [None, {}, {"Encrypt": ""}, {"Encrypt": "  "}])
    def test_missing(self, payload):
        assert extract_encrypt(payload) is None


class TestWeComMessage:
    def test_from_xml_record(self):
        message = WeComMessage.from_payload(parse_xml(TEXT_XML))

        assert message.from_user_name == "bob"
        assert message.to_user_name == "wwcorp0001"
        assert message.msg_type == "text"
        assert message.is_text
        assert message.msg_id == "007"
        assert message.agent_id == "1000002"
        assert message.create_time == 1700000000
        assert not message.is_group

    def test_from_camel_case_json(self):
        message = WeComMessage.from_payload({
            "fromUserName": "alice",
            "msgType": "TEXT",
            "content": "hi",
            "agentId": 1000002,
            "createTime": "1700000000",
        })

        assert message.from_user_name == "alice"
        assert message.is_text
        assert message.content == "hi"
        assert message.agent_id == "1000002"
        assert message.create_time == 1700000000

    def test_missing_fields_default(self):
        message = WeComMessage.from_payload({})
        assert message.from_user_name == ""
        assert message.content == ""
        assert message.create_time is None
        assert not message.is_text

    @pytest.mark.parametrize("payload", [
        {"FromUserName": "room1@chatroom", "MsgType": "text"},
        {"FromUserName": "bob", "MsgType": "text", "ChatId": "wr123"},
        {"FromUserName": "bob", "MsgType": "text", "ChatInfo": {"name": "team"}},
        {"FromUserName": "bob", "MsgType": "text", "ChatInfo": '{"name": "team"}'},
        {"FromUserName": "bob", "MsgType": "chatroom_text"},
    ])
    def test_group_detection(self, payload):
        assert WeComMessage.from_payload(payload).is_group

    def test_invalid_chat_info_string_ignored(self):
        message = WeComMessage.from_payload({"FromUserName": "bob", "ChatInfo": "{oops"})
        assert message.chat_info is None
        assert not message.is_group
