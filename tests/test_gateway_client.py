import base64
import json

import httpx
import pytest
import respx
from httpx import Response

from app.envelope import EnvelopeError
from app.gateway import GatewayClient, GatewayResult


@pytest.mark.asyncio
async def test_get_sends_api_key_and_keeps_query():
    client = GatewayClient("http://gateway.test/", api_key="gw-key")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["headers"] = request.headers
                captured["url"] = str(request.url)
                return Response(200, json={"data": [{"id": 1}]})

            respx_mock.get(url__startswith="http://gateway.test/pop/stats").mock(side_effect=handler)
            result = await client.get("/pop/stats?group_by=poster&region=brt")
            assert result.ok
            assert result.rows().items == [{"id": 1}]
            assert captured["headers"]["X-API-Key"] == "gw-key"
            assert "region=brt" in captured["url"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_non_2xx_is_a_result_not_an_error():
    client = GatewayClient("http://gateway.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://gateway.test/ads/devices/x").mock(return_value=Response(404, json={"error": "nf"}))
            result = await client.get("/ads/devices/x")
            assert result.status == 404
            assert result.error is None
            assert not result.ok
            step = result.step("adsDevice")
            assert step.status == 404
            assert "nf" in step.body
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_transport_failure_sets_error():
    client = GatewayClient("http://gateway.test")
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            respx_mock.get("http://gateway.test/pop").mock(side_effect=httpx.ConnectError("refused"))
            result = await client.get("/pop")
            assert result.status == 0
            assert result.error
            assert result.step("pop").error == result.error
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_request_json_sends_query_and_body():
    client = GatewayClient("http://gateway.test")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["json"] = json.loads(request.content.decode("utf-8"))
                captured["params"] = dict(request.url.params)
                return Response(200, json={"ok": True})

            respx_mock.post(url__startswith="http://gateway.test/ads/creatives/uploadByUrl").mock(side_effect=handler)
            result = await client.request_json(
                "post", "/ads/creatives/uploadByUrl", {"dry_run": "1"}, {"campaign_id": "abc"}
            )
            assert result.ok
            assert captured["json"] == {"campaign_id": "abc"}
            assert captured["params"] == {"dry_run": "1"}
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_request_multipart_decodes_files():
    client = GatewayClient("http://gateway.test")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:
            def handler(request):
                captured["body"] = request.content
                captured["type"] = request.headers["content-type"]
                return Response(201, json={"id": "c1"})

            respx_mock.post("http://gateway.test/ads/creatives/upload").mock(side_effect=handler)
            result = await client.request_multipart(
                "POST",
                "/ads/creatives/upload",
                multipart={
                    "fields": {"campaign_id": ["abc"]},
                    "files": [{"file_name": "a.png", "content_type": "image/png", "base64": base64.b64encode(b"PNGDATA").decode()}],
                },
            )
            assert result.status == 201
            assert captured["type"].startswith("multipart/form-data")
            assert b"PNGDATA" in captured["body"]
            assert b"a.png" in captured["body"]
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_request_multipart_rejects_bad_base64():
    client = GatewayClient("http://gateway.test")
    try:
        result = await client.request_multipart(
            "POST", "/ads/creatives/upload", multipart={"files": [{"file_name": "a.png", "base64": "***"}]}
        )
        assert result.error and "a.png" in result.error
    finally:
        await client.close()


def test_result_json_raises_envelope_error_on_garbage():
    result = GatewayResult(status=200, body=b"<html>")
    with pytest.raises(EnvelopeError):
        result.json()
