from __future__ import annotations

import base64
import json

import httpx
import pytest

from conftest import BACKEND_URL
from sheetzip.api.schemas import PrepareRequest
from sheetzip.config import Settings
from sheetzip.errors import BackendConfigError, TransientUpstreamError, UpstreamError
from sheetzip.services.apps_script import SNIPPET_CHARS, AppsScriptClient, decode_backend_body


class Recorder:
    """MockTransport handler replaying a list of responses or exceptions."""

    def __init__(self, responses: list) -> None:
        self._responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def _client(handler, **overrides) -> AppsScriptClient:
    settings = Settings(apps_script_url=BACKEND_URL, apps_script_backoff_s=0, **overrides)
    return AppsScriptClient(settings, transport=httpx.MockTransport(handler))


def test_html_body_is_a_backend_config_error_with_snippet() -> None:
    body = "<!DOCTYPE html><html><head><title>Google Drive - Access denied</title></head>"

    with pytest.raises(BackendConfigError) as excinfo:
        decode_backend_body("\n  " + body)

    assert isinstance(excinfo.value, UpstreamError)
    assert "Access denied" in str(excinfo.value)


def test_non_json_body_snippet_is_truncated() -> None:
    body = "Exception: " + "x" * 1000

    with pytest.raises(UpstreamError) as excinfo:
        decode_backend_body(body)

    assert not isinstance(excinfo.value, BackendConfigError)
    assert body[:SNIPPET_CHARS] in str(excinfo.value)
    assert body[: SNIPPET_CHARS + 1] not in str(excinfo.value)


@pytest.mark.parametrize(
    ("text", "message"),
    [
        ('{"ok": false, "error": "Sheet CT01 not found"}', "Sheet CT01 not found"),
        ('{"ok": false}', "Transform backend error"),
        ("[1, 2]", "did not return JSON"),
    ],
)
def test_failure_payloads_raise(text: str, message: str) -> None:
    with pytest.raises(UpstreamError, match=message):
        decode_backend_body(text)


async def test_prepare_sends_base64_upload_and_returns_answer_verbatim() -> None:
    answer = {"ok": True, "outputSpreadsheetId": "abc", "headers": ["A"], "extra": {"n": 1}}
    recorder = Recorder([httpx.Response(200, json=answer)])
    client = _client(recorder)

    result = await client.prepare(
        PrepareRequest(
            file_bytes=b"PK\x03\x04 workbook",
            file_name="cong.xlsx",
            header_row=4,
            sheet_prefix="BC",
            output_name="tong_hop",
        )
    )

    assert result == answer
    sent = json.loads(recorder.requests[0].content)
    assert sent == {
        "action": "prepare",
        "fileBase64": base64.b64encode(b"PK\x03\x04 workbook").decode("ascii"),
        "fileName": "cong.xlsx",
        "headerRow": 4,
        "sheetPrefix": "BC",
        "outputName": "tong_hop",
    }
    assert str(recorder.requests[0].url) == BACKEND_URL


async def test_build_pages_parses_batch() -> None:
    recorder = Recorder(
        [
            httpx.Response(
                200,
                json={
                    "ok": True,
                    "pages": [{"name": "CT01.png", "html": "<p>x</p>"}],
                    "done": False,
                    "nextOffset": 10,
                },
            )
        ]
    )
    client = _client(recorder)

    batch = await client.build_pages(
        "abc", selected_headers=("A", "B"), cfg={"minWidth": 1200}, offset=0, limit=10
    )

    assert batch.pages[0].name == "CT01.png"
    assert batch.next_offset == 10
    assert batch.done is False
    sent = json.loads(recorder.requests[0].content)
    assert sent == {
        "action": "buildPages",
        "outputSpreadsheetId": "abc",
        "selectedHeaders": ["A", "B"],
        "cfg": {"minWidth": 1200},
        "offset": 0,
        "limit": 10,
    }


async def test_malformed_batch_is_an_upstream_error() -> None:
    recorder = Recorder([httpx.Response(200, json={"ok": True, "pages": "nope"})])

    with pytest.raises(UpstreamError, match="malformed page batch"):
        await _client(recorder).build_pages(
            "abc", selected_headers=None, cfg={}, offset=0, limit=10
        )


async def test_redirects_are_followed() -> None:
    echo = "https://script.googleusercontent.test/macros/echo?user_content_key=k"
    recorder = Recorder(
        [
            httpx.Response(302, headers={"Location": echo}),
            httpx.Response(200, json={"ok": True, "value": 1}),
        ]
    )

    result = await _client(recorder).call("prepare")

    assert result == {"ok": True, "value": 1}
    assert str(recorder.requests[1].url) == echo


async def test_server_errors_are_retried_then_succeed() -> None:
    recorder = Recorder(
        [
            httpx.Response(503, text="Service unavailable"),
            httpx.Response(200, json={"ok": True}),
        ]
    )

    result = await _client(recorder, apps_script_retry_max=2).call("buildPages")

    assert result == {"ok": True}
    assert len(recorder.requests) == 2


async def test_retries_are_bounded() -> None:
    recorder = Recorder([httpx.Response(500, text="boom") for _ in range(3)])

    with pytest.raises(TransientUpstreamError, match="HTTP 500"):
        await _client(recorder, apps_script_retry_max=2).call("buildPages")

    assert len(recorder.requests) == 3


async def test_transport_errors_become_upstream_errors() -> None:
    recorder = Recorder([httpx.ConnectError("refused"), httpx.ConnectError("refused")])

    with pytest.raises(UpstreamError, match="unreachable"):
        await _client(recorder, apps_script_retry_max=1).call("prepare")

    assert len(recorder.requests) == 2


async def test_explicit_failures_are_not_retried() -> None:
    recorder = Recorder([httpx.Response(200, json={"ok": False, "error": "bad header row"})])

    with pytest.raises(UpstreamError, match="bad header row"):
        await _client(recorder, apps_script_retry_max=3).call("prepare")

    assert len(recorder.requests) == 1


async def test_missing_backend_url_is_reported() -> None:
    client = AppsScriptClient(Settings(apps_script_url=""))

    with pytest.raises(UpstreamError, match="APPS_SCRIPT_URL"):
        await client.call("prepare")
