"""Tests for the Responses API client over a mocked HTTP transport."""

import asyncio
import json

import httpx
import pytest

from evidentia.errors import ConfigurationError, EmptyResponse, ModelTimeout, TruncatedResponse, UpstreamError
from evidentia.services.model_client import (
    TRUNCATION_NOTE,
    ModelClient,
    ResponseShape,
    decode_response,
    parse_upstream_error,
)


def make_model_client(handler):
    """ModelClient whose HTTP traffic goes to `handler`."""
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ModelClient(
        api_key="test-key",
        model="test-model",
        reasoning_effort="low",
        base_url="https://api.test/v1",
        timeout=5,
        http_client=http_client,
    )


def json_handler(payload, status_code=200, seen=None):
    def handler(request):
        if seen is not None:
            seen.append(json.loads(request.content))
        return httpx.Response(status_code, json=payload)
    return handler


def generate(client, **kwargs):
    kwargs.setdefault("max_output_tokens", 100)

    async def run():
        try:
            return await client.generate("prompt", **kwargs)
        finally:
            await client.close()

    return asyncio.run(run())


# ---------------------------------------------------------------------------
# Response decoding
# ---------------------------------------------------------------------------

class TestDecodeResponse:

    def test_flat_output_text(self):
        """The flat `output_text` shape is preferred and trimmed."""
        decoded = decode_response({"status": "completed", "output_text": "  hello  "})
        assert decoded.shape == ResponseShape.OUTPUT_TEXT
        assert decoded.text == "hello"

    def test_output_items_shape(self):
        """Message items are scanned for output_text parts and joined with newlines."""
        payload = {
            "status": "completed",
            "output": [
                {"type": "web_search_call", "status": "completed"},
                {"type": "message", "content": [
                    {"type": "output_text", "text": "first"},
                    {"type": "output_text", "text": "second"},
                ]},
            ],
        }
        decoded = decode_response(payload)
        assert decoded.shape == ResponseShape.OUTPUT_ITEMS
        assert decoded.text == "first\nsecond"

    def test_incomplete_reason_is_read(self):
        decoded = decode_response({"status": "incomplete", "incomplete_details": {"reason": "max_output_tokens"}})
        assert decoded.shape == ResponseShape.EMPTY
        assert decoded.status == "incomplete"
        assert decoded.incomplete_reason == "max_output_tokens"

    def test_non_object_is_empty(self):
        assert decode_response(["not", "an", "object"]).shape == ResponseShape.EMPTY

    def test_upstream_error_message_extraction(self):
        """Error bodies yield their message; unreadable bodies yield the default."""
        response = httpx.Response(400, json={"error": {"message": "bad input"}})
        assert parse_upstream_error(response, "default") == "bad input"
        assert parse_upstream_error(httpx.Response(500, text="oops"), "default") == "default"
        assert parse_upstream_error(None, "default") == "default"


# ---------------------------------------------------------------------------
# Request shape
# ---------------------------------------------------------------------------

class TestBuildRequest:

    def test_plain_request(self):
        client = make_model_client(json_handler({}))
        request = client.build_request("hi", 256)
        assert request["model"] == "test-model"
        assert request["reasoning"] == {"effort": "low"}
        assert "tools" not in request
        asyncio.run(client.close())

    def test_web_search_request(self):
        """Web search declares the tool with its context size and a tool-call cap."""
        client = make_model_client(json_handler({}))
        request = client.build_request("hi", 256, web_search=True, search_context_size="low", max_tool_calls=10)
        assert request["tools"] == [{"type": "web_search", "search_context_size": "low"}]
        assert request["tool_choice"] == "auto"
        assert request["extra_body"] == {"max_tool_calls": 10}
        asyncio.run(client.close())

    def test_missing_api_key(self):
        with pytest.raises(ConfigurationError):
            ModelClient(api_key=" ", model="test-model")


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------

class TestGenerate:

    def test_success_sends_request_body(self):
        """A completed response returns its text; the body carries model and token budget."""
        seen = []
        client = make_model_client(json_handler({"status": "completed", "output_text": "answer"}, seen=seen))
        assert generate(client, max_output_tokens=321) == "answer"
        assert seen[0]["model"] == "test-model"
        assert seen[0]["max_output_tokens"] == 321
        assert seen[0]["input"] == "prompt"

    def test_incomplete_with_text_is_annotated(self):
        """Partial text from an incomplete response gets the truncation note appended."""
        payload = {"status": "incomplete", "incomplete_details": {"reason": "max_output_tokens"}, "output_text": "partial"}
        client = make_model_client(json_handler(payload))
        assert generate(client) == "partial" + TRUNCATION_NOTE

    def test_incomplete_without_text_raises_truncated(self):
        """Hitting the output limit with no text is a TruncatedResponse mentioning the label."""
        payload = {"status": "incomplete", "incomplete_details": {"reason": "max_output_tokens"}, "output": []}
        client = make_model_client(json_handler(payload))
        with pytest.raises(TruncatedResponse) as exc_info:
            generate(client, label="Claims discovery")
        assert "Claims discovery hit the output limit" in exc_info.value.message
        assert exc_info.value.reason == "max_output_tokens"

    def test_empty_response(self):
        client = make_model_client(json_handler({"status": "completed", "output": []}))
        with pytest.raises(EmptyResponse):
            generate(client)

    def test_upstream_status_error(self):
        """Non-2xx responses raise UpstreamError with the body's message and status."""
        client = make_model_client(json_handler({"error": {"message": "rate limited"}}, status_code=429))
        with pytest.raises(UpstreamError) as exc_info:
            generate(client)
        assert exc_info.value.message == "rate limited"
        assert exc_info.value.upstream_status == 429
        assert exc_info.value.retryable is True

    def test_transport_timeout(self):
        """A transport timeout surfaces as ModelTimeout."""
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        client = make_model_client(handler)
        with pytest.raises(ModelTimeout):
            generate(client)
