"""
Model client for the OpenAI Responses API.

One `generate` call is one request: no internal retries. The response body
is decoded by `decode_response`, which understands both shapes the API can
return (a flat `output_text` field, or message items carrying `output_text`
content parts).
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from openai import APIConnectionError, APIStatusError, APITimeoutError, AsyncOpenAI

from evidentia.config import Settings, settings as default_settings
from evidentia.errors import (
    ConfigurationError,
    EmptyResponse,
    ModelTimeout,
    TruncatedResponse,
    UpstreamError,
)

logger = logging.getLogger(__name__)

TRUNCATION_NOTE = (
    "\n\n[Note: Response truncated because the model hit its output limit. "
    "Consider rerunning if key details are missing.]"
)


class ResponseShape(str, enum.Enum):
    OUTPUT_TEXT = "output_text"
    OUTPUT_ITEMS = "output_items"
    EMPTY = "empty"


@dataclass(frozen=True)
class DecodedResponse:
    """Normalized view of a Responses API body"""
    shape: ResponseShape
    text: str
    status: Optional[str] = None
    incomplete_reason: Optional[str] = None


def decode_response(payload: Any) -> DecodedResponse:
    """
    Decode a Responses API body into text plus completion status.

    Args:
        payload: Parsed JSON body

    Returns:
        DecodedResponse describing which shape carried the text
    """
    if not isinstance(payload, dict):
        return DecodedResponse(shape=ResponseShape.EMPTY, text="")

    status = payload.get("status") if isinstance(payload.get("status"), str) else None
    details = payload.get("incomplete_details")
    reason = None
    if isinstance(details, dict) and isinstance(details.get("reason"), str):
        reason = details["reason"]

    flat = payload.get("output_text")
    if isinstance(flat, str) and flat.strip():
        return DecodedResponse(ResponseShape.OUTPUT_TEXT, flat.strip(), status, reason)

    parts = []
    output = payload.get("output")
    if isinstance(output, list):
        for item in output:
            if not isinstance(item, dict) or item.get("type") != "message":
                continue
            content = item.get("content")
            if not isinstance(content, list):
                continue
            for part in content:
                if isinstance(part, dict) and part.get("type") == "output_text" and isinstance(part.get("text"), str):
                    parts.append(part["text"])

    text = "\n".join(parts).strip()
    if text:
        return DecodedResponse(ResponseShape.OUTPUT_ITEMS, text, status, reason)
    return DecodedResponse(ResponseShape.EMPTY, "", status, reason)


def parse_upstream_error(response: Optional[httpx.Response], default: str) -> str:
    """Pull a human-readable message out of an error body, if it has one."""
    if response is None:
        return default
    try:
        body = response.json()
    except ValueError:
        return default
    if not isinstance(body, dict):
        return default

    error = body.get("error")
    if isinstance(error, str) and error.strip():
        return error.strip()
    if isinstance(error, dict) and isinstance(error.get("message"), str):
        return error["message"]
    if isinstance(body.get("message"), str):
        return body["message"]
    return default


class ModelClient:
    """Thin async wrapper around one Responses API call."""

    def __init__(
        self,
        api_key: str,
        model: str,
        reasoning_effort: str = "low",
        base_url: Optional[str] = None,
        timeout: float = 600.0,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        if not api_key or not api_key.strip():
            raise ConfigurationError("OpenAI API key is not configured.")

        self.model = model
        self.reasoning_effort = reasoning_effort
        self.timeout = timeout
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            max_retries=0,
            timeout=timeout,
            http_client=http_client,
        )

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None, **kwargs) -> "ModelClient":
        config = config or default_settings
        return cls(
            api_key=config.openai_api_key,
            model=config.openai_model,
            reasoning_effort=config.reasoning_effort,
            base_url=config.openai_base_url,
            timeout=config.request_timeout_seconds,
            **kwargs,
        )

    def build_request(
        self,
        prompt: str,
        max_output_tokens: int,
        web_search: bool = False,
        search_context_size: str = "medium",
        max_tool_calls: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Keyword arguments for `responses.create`"""
        request: Dict[str, Any] = {
            "model": self.model,
            "reasoning": {"effort": self.reasoning_effort},
            "input": prompt,
            "max_output_tokens": max_output_tokens,
        }
        if web_search:
            request["tools"] = [{"type": "web_search", "search_context_size": search_context_size}]
            request["tool_choice"] = "auto"
        if max_tool_calls is not None:
            request["extra_body"] = {"max_tool_calls": max_tool_calls}
        return request

    async def generate(
        self,
        prompt: str,
        *,
        max_output_tokens: int,
        web_search: bool = False,
        search_context_size: str = "medium",
        max_tool_calls: Optional[int] = None,
        timeout: Optional[float] = None,
        label: str = "Model response",
    ) -> str:
        """
        Send one prompt and return the normalized response text.

        Args:
            prompt: Full prompt text
            max_output_tokens: Output token budget
            web_search: Whether to declare the web_search tool
            search_context_size: Web search context size ("low", "medium", "high")
            max_tool_calls: Optional cap on tool invocations
            timeout: Seconds before the request is cancelled (defaults to the client timeout)
            label: Prefix used in truncation error messages

        Returns:
            Trimmed, non-empty text

        Raises:
            ModelTimeout, UpstreamError, TruncatedResponse, EmptyResponse
        """
        request = self.build_request(prompt, max_output_tokens, web_search, search_context_size, max_tool_calls)
        limit = timeout if timeout is not None else self.timeout

        try:
            raw = await asyncio.wait_for(
                self._client.responses.with_raw_response.create(**request, timeout=limit),
                timeout=limit,
            )
        except (asyncio.TimeoutError, APITimeoutError):
            logger.warning(f"Model request timed out after {limit:.0f} seconds")
            raise ModelTimeout(f"Model request timed out after {limit:.0f} seconds.")
        except APIStatusError as e:
            message = parse_upstream_error(e.response, "OpenAI request failed.")
            logger.error(f"Model API returned {e.status_code}: {message}")
            raise UpstreamError(message, upstream_status=e.status_code)
        except APIConnectionError as e:
            logger.error(f"Model API connection failed: {e}")
            raise UpstreamError(f"Could not reach the model API: {e}")

        try:
            payload = raw.http_response.json()
        except ValueError:
            raise UpstreamError("Failed to read model response.")

        decoded = decode_response(payload)
        text = decoded.text

        if decoded.status == "incomplete" and decoded.incomplete_reason:
            logger.warning(f"{label} incomplete: {decoded.incomplete_reason}")
            if text:
                return text + TRUNCATION_NOTE
            if decoded.incomplete_reason == "max_output_tokens":
                raise TruncatedResponse(
                    f"{label} hit the output limit before completing. Try again in a moment.",
                    reason=decoded.incomplete_reason,
                )
            raise TruncatedResponse(
                f"{label} ended early: {decoded.incomplete_reason}",
                reason=decoded.incomplete_reason,
            )

        if not text:
            logger.error(f"{label} was empty (status={decoded.status})")
            raise EmptyResponse("Model did not return any text.")

        return text

    async def close(self):
        await self._client.close()
