"""
Client for a local OpenAI-compatible chat completions server (LM Studio,
vLLM, llama.cpp), plus lenient JSON extraction for local model output.
"""

import json
import logging
import os
import re
from typing import Any, Dict, List, Optional

import httpx

from moral_graph_backend.services.errors import ProviderRequestError, TransientProviderError

logger = logging.getLogger("moral_graph_backend")

TRACE_API_CALLS = os.getenv("TRACE_API_CALLS", "true").strip().lower() in {"1", "true", "yes", "on"}
API_LOG_PREVIEW_CHARS = int(os.getenv("API_LOG_PREVIEW_CHARS", "280"))

_THINK_BLOCK = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)
_FENCED_BLOCK = re.compile(r"```(?:json)?\s*(.*?)```", re.IGNORECASE | re.DOTALL)


def _preview(value: Any) -> str:
    text = str(value or "")
    if len(text) <= API_LOG_PREVIEW_CHARS:
        return text
    return f"{text[:API_LOG_PREVIEW_CHARS]}...<{len(text) - API_LOG_PREVIEW_CHARS} more chars>"


def _is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


def _status_error(exc: httpx.HTTPStatusError) -> Exception:
    status = exc.response.status_code
    if _is_transient_status(status):
        return TransientProviderError("local_llm", f"status {status}")
    return ProviderRequestError("local_llm", _preview(exc.response.text) or f"status {status}", status)


def extract_json_from_text(text: Optional[str]) -> Any:
    """
    Parse the first JSON value in a model reply.

    Tries, in order: the whole reply with <think> blocks removed, each
    fenced code block, then the first decodable object or array.

    Raises:
        json.JSONDecodeError (a ValueError) when nothing parses
    """
    if text is None:
        raise ValueError("LLM response text is empty")

    cleaned = _THINK_BLOCK.sub("", str(text)).strip()
    candidates = [cleaned] + [block.strip() for block in _FENCED_BLOCK.findall(cleaned)]
    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    decoder = json.JSONDecoder()
    for start, char in enumerate(cleaned):
        if char in "{[":
            try:
                return decoder.raw_decode(cleaned, start)[0]
            except json.JSONDecodeError:
                continue

    raise json.JSONDecodeError("No JSON value found in LLM response", cleaned, 0)


class LocalLLMClient:
    def __init__(self, base_url: str, timeout_seconds: float = 120, json_mode: bool = True) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.json_mode = json_mode
        # Cleared once the server rejects response_format.
        self._supports_json_object = True

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "LocalLLMClient":
        return cls(
            str(config.get("base_url", "")),
            timeout_seconds=float(config.get("timeout_seconds", 120)),
            json_mode=bool(config.get("json_mode", True)),
        )

    @property
    def completions_url(self) -> str:
        return f"{self.base_url}/v1/chat/completions"

    async def chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.3,
        max_tokens: int = 4000,
        response_format: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        POST a chat completion and return the decoded response body.

        Raises:
            TransientProviderError: connection failure, timeout, 429 or 5xx
            ProviderRequestError: any other error status
        """
        payload: Dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format is None and self.json_mode and self._supports_json_object:
            response_format = {"type": "json_object"}
        if response_format is not None:
            payload["response_format"] = response_format

        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            try:
                return await self._post(client, payload)
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                if "response_format" not in payload or _is_transient_status(status):
                    raise _status_error(exc) from exc
                logger.warning(
                    "Local LLM rejected response_format (%s); retrying without it",
                    _preview(exc.response.text),
                )
                self._supports_json_object = False
                del payload["response_format"]
            except httpx.HTTPError as exc:
                raise TransientProviderError("local_llm", str(exc) or type(exc).__name__) from exc

            try:
                return await self._post(client, payload)
            except httpx.HTTPStatusError as exc:
                raise _status_error(exc) from exc
            except httpx.HTTPError as exc:
                raise TransientProviderError("local_llm", str(exc) or type(exc).__name__) from exc

    async def _post(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> Dict[str, Any]:
        if TRACE_API_CALLS:
            logger.info(
                "[LLM API] POST %s model=%s messages=%s response_format=%s",
                self.completions_url,
                payload["model"],
                len(payload["messages"]),
                payload.get("response_format", {}).get("type", "none"),
            )
        response = await client.post(self.completions_url, json=payload)
        response.raise_for_status()
        if TRACE_API_CALLS:
            logger.info("[LLM API] status=%s preview=%s", response.status_code, _preview(response.text))
        return response.json()

    async def chat_text(
        self,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float = 0.3,
        max_tokens: int = 4000,
    ) -> str:
        response = await self.chat(
            model,
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "text"},
        )
        return response["choices"][0]["message"]["content"]
