import time
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from autoui.config import RuntimeConfig
from autoui.transcript_log import TranscriptLog

logger = logging.getLogger("autoui_runtime")

NOT_CONFIGURED_ERROR = "No API configured. Set API mode in settings."
ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class LlmResult:
    error: Optional[str]
    data: Any

    @property
    def ok(self) -> bool:
        return self.error is None


class BaseLlmClient:
    """
    Common usage accounting across calls.
    """

    last_usage: Optional[Dict[str, int]]

    def _merge_usage(self, data: Any) -> Optional[Dict[str, int]]:
        if not isinstance(data, dict):
            return None
        usage = data.get("usage")
        if not isinstance(usage, dict):
            return None
        inc = {
            "input_tokens": int(usage.get("input_tokens", 0) or 0),
            "output_tokens": int(usage.get("output_tokens", 0) or 0),
            "cache_read_input_tokens": int(usage.get("cache_read_input_tokens", 0) or 0),
        }
        if self.last_usage is None:
            self.last_usage = dict(inc)
            return inc
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)
        return inc

    def get_accrued_usage(self) -> Dict[str, int]:
        return dict(self.last_usage or {})


class ModelTransport(BaseLlmClient):
    """
    The single model-call primitive:

        result = await transport.call(system, messages, {"tools": [...]}, source="author:root")

    - never raises: configuration, network and non-2xx failures come back as
      LlmResult(error=..., data=None)
    - every call, successful or not, is appended to the transcript log
      stamped with the caller's source tag
    - "direct" and "relay" send the same body; only endpoint and headers differ
    """

    def __init__(
        self,
        config: RuntimeConfig,
        transcript: TranscriptLog,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.transcript = transcript
        self._http_client = http_client
        self.last_usage: Optional[Dict[str, int]] = None

    def _endpoint_and_headers(self) -> tuple[str, Dict[str, str]]:
        if self.config.api_mode == "direct":
            return self.config.direct_url, {
                "content-type": "application/json",
                "x-api-key": self.config.api_key,
                "anthropic-version": ANTHROPIC_VERSION,
            }
        return self.config.relay_url, {"content-type": "application/json"}

    def _build_body(self, system: str, messages: List[Dict[str, Any]], extras: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "system": system,
            "messages": messages,
            "model": self.config.model,
            "max_tokens": self.config.max_tokens,
        }
        for k, v in (extras or {}).items():
            # underscore keys are local annotations, never sent to the provider
            if k.startswith("_"):
                continue
            body[k] = v
        return body

    async def _post(self, url: str, headers: Dict[str, str], body: Dict[str, Any]) -> httpx.Response:
        if self._http_client is not None:
            return await self._http_client.post(url, headers=headers, json=body)
        async with httpx.AsyncClient(timeout=self.config.timeout) as client:
            return await client.post(url, headers=headers, json=body)

    async def call(
        self,
        system: str,
        messages: List[Dict[str, Any]],
        extras: Optional[Dict[str, Any]] = None,
        *,
        source: Optional[str] = None,
    ) -> LlmResult:
        extras = dict(extras or {})
        tag = source or extras.get("_source") or "runtime"
        tools = extras.get("tools") or []
        started = time.perf_counter()

        if self.config.api_mode == "none":
            result = LlmResult(error=NOT_CONFIGURED_ERROR, data=None)
            self._log(tag, system, messages, tools, result, started, None)
            return result

        url, headers = self._endpoint_and_headers()
        body = self._build_body(system, messages, extras)
        usage = None

        try:
            response = await self._post(url, headers, body)
            if response.status_code < 200 or response.status_code >= 300:
                result = LlmResult(error=f"{response.status_code}: {response.text}", data=None)
            else:
                data = response.json()
                usage = self._merge_usage(data)
                result = LlmResult(error=None, data=data)
        except Exception as e:
            result = LlmResult(error=str(e) or e.__class__.__name__, data=None)

        if result.error:
            logger.warning(f"[llm] {tag} failed: {result.error[:500]}")
        self._log(tag, system, messages, tools, result, started, usage)
        return result

    def _log(self, tag, system, messages, tools, result: LlmResult, started: float, usage) -> None:
        self.transcript.push(
            tag,
            system=system,
            messages=messages,
            tools=[t.get("name") if isinstance(t, dict) else t for t in tools],
            response=result.data,
            error=result.error,
            duration_ms=round((time.perf_counter() - started) * 1000.0, 2),
            usage=usage,
        )


# -----------------------
# Response helpers
# -----------------------

def content_blocks(data: Any) -> List[Dict[str, Any]]:
    if not isinstance(data, dict):
        return []
    blocks = data.get("content") or []
    return [b for b in blocks if isinstance(b, dict)]


def tool_use_blocks(data: Any) -> List[Dict[str, Any]]:
    return [b for b in content_blocks(data) if b.get("type") == "tool_use"]


def extract_text(data: Any) -> str:
    for b in content_blocks(data):
        if b.get("type") == "text":
            return b.get("text") or ""
    return ""


def extract_tool_use(data: Any, tool_name: str) -> Optional[Dict[str, Any]]:
    for b in tool_use_blocks(data):
        if b.get("name") == tool_name:
            return b.get("input")
    return None
