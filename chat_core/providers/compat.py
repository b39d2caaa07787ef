"""OpenAI 兼容协议的通用异步客户端。

OpenAI 与 GLM / BigModel 都提供相同形状的端点：
- 对话: POST {base_url}/chat/completions（stream=true 时返回 SSE ``data:`` 行，以 ``[DONE]`` 结束）
- 向量: POST {base_url}/embeddings
- 认证: Authorization: Bearer <api_key>

子类只需声明 name 与 ProviderConfig。图片以 ``image_url`` data URI 发送。
"""

import base64
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from chat_core.config.settings import settings
from chat_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from chat_core.domain.models import (
    ChatChoice,
    ChatMessage,
    ChatRequest,
    ChatResult,
    ChatStreamChunk,
    ChatStreamChoice,
    ChatUsage,
)
from chat_core.providers.registry import ProviderConfig


class OpenAICompatibleClient:
    name = "openai"
    config: ProviderConfig

    def __init__(self, cfg=settings):
        self._settings = cfg

    # ---- 认证与地址 ----

    @property
    def api_key(self) -> Optional[str]:
        return getattr(self._settings, f"{self.name}_api_key", None)

    @property
    def base_url(self) -> str:
        base = getattr(self._settings, f"{self.name}_base_url", None) or self.config.base_url
        return base.rstrip("/")

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise ValidationError(code="MISSING_API_KEY", message=f"{self.name.upper()}_API_KEY not set")
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._settings.http_timeout, trust_env=False)

    def _check_status(self, status_code: int, body: str) -> None:
        if status_code == 429:
            raise RateLimitError(code="RATE_LIMIT", message=f"{self.name} rate limit", http_status=429)
        if status_code >= 400:
            raise ApiError(code="API_ERROR", message=body, http_status=status_code)

    # ---- 非流式 ----

    async def chat(self, req: ChatRequest) -> ChatResult:
        headers = self._headers()
        payload = self._build_payload(req, stream=False)
        try:
            async with self._client() as client:
                resp = await client.post(f"{self.base_url}/chat/completions", json=payload, headers=headers)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._check_status(resp.status_code, resp.text)
        return self._parse_response(resp.json(), req)

    # ---- 流式 ----

    async def chat_stream(self, req: ChatRequest) -> AsyncIterator[ChatStreamChunk]:
        headers = self._headers()
        payload = self._build_payload(req, stream=True)
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=headers,
                ) as resp:
                    if resp.status_code >= 400:
                        body = await resp.aread()
                        self._check_status(resp.status_code, body.decode("utf-8", errors="replace"))
                    async for line in resp.aiter_lines():
                        if not line:
                            continue
                        data_str = line[5:].strip() if line.startswith("data:") else line.strip()
                        if not data_str or data_str == "[DONE]":
                            continue
                        try:
                            payload_chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        yield self._parse_stream_chunk(payload_chunk, req)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 向量 ----

    async def embed(self, texts: Sequence[str], model: Optional[str] = None) -> List[List[float]]:
        if not texts:
            return []
        headers = self._headers()
        payload = {
            "model": self.config.resolve_model(model or self._settings.embedding_model),
            "input": list(texts),
        }
        try:
            async with self._client() as client:
                resp = await client.post(f"{self.base_url}/embeddings", json=payload, headers=headers)
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        self._check_status(resp.status_code, resp.text)
        data = resp.json().get("data") or []
        ordered = sorted(data, key=lambda item: item.get("index", 0))
        vectors = [[float(x) for x in item.get("embedding") or []] for item in ordered]
        if len(vectors) != len(texts):
            raise ApiError(
                code="API_ERROR",
                message=f"expected {len(texts)} embeddings, got {len(vectors)}",
                http_status=resp.status_code,
            )
        return vectors

    # ---- 辅助方法 ----

    def _build_payload(self, req: ChatRequest, stream: bool) -> Dict[str, Any]:
        model_cfg = self.config.model_config(req.model)
        payload: Dict[str, Any] = {
            "model": self.config.resolve_model(req.model),
            "messages": [self._message_to_payload(m) for m in req.messages],
            "stream": stream,
        }
        temperature = req.temperature if req.temperature is not None else (
            model_cfg.default_temperature if model_cfg else None
        )
        max_tokens = req.max_tokens or (model_cfg.max_tokens if model_cfg else None)
        if temperature is not None:
            payload["temperature"] = temperature
        if req.top_p is not None:
            payload["top_p"] = req.top_p
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    def _message_to_payload(self, message: ChatMessage) -> Dict[str, Any]:
        if not message.images:
            return {"role": message.role, "content": message.content}
        parts: List[Dict[str, Any]] = []
        if message.content:
            parts.append({"type": "text", "text": message.content})
        for image in message.images:
            encoded = base64.b64encode(image.data).decode("ascii")
            parts.append(
                {
                    "type": "image_url",
                    "image_url": {"url": f"data:{image.media_type};base64,{encoded}", "detail": image.detail},
                }
            )
        return {"role": message.role, "content": parts}

    def _parse_usage(self, raw: Optional[Dict[str, Any]]) -> Optional[ChatUsage]:
        if not raw:
            return None
        return ChatUsage(
            prompt_tokens=raw.get("prompt_tokens", 0),
            completion_tokens=raw.get("completion_tokens", 0),
            total_tokens=raw.get("total_tokens", 0),
        )

    def _parse_response(self, data: dict, req: ChatRequest) -> ChatResult:
        choices: List[ChatChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            msg = ch.get("message") or {}
            cm = ChatMessage(role=msg.get("role") or "assistant", content=msg.get("content") or "")
            choices.append(ChatChoice(index=i, message=cm, finish_reason=ch.get("finish_reason")))
        return ChatResult(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )

    def _parse_stream_chunk(self, data: dict, req: ChatRequest) -> ChatStreamChunk:
        choices: List[ChatStreamChoice] = []
        for i, ch in enumerate(data.get("choices", [])):
            delta = ch.get("delta") or {}
            choices.append(
                ChatStreamChoice(
                    index=ch.get("index", i),
                    delta=ChatMessage(role=delta.get("role") or "assistant", content=delta.get("content") or ""),
                    finish_reason=ch.get("finish_reason"),
                )
            )
        return ChatStreamChunk(
            provider=self.name,
            model=req.model,
            choices=choices,
            usage=self._parse_usage(data.get("usage")),
            raw=data,
        )
