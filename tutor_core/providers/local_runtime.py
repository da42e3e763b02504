"""本地推理服务运行时。

对接设备上运行的 OpenAI 兼容推理服务（llama.cpp server、MLC、Ollama 等）：
- 模型列表: GET {base_url}/models
- 补全: POST {base_url}/chat/completions，stream=true，按 SSE "data:" 行返回增量

本实现只依赖公共字段：model/messages/temperature/max_tokens/stream。
"""

import json
from typing import Any, Dict, Iterable, List

import httpx

from tutor_core.config.settings import settings
from tutor_core.domain.exceptions import ApiError, NetworkError, RateLimitError, ValidationError
from tutor_core.domain.models import ChatMessage, ChatRequest
from tutor_core.providers.base import ProgressReporter


class LocalServerRuntime:
    """本地 OpenAI 兼容推理服务的运行时实现。"""

    name = "local-server"

    def __init__(self, cfg=settings):
        self._settings = cfg

    @property
    def base_url(self) -> str:
        return self._settings.inference_base_url.rstrip("/")

    # ---- 加载 ----

    def load(self, model_id: str, report: ProgressReporter) -> None:
        report(f"Connecting to local inference server at {self.base_url}...")
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                resp = client.get(f"{self.base_url}/models", headers=self._headers())
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if resp.status_code >= 400:
            raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
        report(f"Checking model availability: {model_id}")
        available = self._model_ids(resp.json())
        # 部分服务不返回模型列表，此时信任服务端按需加载
        if available and model_id not in available:
            raise ValidationError(
                code="MODEL_NOT_AVAILABLE",
                message=f"Model {model_id} is not served by {self.base_url}",
                available=available,
            )
        report(f"Model {model_id} ready")

    # ---- 流式 ----

    def stream_chat(self, req: ChatRequest) -> Iterable[str]:
        payload = self._build_payload(req)
        try:
            with httpx.Client(timeout=self._settings.http_timeout, trust_env=False) as client:
                with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as resp:
                    if resp.status_code == 429:
                        raise RateLimitError(code="RATE_LIMIT", message="Local inference server is busy")
                    if resp.status_code >= 400:
                        resp.read()
                        raise ApiError(code="API_ERROR", message=resp.text, http_status=resp.status_code)
                    for line in resp.iter_lines():
                        if not line:
                            continue
                        data_str = line
                        if data_str.startswith("data:"):
                            data_str = data_str[5:].strip()
                        else:
                            data_str = data_str.strip()
                        if not data_str or data_str == "[DONE]":
                            continue
                        try:
                            chunk = json.loads(data_str)
                        except json.JSONDecodeError:
                            continue
                        delta = self._delta_text(chunk)
                        if delta:
                            yield delta
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))

    # ---- 辅助方法 ----

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = getattr(self._settings, "inference_api_key", None)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _build_payload(self, req: ChatRequest) -> dict:
        payload = {
            "model": req.model,
            "messages": [self._message_to_payload(m) for m in req.messages],
            "temperature": req.temperature,
            "max_tokens": req.max_tokens,
            "stream": req.stream,
        }
        payload.update(req.extra)
        return payload

    @staticmethod
    def _message_to_payload(message: ChatMessage) -> Dict[str, Any]:
        if message.role == "user" and message.image:
            parts: List[Dict[str, Any]] = [{"type": "text", "text": message.content}]
            parts.append({"type": "image_url", "image_url": {"url": message.image}})
            return {"role": message.role, "content": parts}
        return {"role": message.role, "content": message.content}

    @staticmethod
    def _delta_text(chunk: Dict[str, Any]) -> str:
        choices = chunk.get("choices") or []
        if not choices:
            return ""
        delta = choices[0].get("delta") or {}
        return delta.get("content") or ""

    @staticmethod
    def _model_ids(data: Any) -> List[str]:
        if not isinstance(data, dict):
            return []
        return [str(item.get("id")) for item in data.get("data") or [] if isinstance(item, dict) and item.get("id")]
