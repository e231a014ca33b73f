import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

logger = logging.getLogger("uvicorn.error")

ALLOWED_ROLES = {"system", "user", "assistant", "tool"}


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: str = "{}"
    type: str = "function"

    def to_message(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class AssistantMessage:
    content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)


def _parse_tool_calls(raw: Any) -> List[ToolCall]:
    calls: List[ToolCall] = []
    if not isinstance(raw, list):
        return calls
    for item in raw:
        if not isinstance(item, dict):
            continue
        fn = item.get("function") or {}
        arguments = fn.get("arguments")
        if isinstance(arguments, (dict, list)):
            arguments = json.dumps(arguments)
        calls.append(
            ToolCall(
                id=str(item.get("id") or ""),
                name=str(fn.get("name") or ""),
                arguments=arguments or "{}",
                type=str(item.get("type") or "function"),
            )
        )
    return calls


class OpenAIClient:
    """Chat-completions client for OpenAI-compatible providers."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        model: str,
        max_output_tokens: Optional[int] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.max_output_tokens = max_output_tokens
        self.client = httpx.AsyncClient(timeout=60)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _sanitize_messages(self, messages: Any) -> List[Dict[str, Any]]:
        if not isinstance(messages, list):
            return []
        sanitized: List[Dict[str, Any]] = []
        for msg in messages:
            if not isinstance(msg, dict):
                continue
            role = msg.get("role")
            if role not in ALLOWED_ROLES:
                continue
            content = msg.get("content")
            tool_calls = msg.get("tool_calls") if role == "assistant" else None
            # Assistant turns that only carry tool calls have no text content.
            if tool_calls:
                sanitized.append({"role": role, "content": content or "", "tool_calls": tool_calls})
                continue
            if content is None:
                continue
            if not isinstance(content, str):
                content = json.dumps(content, ensure_ascii=True)
            if role == "tool":
                sanitized.append({"role": role, "content": content, "tool_call_id": msg.get("tool_call_id") or ""})
                continue
            if not content.strip():
                continue
            sanitized.append({"role": role, "content": content})
        return sanitized

    def _extract_error_detail(self, response: httpx.Response) -> str:
        try:
            data = response.json()
            if isinstance(data, dict):
                return json.dumps(data, ensure_ascii=True)
        except Exception:
            pass
        try:
            return response.text
        except Exception:
            return ""

    async def chat_completion(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> Dict[str, Any]:
        cleaned = self._sanitize_messages(messages)
        if not cleaned:
            raise ValueError("messages must include at least one non-empty entry")
        final_max_tokens = max_tokens
        if self.max_output_tokens:
            final_max_tokens = min(max_tokens, self.max_output_tokens)
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": cleaned,
            "temperature": temperature,
            "max_tokens": final_max_tokens,
            "stream": False,
        }
        if tools:
            payload["tools"] = tools
            if tool_choice is not None:
                payload["tool_choice"] = tool_choice
        url = f"{self.base_url}/chat/completions"
        resp = await self.client.post(url, json=payload, headers=self._headers())
        try:
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "chat completion failed (status %s): %s",
                exc.response.status_code,
                self._extract_error_detail(exc.response),
            )
            raise
        return resp.json()

    async def chat(self, messages: List[Dict[str, Any]]) -> str:
        data = await self.chat_completion(messages)
        return self._first_message(data).get("content") or ""

    async def chat_with_tools(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]],
        tool_choice: Any = "auto",
    ) -> AssistantMessage:
        data = await self.chat_completion(messages, tools=tools, tool_choice=tool_choice)
        message = self._first_message(data)
        return AssistantMessage(
            content=message.get("content") or "",
            tool_calls=_parse_tool_calls(message.get("tool_calls")),
        )

    def _first_message(self, data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict):
            return {}
        choices = data.get("choices") or []
        if not choices:
            return {}
        return choices[0].get("message") or {}

    async def close(self) -> None:
        await self.client.aclose()
