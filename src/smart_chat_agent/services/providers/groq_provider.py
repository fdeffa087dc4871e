"""Groq adapter over its OpenAI-compatible HTTP API."""

import json
from typing import Any, Dict, List, Optional, Tuple

import httpx
import structlog

from ...domain.exceptions import ProviderError
from ...domain.models import Message, NormalizedReply, TokenUsage, ToolResult
from ...metrics import PROVIDER_CALLS
from ..tool_executor import ToolExecutor
from .base import GenerationOptions, ProviderAdapter, StreamHandle, ToolCall, tool_payload_json
from .tools import openai_tools

logger = structlog.get_logger()


def groq_usage(usage: Optional[Dict[str, Any]]) -> TokenUsage:
    if not usage:
        return TokenUsage()
    details = usage.get("prompt_tokens_details") or {}
    return TokenUsage(
        input=usage.get("prompt_tokens", 0) or 0,
        output=usage.get("completion_tokens", 0) or 0,
        cached=details.get("cached_tokens", 0) or 0,
    ).settled()


class GroqAdapter(ProviderAdapter):
    """Last-resort fallback provider. Raw HTTP, so the wire format is handled here."""

    provider_id = "groq"

    def __init__(
        self,
        client: httpx.AsyncClient,
        tools: ToolExecutor,
        api_key: str,
        base_url: str = "https://api.groq.com/openai/v1",
        model: str = "llama-3.3-70b-versatile",
        temperature: float = 0.3,
        max_tokens: int = 800,
        timeout: float = 30.0,
    ):
        super().__init__(tools, model, timeout)
        self.client = client
        self.api_key = api_key
        self.url = f"{base_url.rstrip('/')}/chat/completions"
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"}

    def build_messages(self, user_message: str, history: List[Message], system_prompt: str) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for message in self.conversation_turns(history):
            messages.append({"role": message.role.value, "content": message.content})
        messages.append({"role": "user", "content": user_message})
        return messages

    def _payload(self, messages: List[Dict[str, Any]], options: GenerationOptions, tool_choice: str, stream: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if options.tools_enabled:
            payload["tools"] = openai_tools()
            payload["tool_choice"] = tool_choice
        if stream:
            payload["stream"] = True
        return payload

    def _provider_error(self, error: Exception, response: Optional[httpx.Response] = None) -> ProviderError:
        status = response.status_code if response is not None else None
        retry_after = response.headers.get("retry-after") if response is not None else None
        body: Any = None
        if response is not None:
            try:
                body = response.json()
            except ValueError:
                body = response.text[:500]
        details = {
            "body": body,
            "ratelimit_remaining_requests": response.headers.get("x-ratelimit-remaining-requests") if response is not None else None,
            "ratelimit_remaining_tokens": response.headers.get("x-ratelimit-remaining-tokens") if response is not None else None,
        }
        PROVIDER_CALLS.labels(provider=self.provider_id, outcome="error").inc()
        logger.error(
            "provider_request_failed",
            provider=self.provider_id,
            model=self.model,
            error_class=type(error).__name__,
            error=str(error),
            status=status,
            retry_after=retry_after,
            **{k: v for k, v in details.items() if v is not None},
        )
        return ProviderError(self.provider_id, str(error) or "request failed", status=status, retry_after=retry_after, details=details)

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            response = await self.client.post(self.url, json=payload, headers=self.headers, timeout=self.timeout)
        except httpx.HTTPError as e:
            raise self._provider_error(e) from e
        if response.is_error:
            raise self._provider_error(httpx.HTTPStatusError("upstream error", request=response.request, response=response), response)
        try:
            data = response.json()
        except ValueError as e:
            raise self._provider_error(e, response) from e
        PROVIDER_CALLS.labels(provider=self.provider_id, outcome="ok").inc()
        return data

    async def generate_response(
        self,
        user_message: str,
        history: List[Message],
        domain: str,
        system_prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> NormalizedReply:
        options = options or GenerationOptions()
        messages = self.build_messages(user_message, history, system_prompt)
        usage = TokenUsage()
        executed: List[Tuple[ToolCall, Optional[ToolResult]]] = []

        rounds = 0
        while True:
            tool_choice = "auto" if rounds < options.max_tool_rounds else "none"
            data = await self._post(self._payload(messages, options, tool_choice, stream=False))
            usage = usage + groq_usage(data.get("usage"))
            try:
                message = data["choices"][0]["message"]
            except (KeyError, IndexError, TypeError) as e:
                raise ProviderError(self.provider_id, f"Malformed response: {e}") from e
            tool_calls = message.get("tool_calls") or []
            if not tool_calls or rounds >= options.max_tool_rounds:
                break

            rounds += 1
            calls = [
                ToolCall(
                    id=tc["id"],
                    name=tc["function"]["name"],
                    arguments=self.decode_arguments(tc["function"].get("arguments")),
                )
                for tc in tool_calls
            ]
            logger.info("tool_round", provider=self.provider_id, round=rounds, tools=[c.name for c in calls])
            results = await self.run_tool_calls(calls, domain)
            executed.extend(results)
            messages.append({"role": "assistant", "content": message.get("content"), "tool_calls": tool_calls})
            for call, result in results:
                messages.append({"role": "tool", "tool_call_id": call.id, "content": tool_payload_json(call, result)})

        return self.build_reply(message.get("content"), usage, executed, options)

    async def generate_response_stream(
        self,
        user_message: str,
        history: List[Message],
        domain: str,
        system_prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> StreamHandle:
        options = options or GenerationOptions()
        messages = self.build_messages(user_message, history, system_prompt)
        return await self._open_stream(messages, options, "auto")

    async def continue_stream(
        self, handle: StreamHandle, results: List[Tuple[ToolCall, Optional[ToolResult]]]
    ) -> StreamHandle:
        messages = list(handle.context["messages"])
        messages.append(
            {
                "role": "assistant",
                "content": handle.text or None,
                "tool_calls": [
                    {"id": c.id, "type": "function", "function": {"name": c.name, "arguments": json.dumps(c.arguments)}}
                    for c, _ in results
                ],
            }
        )
        for call, result in results:
            messages.append({"role": "tool", "tool_call_id": call.id, "content": tool_payload_json(call, result)})
        return await self._open_stream(messages, handle.context["options"], "none")

    async def _open_stream(self, messages: List[Dict[str, Any]], options: GenerationOptions, tool_choice: str) -> StreamHandle:
        request = self.client.build_request(
            "POST",
            self.url,
            json=self._payload(messages, options, tool_choice, stream=True),
            headers=self.headers,
            timeout=self.timeout,
        )
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            raise self._provider_error(e) from e
        if response.is_error:
            await response.aread()
            await response.aclose()
            raise self._provider_error(httpx.HTTPStatusError("upstream error", request=request, response=response), response)
        PROVIDER_CALLS.labels(provider=self.provider_id, outcome="ok").inc()

        handle = StreamHandle(self.provider_id, self.model, {"messages": messages, "options": options})
        return handle.attach(self._pump(response, handle))

    async def _pump(self, response: httpx.Response, handle: StreamHandle):
        partial: Dict[int, Dict[str, str]] = {}
        usage = TokenUsage()
        try:
            async for line in response.aiter_lines():
                if not line.startswith("data:"):
                    continue
                data = line[len("data:"):].strip()
                if data == "[DONE]":
                    break
                try:
                    chunk = json.loads(data)
                except ValueError as e:
                    raise ProviderError(self.provider_id, f"Malformed stream frame: {e}") from e
                chunk_usage = chunk.get("usage") or (chunk.get("x_groq") or {}).get("usage")
                if chunk_usage:
                    usage = groq_usage(chunk_usage)
                for choice in chunk.get("choices") or []:
                    delta = choice.get("delta") or {}
                    for tc in delta.get("tool_calls") or []:
                        slot = partial.setdefault(tc.get("index", 0), {"id": "", "name": "", "arguments": ""})
                        slot["id"] = tc.get("id") or slot["id"]
                        function = tc.get("function") or {}
                        slot["name"] += function.get("name") or ""
                        slot["arguments"] += function.get("arguments") or ""
                    if delta.get("content"):
                        yield delta["content"]
        except httpx.HTTPError as e:
            raise self._provider_error(e) from e
        finally:
            await response.aclose()

        handle.tool_calls = [
            ToolCall(id=slot["id"], name=slot["name"], arguments=self.decode_arguments(slot["arguments"]))
            for _, slot in sorted(partial.items())
        ]
        handle.resolve_usage(usage)
