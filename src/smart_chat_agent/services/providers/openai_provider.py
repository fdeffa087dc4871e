"""OpenAI chat-completions adapter."""

import json
from typing import Any, Dict, List, Optional, Tuple

import openai
import structlog

from ...domain.exceptions import ProviderError
from ...domain.models import Message, NormalizedReply, TokenUsage, ToolResult
from ...metrics import PROVIDER_CALLS
from ..tool_executor import ToolExecutor
from .base import GenerationOptions, ProviderAdapter, StreamHandle, ToolCall, tool_payload_json
from .tools import openai_tools

logger = structlog.get_logger()

REASONING_MODEL_PREFIXES = ("o1", "o3", "o4")


def openai_usage(usage: Any) -> TokenUsage:
    """Completion tokens include reasoning tokens; split them so totals are not double counted."""
    if usage is None:
        return TokenUsage()
    prompt_details = getattr(usage, "prompt_tokens_details", None)
    completion_details = getattr(usage, "completion_tokens_details", None)
    cached = (getattr(prompt_details, "cached_tokens", 0) or 0) if prompt_details else 0
    reasoning = (getattr(completion_details, "reasoning_tokens", 0) or 0) if completion_details else 0
    completion = usage.completion_tokens or 0
    return TokenUsage(
        input=usage.prompt_tokens or 0,
        output=max(completion - reasoning, 0),
        cached=cached,
        thinking=reasoning,
    ).settled()


class OpenAIAdapter(ProviderAdapter):
    """GPT models through ``AsyncOpenAI``, with JSON-object output on complete turns."""

    provider_id = "openai"

    def __init__(
        self,
        client: "openai.AsyncOpenAI",
        tools: ToolExecutor,
        model: str = "gpt-4o",
        temperature: float = 0.2,
        max_tokens: int = 500,
        timeout: float = 30.0,
    ):
        super().__init__(tools, model, timeout)
        self.client = client
        self.temperature = temperature
        self.max_tokens = max_tokens

    @property
    def supports_extended_reasoning(self) -> bool:
        return self.model.startswith(REASONING_MODEL_PREFIXES)

    def build_messages(
        self, user_message: str, history: List[Message], system_prompt: str
    ) -> List[Dict[str, Any]]:
        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        for message in self.conversation_turns(history):
            messages.append({"role": message.role.value, "content": message.content})
        messages.append({"role": "user", "content": user_message})
        return messages

    def _request(
        self,
        messages: List[Dict[str, Any]],
        options: GenerationOptions,
        tool_choice: Optional[str],
        stream: bool,
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {"model": self.model, "messages": messages, "timeout": self.timeout}
        if self.supports_extended_reasoning:
            request["max_completion_tokens"] = self.max_tokens
            if options.extended_reasoning:
                request["reasoning_effort"] = "high"
        else:
            request["temperature"] = self.temperature
            request["max_tokens"] = self.max_tokens
        if options.tools_enabled and tool_choice:
            request["tools"] = openai_tools()
            request["tool_choice"] = tool_choice
        if stream:
            request["stream"] = True
            request["stream_options"] = {"include_usage": True}
        else:
            request["response_format"] = {"type": "json_object"}
        return request

    async def _create(self, request: Dict[str, Any]):
        try:
            response = await self.client.chat.completions.create(**request)
        except openai.APIError as e:
            PROVIDER_CALLS.labels(provider=self.provider_id, outcome="error").inc()
            raise self._provider_error(e) from e
        PROVIDER_CALLS.labels(provider=self.provider_id, outcome="ok").inc()
        return response

    def _provider_error(self, error: "openai.APIError") -> ProviderError:
        status = getattr(error, "status_code", None)
        response = getattr(error, "response", None)
        headers = dict(response.headers) if response is not None else {}
        details = {
            "type": getattr(error, "type", None),
            "code": getattr(error, "code", None),
            "param": getattr(error, "param", None),
            "request_id": getattr(error, "request_id", None),
            "body": getattr(error, "body", None),
            "ratelimit_limit_requests": headers.get("x-ratelimit-limit-requests"),
            "ratelimit_remaining_requests": headers.get("x-ratelimit-remaining-requests"),
        }
        retry_after = headers.get("retry-after")
        logger.error(
            "provider_request_failed",
            provider=self.provider_id,
            model=self.model,
            error_class=type(error).__name__,
            error=str(error),
            status=status,
            retry_after=retry_after,
            quota_exhausted=details["code"] == "insufficient_quota",
            **{k: v for k, v in details.items() if v is not None},
        )
        return ProviderError(self.provider_id, str(error), status=status, retry_after=retry_after, details=details)

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
            completion = await self._create(self._request(messages, options, tool_choice, stream=False))
            usage = usage + openai_usage(getattr(completion, "usage", None))
            try:
                message = completion.choices[0].message
            except (AttributeError, IndexError, TypeError) as e:
                logger.error("provider_response_malformed", provider=self.provider_id, model=self.model, error=str(e))
                raise ProviderError(self.provider_id, f"Malformed response: {e}") from e
            if not message.tool_calls or rounds >= options.max_tool_rounds:
                break

            rounds += 1
            calls = [
                ToolCall(id=tc.id, name=tc.function.name, arguments=self.decode_arguments(tc.function.arguments))
                for tc in message.tool_calls
            ]
            logger.info("tool_round", provider=self.provider_id, round=rounds, tools=[c.name for c in calls])
            results = await self.run_tool_calls(calls, domain)
            executed.extend(results)
            messages.append(self._assistant_tool_message(message.content, message.tool_calls))
            for call, result in results:
                messages.append(
                    {"role": "tool", "tool_call_id": call.id, "content": tool_payload_json(call, result)}
                )

        return self.build_reply(message.content, usage, executed, options)

    @staticmethod
    def _assistant_tool_message(content: Optional[str], tool_calls: List[Any]) -> Dict[str, Any]:
        return {
            "role": "assistant",
            "content": content or None,
            "tool_calls": [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.function.name, "arguments": tc.function.arguments or "{}"},
                }
                for tc in tool_calls
            ],
        }

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

    async def _open_stream(
        self, messages: List[Dict[str, Any]], options: GenerationOptions, tool_choice: str
    ) -> StreamHandle:
        stream = await self._create(self._request(messages, options, tool_choice, stream=True))
        handle = StreamHandle(self.provider_id, self.model, {"messages": messages, "options": options})
        return handle.attach(self._pump(stream, handle))

    async def _pump(self, stream, handle: StreamHandle):
        partial: Dict[int, Dict[str, str]] = {}
        usage = TokenUsage()
        try:
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    usage = openai_usage(chunk.usage)
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                for tc in delta.tool_calls or []:
                    slot = partial.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        slot["id"] = tc.id
                    if tc.function is not None:
                        slot["name"] += tc.function.name or ""
                        slot["arguments"] += tc.function.arguments or ""
                if delta.content:
                    yield delta.content
        except openai.APIError as e:
            raise self._provider_error(e) from e

        handle.tool_calls = [
            ToolCall(id=slot["id"], name=slot["name"], arguments=self.decode_arguments(slot["arguments"]))
            for _, slot in sorted(partial.items())
        ]
        handle.resolve_usage(usage)
