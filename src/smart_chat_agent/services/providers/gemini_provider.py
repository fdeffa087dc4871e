"""Gemini adapter using Google's generative AI SDK."""

import json
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import google.generativeai as genai
import structlog
from google.api_core import exceptions

from ...domain.exceptions import ProviderError
from ...domain.models import Message, NormalizedReply, Role, TokenUsage, ToolResult
from ...metrics import PROVIDER_CALLS
from ..tool_executor import ToolExecutor
from .base import GenerationOptions, ProviderAdapter, StreamHandle, ToolCall, tool_payload
from .tools import gemini_function_declarations

logger = structlog.get_logger()

ModelFactory = Callable[[str], Any]

TOOLS_AUTO = {"function_calling_config": {"mode": "AUTO"}}
TOOLS_NONE = {"function_calling_config": {"mode": "NONE"}}

_SDK_ERRORS = (
    exceptions.GoogleAPIError,
    genai.types.BlockedPromptException,
    genai.types.StopCandidateException,
)


def gemini_usage(metadata: Any) -> TokenUsage:
    if metadata is None:
        return TokenUsage()
    return TokenUsage(
        input=getattr(metadata, "prompt_token_count", 0) or 0,
        output=getattr(metadata, "candidates_token_count", 0) or 0,
        cached=getattr(metadata, "cached_content_token_count", 0) or 0,
        thinking=getattr(metadata, "thoughts_token_count", 0) or 0,
    ).settled()


def _parts(response: Any) -> List[Any]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates or candidates[0].content is None:
        return []
    return list(candidates[0].content.parts)


def _text(parts: List[Any]) -> str:
    return "".join(getattr(part, "text", "") or "" for part in parts)


def _function_calls(parts: List[Any]) -> List[ToolCall]:
    calls = []
    for index, part in enumerate(parts):
        fn = getattr(part, "function_call", None)
        if fn and fn.name:
            args = {key: value for key, value in (fn.args or {}).items()}
            calls.append(ToolCall(id=f"{fn.name}-{index}", name=fn.name, arguments=args))
    return calls


def _function_response_content(results: List[Tuple[ToolCall, Optional[ToolResult]]]) -> Dict[str, Any]:
    parts = []
    for call, result in results:
        # Struct fields only accept JSON-native values
        payload = json.loads(json.dumps(tool_payload(call, result), default=str))
        parts.append(
            genai.protos.Part(
                function_response=genai.protos.FunctionResponse(name=call.name, response={"result": payload})
            )
        )
    return {"role": "user", "parts": parts}


class GeminiAdapter(ProviderAdapter):
    """Gemini models.

    The SDK has no reasoning-effort knob. Thinking models reason on their own, so
    extended reasoning is honoured only for models in ``thinking_models`` by
    widening the output budget those thinking tokens draw from.
    """

    provider_id = "gemini"

    def __init__(
        self,
        tools: ToolExecutor,
        model: str = "gemini-2.5-flash",
        temperature: float = 0.3,
        max_tokens: int = 1000,
        timeout: float = 30.0,
        model_factory: Optional[ModelFactory] = None,
        thinking_models: Sequence[str] = (),
        thinking_max_tokens: int = 8192,
    ):
        super().__init__(tools, model, timeout)
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.thinking_models = tuple(thinking_models)
        self.thinking_max_tokens = thinking_max_tokens
        self._model_factory = model_factory or self._default_model

    @property
    def supports_extended_reasoning(self) -> bool:
        return self.model in self.thinking_models

    def _default_model(self, system_prompt: str):
        return genai.GenerativeModel(
            self.model,
            system_instruction=system_prompt,
            generation_config={
                "temperature": self.temperature,
                "max_output_tokens": self.max_tokens,
            },
        )

    @staticmethod
    def build_contents(user_message: str, history: List[Message]) -> List[Dict[str, Any]]:
        contents = []
        for message in ProviderAdapter.conversation_turns(history):
            role = "model" if message.role == Role.ASSISTANT else "user"
            contents.append({"role": role, "parts": [message.content]})
        contents.append({"role": "user", "parts": [user_message]})
        return contents

    async def _generate(
        self, model, contents: List[Any], tool_config: Dict[str, Any], options: GenerationOptions, stream: bool
    ):
        kwargs: Dict[str, Any] = {
            "tools": [{"function_declarations": gemini_function_declarations()}],
            "tool_config": tool_config,
            "request_options": {"timeout": self.timeout},
            "stream": stream,
        }
        if options.extended_reasoning and self.supports_extended_reasoning:
            kwargs["generation_config"] = {
                "temperature": self.temperature,
                "max_output_tokens": self.thinking_max_tokens,
            }
        try:
            response = await model.generate_content_async(contents, **kwargs)
        except _SDK_ERRORS as e:
            PROVIDER_CALLS.labels(provider=self.provider_id, outcome="error").inc()
            raise self._provider_error(e) from e
        PROVIDER_CALLS.labels(provider=self.provider_id, outcome="ok").inc()
        return response

    def _provider_error(self, error: Exception) -> ProviderError:
        status = getattr(error, "code", None)
        status = status if isinstance(status, int) else None
        quota_violations, retry_after = [], None
        for detail in getattr(error, "details", None) or []:
            if hasattr(detail, "violations"):
                quota_violations.append(str(detail))
            delay = getattr(detail, "retry_delay", None)
            if delay is not None:
                retry_after = f"{getattr(delay, 'seconds', 0)}s"
        details = {"reason": getattr(error, "reason", None), "quota_violations": quota_violations}
        logger.error(
            "provider_request_failed",
            provider=self.provider_id,
            model=self.model,
            error_class=type(error).__name__,
            error=str(error),
            status=status,
            retry_after=retry_after,
            quota_exhausted=isinstance(error, exceptions.ResourceExhausted),
            **{k: v for k, v in details.items() if v},
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
        model = self._model_factory(system_prompt)
        contents: List[Any] = self.build_contents(user_message, history)
        usage = TokenUsage()
        executed: List[Tuple[ToolCall, Optional[ToolResult]]] = []

        rounds = 0
        while True:
            can_call = options.tools_enabled and rounds < options.max_tool_rounds
            response = await self._generate(
                model, contents, TOOLS_AUTO if can_call else TOOLS_NONE, options, stream=False
            )
            usage = usage + gemini_usage(getattr(response, "usage_metadata", None))
            parts = _parts(response)
            calls = _function_calls(parts)
            if not calls or not can_call:
                break

            rounds += 1
            logger.info("tool_round", provider=self.provider_id, round=rounds, tools=[c.name for c in calls])
            results = await self.run_tool_calls(calls, domain)
            executed.extend(results)
            contents.append(response.candidates[0].content)
            contents.append(_function_response_content(results))

        return self.build_reply(_text(parts), usage, executed, options)

    async def generate_response_stream(
        self,
        user_message: str,
        history: List[Message],
        domain: str,
        system_prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> StreamHandle:
        options = options or GenerationOptions()
        model = self._model_factory(system_prompt)
        contents: List[Any] = self.build_contents(user_message, history)
        tool_config = TOOLS_AUTO if options.tools_enabled else TOOLS_NONE
        return await self._open_stream(model, contents, tool_config, options)

    async def continue_stream(
        self, handle: StreamHandle, results: List[Tuple[ToolCall, Optional[ToolResult]]]
    ) -> StreamHandle:
        contents = list(handle.context["contents"])
        contents.append(
            {
                "role": "model",
                "parts": [
                    genai.protos.Part(function_call=genai.protos.FunctionCall(name=c.name, args=c.arguments))
                    for c, _ in results
                ],
            }
        )
        contents.append(_function_response_content(results))
        return await self._open_stream(handle.context["model"], contents, TOOLS_NONE, handle.context["options"])

    async def _open_stream(
        self, model, contents: List[Any], tool_config: Dict[str, Any], options: GenerationOptions
    ) -> StreamHandle:
        response = await self._generate(model, contents, tool_config, options, stream=True)
        handle = StreamHandle(
            self.provider_id, self.model, {"model": model, "contents": contents, "options": options}
        )
        return handle.attach(self._pump(response, handle))

    async def _pump(self, response, handle: StreamHandle):
        usage_metadata = None
        calls: List[ToolCall] = []
        try:
            async for chunk in response:
                if getattr(chunk, "usage_metadata", None):
                    usage_metadata = chunk.usage_metadata
                parts = _parts(chunk)
                calls.extend(_function_calls(parts))
                text = _text(parts)
                if text:
                    yield text
        except _SDK_ERRORS as e:
            raise self._provider_error(e) from e
        handle.tool_calls = calls
        handle.resolve_usage(gemini_usage(usage_metadata))
