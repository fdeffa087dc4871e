"""Uniform contract every language-model provider adapter implements."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import structlog

from ...domain.exceptions import ProviderError
from ...domain.models import FunctionResult, Message, NormalizedReply, Role, TokenUsage, ToolResult
from ..tool_executor import ToolExecutor
from .parsing import ParsedReply, parse_reply

logger = structlog.get_logger()

MAX_TOOL_ROUNDS = 3


@dataclass
class GenerationOptions:
    extended_reasoning: bool = False
    tools_enabled: bool = True
    max_tool_rounds: int = MAX_TOOL_ROUNDS
    system_prompt_hash: Optional[str] = None


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)


def tool_payload(call: ToolCall, result: Optional[ToolResult]) -> Dict[str, Any]:
    """What the model sees for one tool call."""
    if result is None:
        return {"error": f"Herramienta desconocida: {call.name}"}
    if result.data is None:
        return {"found": False, "message": "No se encontró información"}
    return result.data


def tool_payload_json(call: ToolCall, result: Optional[ToolResult]) -> str:
    return json.dumps(tool_payload(call, result), ensure_ascii=False, default=str)


class StreamHandle:
    """Async iterator over text chunks of one streamed generation.

    ``usage`` is a future that resolves only after the stream is exhausted;
    ``tool_calls`` holds any calls the provider requested, also final only
    after exhaustion. ``context`` carries provider state for continuation.
    """

    def __init__(self, provider: str, model: str, context: Optional[Dict[str, Any]] = None):
        self.provider = provider
        self.model = model
        self.context: Dict[str, Any] = context or {}
        self.text = ""
        self.tool_calls: List[ToolCall] = []
        self.usage: "asyncio.Future[TokenUsage]" = asyncio.get_running_loop().create_future()
        self._source: Optional[AsyncIterator[str]] = None
        self._iterator = None

    def attach(self, source: AsyncIterator[str]) -> "StreamHandle":
        self._source = source
        return self

    def resolve_usage(self, usage: TokenUsage) -> None:
        if not self.usage.done():
            self.usage.set_result(usage.settled())

    def __aiter__(self):
        if self._iterator is None:
            self._iterator = self._iterate()
        return self._iterator

    async def aclose(self) -> None:
        """Stop reading from the provider. Usage that never arrived is cancelled."""
        if self._iterator is not None:
            await self._iterator.aclose()
        close = getattr(self._source, "aclose", None)
        if close is not None:
            await close()
        if not self.usage.done():
            self.usage.cancel()

    async def _iterate(self):
        try:
            async for chunk in self._source:
                self.text += chunk
                yield chunk
        except Exception:
            self.usage.cancel()
            raise
        self.resolve_usage(TokenUsage())


class ProviderAdapter(ABC):
    """Wraps one provider SDK behind generate / stream / tool-call / parse."""

    provider_id: str = ""

    def __init__(self, tools: ToolExecutor, model: str, timeout: float = 30.0):
        self.tools = tools
        self.model = model
        self.timeout = timeout

    @property
    def supports_extended_reasoning(self) -> bool:
        return False

    @abstractmethod
    async def generate_response(
        self,
        user_message: str,
        history: List[Message],
        domain: str,
        system_prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> NormalizedReply:
        """One complete turn, including the bounded tool-calling loop."""
        pass

    @abstractmethod
    async def generate_response_stream(
        self,
        user_message: str,
        history: List[Message],
        domain: str,
        system_prompt: str,
        options: Optional[GenerationOptions] = None,
    ) -> StreamHandle:
        """Open a stream. Connection and HTTP errors raise here, before any chunk."""
        pass

    @abstractmethod
    async def continue_stream(
        self, handle: StreamHandle, results: List[Tuple[ToolCall, Optional[ToolResult]]]
    ) -> StreamHandle:
        """Resume a stream that stopped on tool calls, with tools disabled."""
        pass

    async def execute_tool_call(self, call: ToolCall, domain: str) -> Optional[ToolResult]:
        return await self.tools.execute_tool(call.name, call.arguments, domain)

    async def run_tool_calls(
        self, calls: List[ToolCall], domain: str
    ) -> List[Tuple[ToolCall, Optional[ToolResult]]]:
        executed = []
        for call in calls:
            result = await self.execute_tool_call(call, domain)
            executed.append((call, result))
        return executed

    def parse_response(self, text: Optional[str]) -> ParsedReply:
        return parse_reply(text)

    def decode_arguments(self, raw: Any) -> Dict[str, Any]:
        """Tool arguments arrive as a JSON string (or already decoded)."""
        if isinstance(raw, dict):
            return raw
        if not raw:
            return {}
        try:
            decoded = json.loads(raw)
        except ValueError as e:
            raise ProviderError(self.provider_id, f"Malformed tool arguments: {e}") from e
        if not isinstance(decoded, dict):
            raise ProviderError(self.provider_id, "Tool arguments are not an object")
        return decoded

    @staticmethod
    def conversation_turns(history: List[Message]) -> List[Message]:
        """History without the memorized system message; the prompt in effect is sent separately."""
        return [m for m in history if m.role != Role.SYSTEM]

    def build_reply(
        self,
        text: Optional[str],
        usage: TokenUsage,
        executed: List[Tuple[ToolCall, Optional[ToolResult]]],
        options: GenerationOptions,
    ) -> NormalizedReply:
        parsed = self.parse_response(text)
        logger.debug("provider_reply_parsed", provider=self.provider_id, strategy=parsed.strategy)
        return NormalizedReply(
            message=parsed.message,
            audio_description=parsed.audio_description,
            action=parsed.action,
            usage=usage.settled(),
            function_results=[
                FunctionResult(
                    name=call.name,
                    arguments=call.arguments,
                    result=result.data if result is not None else None,
                )
                for call, result in executed
            ],
            system_prompt_hash=options.system_prompt_hash,
        )
