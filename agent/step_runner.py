"""One generation step: model call, tool calls, repeat until a final answer.

``OpenAIStepRunner`` talks to any OpenAI-compatible chat-completions
endpoint.  It reports progress only through the ``emit`` sink handed in by
the App and asks ``approve(tool_name, tool_args)`` before every tool
execution, so the same runner serves the interactive REPL, one-shot runs and
tests.

Blocking network calls run on a helper thread that the step thread polls,
so a cancelled step returns promptly instead of waiting out an HTTP
round-trip.
"""

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from agent import compaction
from agent.compaction import CompactionError, CompactionOptions, CompactionResult
from agent.context import CancelContext
from agent.events import (
    CompactionEvent,
    ResponseCompleteEvent,
    StreamChunkEvent,
    ToolCallContentEvent,
    ToolCallStartedEvent,
    ToolExecutionEvent,
    ToolResultEvent,
    Usage,
)
from agent.model_metadata import (
    clamp_max_tokens,
    estimate_messages_tokens_rough,
    estimate_tokens_rough,
    get_model_capabilities,
)
from tools.mcp_tool import MCPToolset, ToolCall, ToolResponse

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 100_000
DEFAULT_MAX_STEPS = 20

Emit = Callable[[Any], None]
Approve = Callable[[str, str], bool]


@dataclass
class StepResult:
    messages: List[Dict[str, Any]]
    final_response: str
    usage: Usage = field(default_factory=Usage)


class StepRunner:
    """Interface the App drives. One call = one user turn."""

    def generate_step(
        self,
        ctx: CancelContext,
        messages: List[Dict[str, Any]],
        emit: Emit,
        approve: Approve,
    ) -> StepResult:
        raise NotImplementedError

    def compact(
        self,
        ctx: CancelContext,
        messages: List[Dict[str, Any]],
        custom_instructions: str = "",
    ) -> Tuple[Optional[CompactionResult], List[Dict[str, Any]]]:
        """Summarize older history on request; returns ``(None, messages)`` when it cannot."""
        return None, messages


def truncate_tool_result(content: str, limit: int = MAX_TOOL_RESULT_CHARS) -> str:
    if len(content) <= limit:
        return content
    return content[:limit] + f"\n\n[... truncated {len(content) - limit:,} characters]"


def _run_interruptible(ctx: CancelContext, fn: Callable[[], Any], on_cancel: Callable[[], None]) -> Any:
    """Run ``fn`` on a helper thread, polling ``ctx`` until it finishes."""
    result: Dict[str, Any] = {"value": None, "error": None}

    def _call():
        try:
            result["value"] = fn()
        except BaseException as e:
            result["error"] = e

    t = threading.Thread(target=_call, daemon=True, name="model-call")
    t.start()
    while t.is_alive():
        t.join(timeout=0.3)
        if ctx.cancelled:
            try:
                on_cancel()
            except Exception as e:
                logger.debug("Error while aborting model call: %s", e)
            ctx.raise_if_cancelled()
    if result["error"] is not None:
        raise result["error"]
    return result["value"]


class OpenAIStepRunner(StepRunner):
    """Step runner for OpenAI-compatible chat-completions APIs."""

    def __init__(
        self,
        client,
        model: str,
        toolset: Optional[MCPToolset] = None,
        *,
        provider: Optional[str] = None,
        system_prompt: Optional[str] = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        max_tokens: Optional[int] = None,
        temperature: Optional[float] = None,
        stream: bool = True,
        request_timeout: float = 600.0,
        compaction_options: Optional[CompactionOptions] = None,
    ):
        self.client = client
        self.model = model
        self.toolset = toolset or MCPToolset()
        self.provider = provider
        self.system_prompt = system_prompt
        self.max_steps = max(1, int(max_steps))
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.stream = stream
        self.request_timeout = request_timeout
        self.compaction_options = compaction_options or CompactionOptions()
        self.capabilities = get_model_capabilities(model, provider)

    def _build_api_kwargs(self, api_messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        api_kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": api_messages,
            "timeout": self.request_timeout,
        }
        tools = [d.to_openai_tool() for d in self.toolset.descriptors()]
        if tools:
            api_kwargs["tools"] = tools

        max_tokens = clamp_max_tokens(self.max_tokens, self.capabilities)
        if max_tokens is not None:
            api_kwargs["max_tokens"] = max_tokens
        if self.temperature is not None:
            if self.capabilities.supports_temperature:
                api_kwargs["temperature"] = self.temperature
            else:
                logger.debug("Model %s does not accept temperature; dropping it", self.model)
        if self.stream:
            api_kwargs["stream"] = True
            api_kwargs["stream_options"] = {"include_usage": True}
        return api_kwargs

    def generate_step(self, ctx, messages, emit, approve):
        working = copy.deepcopy(messages)
        working = self._auto_compact(ctx, working, emit)
        usage = Usage()
        final_response = ""

        for step in range(1, self.max_steps + 1):
            ctx.raise_if_cancelled()
            api_messages = list(working)
            if self.system_prompt:
                api_messages.insert(0, {"role": "system", "content": self.system_prompt})

            api_kwargs = self._build_api_kwargs(api_messages)
            if self.stream:
                content, tool_calls, step_usage = self._streamed_completion(ctx, api_kwargs, emit)
            else:
                content, tool_calls, step_usage = self._completion(ctx, api_kwargs)
            if step_usage is None:
                step_usage = Usage(
                    input_tokens=estimate_messages_tokens_rough(api_messages),
                    output_tokens=estimate_tokens_rough(content),
                    estimated=True,
                )
            usage.add(step_usage)
            final_response = content

            if not tool_calls:
                working.append({"role": "assistant", "content": content})
                if not self.stream:
                    emit(ResponseCompleteEvent(content))
                return StepResult(working, content, usage)

            if content:
                emit(ToolCallContentEvent(content))
            working.append({
                "role": "assistant",
                "content": content or None,
                "tool_calls": [
                    {
                        "id": tc["id"],
                        "type": "function",
                        "function": {"name": tc["name"], "arguments": tc["arguments"]},
                    }
                    for tc in tool_calls
                ],
            })
            for tc in tool_calls:
                working.append(self._run_tool(ctx, tc, emit, approve))

            logger.debug("Step %d finished with %d tool calls", step, len(tool_calls))

        logger.warning("Reached max_steps (%d) without a final answer", self.max_steps)
        return StepResult(working, final_response, usage)

    def compact(self, ctx, messages, custom_instructions=""):
        return _run_interruptible(
            ctx,
            lambda: compaction.compact(
                self.client, self.model, messages, self.compaction_options,
                custom_instructions=custom_instructions, timeout=self.request_timeout,
            ),
            on_cancel=lambda: None,
        )

    def _auto_compact(self, ctx, messages, emit: Emit):
        opts = self.compaction_options
        if not opts.auto:
            return messages
        if not compaction.should_compact(messages, self.capabilities.context_length, opts.reserve_tokens):
            return messages
        try:
            result, compacted = _run_interruptible(
                ctx,
                lambda: compaction.compact(
                    self.client, self.model, messages, opts,
                    force=False, timeout=self.request_timeout,
                ),
                on_cancel=lambda: None,
            )
        except CompactionError as e:
            logger.warning("Auto-compaction failed, keeping the full history: %s", e)
            return messages
        if result is None:
            return messages
        emit(CompactionEvent(
            result.summary, result.original_tokens, result.compacted_tokens,
            result.messages_removed, auto=True,
        ))
        return compacted

    def _run_tool(self, ctx, tc: Dict[str, str], emit: Emit, approve: Approve) -> Dict[str, Any]:
        name, args = tc["name"], tc["arguments"]
        emit(ToolCallStartedEvent(name, args))

        if not approve(name, args):
            response = ToolResponse.error(f"Tool call '{name}' was not approved by the user.")
        else:
            emit(ToolExecutionEvent(name, True))
            try:
                response = self.toolset.invoke(ctx, ToolCall(id=tc["id"], name=name, input=args))
            finally:
                emit(ToolExecutionEvent(name, False))

        content = truncate_tool_result(response.content)
        emit(ToolResultEvent(name, args, content, response.is_error))
        return {"role": "tool", "tool_call_id": tc["id"], "content": content}

    def _completion(self, ctx, api_kwargs):
        response = _run_interruptible(
            ctx,
            lambda: self.client.chat.completions.create(**api_kwargs),
            on_cancel=lambda: None,
        )
        if not response.choices:
            raise RuntimeError("model returned no choices")
        message = response.choices[0].message
        tool_calls = [
            {
                "id": tc.id or f"call_{uuid.uuid4().hex[:12]}",
                "name": tc.function.name,
                "arguments": tc.function.arguments or "",
            }
            for tc in (message.tool_calls or [])
        ]
        usage = None
        if response.usage is not None:
            usage = Usage(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
            )
        return message.content or "", tool_calls, usage

    def _streamed_completion(self, ctx, api_kwargs, emit: Emit):
        holder: Dict[str, Any] = {"stream": None}
        parts: List[str] = []
        calls: Dict[int, Dict[str, str]] = {}
        usage_box: Dict[str, Optional[Usage]] = {"usage": None}

        def _consume():
            stream = self.client.chat.completions.create(**api_kwargs)
            holder["stream"] = stream
            for chunk in stream:
                if ctx.cancelled:
                    break
                if getattr(chunk, "usage", None) is not None:
                    usage_box["usage"] = Usage(
                        input_tokens=chunk.usage.prompt_tokens or 0,
                        output_tokens=chunk.usage.completion_tokens or 0,
                    )
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None:
                    continue
                if delta.content:
                    parts.append(delta.content)
                    emit(StreamChunkEvent(delta.content))
                for tc in delta.tool_calls or []:
                    acc = calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                    if tc.id:
                        acc["id"] = tc.id
                    if tc.function is not None:
                        if tc.function.name:
                            acc["name"] += tc.function.name
                        if tc.function.arguments:
                            acc["arguments"] += tc.function.arguments

        def _abort():
            stream = holder["stream"]
            if stream is not None:
                stream.close()

        _run_interruptible(ctx, _consume, on_cancel=_abort)
        ctx.raise_if_cancelled()

        tool_calls = []
        for index in sorted(calls):
            acc = calls[index]
            if not acc["name"]:
                continue
            if not acc["id"]:
                acc["id"] = f"call_{uuid.uuid4().hex[:12]}"
            tool_calls.append(acc)
        return "".join(parts), tool_calls, usage_box["usage"]
