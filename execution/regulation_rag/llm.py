"""
Chat completion client with a tool-calling loop.

``complete_with_tools`` drives the "model -> tool_calls -> tool results ->
model" loop on the OpenAI chat completions API. Each model turn is one
step; every tool call of a step is executed in order and answered with a
``role="tool"`` message before the next turn. The loop ends when the model
stops calling tools, when ``stop_when(steps)`` is true, or after
``max_steps`` turns.

API errors are not retried here and propagate to the caller.
"""

import os
import json
import logging
from typing import Any, Callable, Optional
from dataclasses import dataclass, field

from openai import OpenAI

logger = logging.getLogger(__name__)


@dataclass
class ChatModelConfig:
    """Configuration for the chat model."""
    model: str = "gpt-4o"
    temperature: float = 0.1
    timeout: float = 60.0


@dataclass
class ToolSpec:
    """A function the model may call. ``execute`` receives the parsed arguments."""
    name: str
    description: str
    parameters: dict
    execute: Callable[[dict], str]

    def definition(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict


@dataclass
class ToolResult:
    tool_call_id: str
    name: str
    output: str
    is_error: bool = False


@dataclass
class ModelStep:
    """One model turn: its text plus the tool calls it made and their results."""
    step_number: int
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)


@dataclass
class ToolLoopResult:
    text: str
    steps: list[ModelStep]

    @property
    def tool_calls(self) -> list[ToolCall]:
        return [tc for step in self.steps for tc in step.tool_calls]


def _parse_tool_call(tool_call) -> ToolCall:
    """Parse an SDK tool call into (id, name, arguments dict)."""
    fn = getattr(tool_call, "function", None)
    name = getattr(fn, "name", "") or ""
    raw_args = getattr(fn, "arguments", None) or "{}"
    if isinstance(raw_args, dict):
        args = raw_args
    else:
        try:
            args = json.loads(raw_args)
        except json.JSONDecodeError:
            logger.warning(f"Malformed arguments for tool '{name}': {raw_args[:200]}")
            args = {}
    if not isinstance(args, dict):
        args = {}
    return ToolCall(id=getattr(tool_call, "id", "") or "", name=name, arguments=args)


class ChatModel:
    """Thin wrapper around ``OpenAI().chat.completions``."""

    def __init__(self, config: Optional[ChatModelConfig] = None, client=None):
        self.config = config or ChatModelConfig()
        self._client = client

    def _get_client(self):
        """Lazy-init the OpenAI client."""
        if self._client is None:
            api_key = os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise RuntimeError("OPENAI_API_KEY not set; chat model unavailable")
            self._client = OpenAI(api_key=api_key, timeout=self.config.timeout)
        return self._client

    def complete(self, system_prompt: str, user_prompt: str, model: Optional[str] = None) -> str:
        """Single chat completion without tools."""
        response = self._get_client().chat.completions.create(
            model=model or self.config.model,
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            temperature=self.config.temperature,
        )
        return (response.choices[0].message.content or "").strip()

    def complete_with_tools(
        self,
        system_prompt: str,
        user_prompt: str,
        tools: list[ToolSpec],
        stop_when: Optional[Callable[[list[ModelStep]], bool]] = None,
        max_steps: int = 5,
        model: Optional[str] = None,
    ) -> ToolLoopResult:
        """
        Run the tool-calling loop.

        Args:
            system_prompt: System message
            user_prompt: User message
            tools: Tools exposed to the model
            stop_when: Predicate over all steps so far, checked after each step
            max_steps: Hard cap on model turns

        Returns:
            ToolLoopResult with the last turn's text and every step
        """
        client = self._get_client()
        tools_by_name = {tool.name: tool for tool in tools}
        tool_definitions = [tool.definition() for tool in tools]

        messages: list[dict[str, Any]] = [
            {"role": "system", "content": system_prompt},
            {"role": "user", "content": user_prompt},
        ]
        steps: list[ModelStep] = []
        text = ""

        for step_number in range(1, max_steps + 1):
            response = client.chat.completions.create(
                model=model or self.config.model,
                messages=messages,
                tools=tool_definitions,
                temperature=self.config.temperature,
            )
            message = response.choices[0].message
            text = message.content or ""
            raw_calls = list(message.tool_calls or [])

            # Content may be empty when tool_calls exist
            assistant_entry: dict[str, Any] = {"role": "assistant", "content": text}
            if raw_calls:
                assistant_entry["tool_calls"] = [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.function.name, "arguments": tc.function.arguments},
                    }
                    for tc in raw_calls
                ]
            messages.append(assistant_entry)

            step = ModelStep(step_number=step_number, text=text)
            steps.append(step)

            for raw_call in raw_calls:
                call = _parse_tool_call(raw_call)
                step.tool_calls.append(call)
                result = self._execute_tool(call, tools_by_name)
                step.tool_results.append(result)
                messages.append({
                    "role": "tool",
                    "tool_call_id": call.id,
                    "content": result.output,
                })

            logger.info(f"Step {step_number}: {len(step.tool_calls)} tool calls")
            if text:
                logger.debug(f"Step {step_number} text: {text[:200]}")

            if not raw_calls:
                break
            if stop_when is not None and stop_when(steps):
                logger.debug(f"Stop condition met after step {step_number}")
                break

        return ToolLoopResult(text=text, steps=steps)

    def _execute_tool(self, call: ToolCall, tools_by_name: dict[str, ToolSpec]) -> ToolResult:
        tool = tools_by_name.get(call.name)
        if tool is None:
            logger.warning(f"Model called unknown tool '{call.name}'")
            return ToolResult(call.id, call.name, f"Unknown tool: {call.name}", is_error=True)

        try:
            output = tool.execute(call.arguments)
        except Exception as e:
            logger.warning(
                f"Tool execution failed: tool={call.name}, error={type(e).__name__}: {e}",
                exc_info=True,
            )
            return ToolResult(call.id, call.name, f"Tool error: {e}", is_error=True)

        if not isinstance(output, str):
            output = json.dumps(output, ensure_ascii=False, default=str)
        return ToolResult(call.id, call.name, output)
