"""Chat-model boundary used by the execution runner.

The runner only needs ``invoke(model, messages, tools) -> ModelReply``. The
LangChain adapter implements that against any ``BaseChatModel`` that supports
tool binding; ``DeterministicChatModel`` implements it offline.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage
from langchain_core.tools import StructuredTool
from pydantic import BaseModel

from agent_router.types import ModelReply, ToolCallRequest


@dataclass(slots=True, frozen=True)
class ChatMessage:
    role: str  # system | user | assistant | tool
    content: str
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None
    name: str | None = None


@dataclass(slots=True, frozen=True)
class ToolSpec:
    """A callable offered to the model: a registry tool or a specialist."""

    name: str
    description: str
    args_schema: type[BaseModel]


class ChatModel(Protocol):
    async def invoke(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
    ) -> ModelReply: ...


class LangChainChatModel:
    """Adapter over LangChain chat models, one instance per model id."""

    def __init__(self, factory: Callable[[str], BaseChatModel]) -> None:
        self._factory = factory
        self._models: dict[str, BaseChatModel] = {}

    async def invoke(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
    ) -> ModelReply:
        chat = self._models.get(model)
        if chat is None:
            chat = self._factory(model)
            self._models[model] = chat

        runnable: Any = chat.bind_tools([to_structured_tool(spec) for spec in tools]) if tools else chat
        result = await runnable.ainvoke([to_langchain_message(message) for message in messages])

        tool_calls = tuple(
            ToolCallRequest(
                id=str(call.get("id") or f"call_{uuid.uuid4().hex[:12]}"),
                name=str(call["name"]),
                arguments=dict(call.get("args") or {}),
            )
            for call in getattr(result, "tool_calls", None) or []
        )
        text = extract_final_text(getattr(result, "content", result))
        return ModelReply(text=text or None, tool_calls=tool_calls)


def openai_chat_model(api_key: str) -> LangChainChatModel:
    from langchain_openai import ChatOpenAI

    return LangChainChatModel(lambda model: ChatOpenAI(model=model, api_key=api_key, temperature=0))


def to_structured_tool(spec: ToolSpec) -> StructuredTool:
    async def _not_executed_here(**kwargs: Any) -> str:
        raise RuntimeError(f"{spec.name} is executed by the runner, not by the model adapter")

    return StructuredTool.from_function(
        coroutine=_not_executed_here,
        name=spec.name,
        description=spec.description,
        args_schema=spec.args_schema,
    )


def to_langchain_message(message: ChatMessage) -> BaseMessage:
    if message.role == "system":
        return SystemMessage(content=message.content)
    if message.role == "assistant":
        return AIMessage(
            content=message.content,
            tool_calls=[
                {"name": call.name, "args": dict(call.arguments), "id": call.id}
                for call in message.tool_calls
            ],
        )
    if message.role == "tool":
        return ToolMessage(content=message.content, tool_call_id=message.tool_call_id or "", name=message.name)
    return HumanMessage(content=message.content)


def extract_final_text(content: Any) -> str:
    """Normalize model content (string, content blocks, or dict) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content.strip()
    if isinstance(content, dict):
        return str(content.get("text") or content.get("content") or "").strip()
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                if item.get("type", "text") == "text" and "text" in item:
                    parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return " ".join(part.strip() for part in parts if part.strip())
    return str(content).strip()
