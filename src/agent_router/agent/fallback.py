"""Deterministic chat model used when no external LLM is configured."""

from __future__ import annotations

import json
import re
import uuid
from collections.abc import Sequence
from typing import Any

from agent_router.agent.models import ChatMessage, ToolSpec
from agent_router.routing import rules
from agent_router.types import ModelReply, ToolCallRequest

TRANSFER_PREFIX = "transfer_to_"
CONSULT_PREFIX = "call_"

_HOME_COMMAND = re.compile(
    r"\b(?P<verb>turn on|turn off|switch on|switch off|unlock|lock|open|close|disarm)\s+"
    r"(?:the\s+|my\s+)?(?P<target>[a-z0-9 _-]+?)\s*(?:please)?[.!?]*$",
    re.IGNORECASE,
)
_VERB_SERVICES = {
    "turn on": "turn_on",
    "switch on": "turn_on",
    "turn off": "turn_off",
    "switch off": "turn_off",
    "unlock": "unlock",
    "lock": "lock",
    "open": "open",
    "close": "close",
    "disarm": "disarm",
}
# (keywords, domain, strip keywords from the entity slug)
_DEVICE_DOMAINS: tuple[tuple[tuple[str, ...], str, bool], ...] = (
    (("light", "lights", "lamp"), "light", True),
    (("fan",), "fan", True),
    (("thermostat", "heating", "climate"), "climate", True),
    (("blinds", "curtains", "shades"), "cover", False),
    (("alarm",), "alarm_control_panel", True),
    (("garage",), "garage_door", True),
    (("door",), "lock", False),
)
_REMEMBER = re.compile(r"\bremember(?: that)?\s+(?P<content>.+)$", re.IGNORECASE)
_RECALL = re.compile(r"\b(recall|what do you remember|my preferences?|my favou?rite)\b", re.IGNORECASE)
_PYTHON_FENCE = re.compile(r"```(?:python)?\s*\n(?P<code>.+?)```", re.DOTALL)


class DeterministicChatModel:
    """Offline model with the same contract as ``LangChainChatModel``.

    It picks tools from keyword rules, hands off and fans out by intent, and
    answers from the tool results it has been given. Useful for local runs and
    tests where ``OPENAI_API_KEY`` is not configured.
    """

    async def invoke(
        self,
        model: str,
        messages: Sequence[ChatMessage],
        tools: Sequence[ToolSpec],
    ) -> ModelReply:
        del model
        user_index = _last_index(messages, "user")
        user_text = messages[user_index].content if user_index >= 0 else ""
        tool_results = [message for message in messages[user_index + 1 :] if message.role == "tool"]
        if tool_results:
            return ModelReply(text=_compose_answer(tool_results))

        offered = {spec.name for spec in tools}
        calls = _plan_calls(user_text, offered)
        if calls:
            return ModelReply(text=None, tool_calls=tuple(calls))
        return ModelReply(text=_direct_answer(user_text))


def parse_home_command(text: str) -> dict[str, Any] | None:
    """Map a device command onto ``ha_call`` arguments."""
    match = _HOME_COMMAND.search(text.strip())
    if match is None:
        return None
    service = _VERB_SERVICES[match.group("verb").lower()]
    words = match.group("target").lower().replace("-", " ").replace("_", " ").split()
    if not words:
        return None

    domain, strip = "switch", False
    keywords: tuple[str, ...] = ()
    for candidates, candidate_domain, candidate_strip in _DEVICE_DOMAINS:
        if any(word in candidates for word in words):
            domain, strip, keywords = candidate_domain, candidate_strip, candidates
            break

    if strip:
        words = [word for word in words if word not in keywords and word != "door"]
    slug = "_".join(words) or ("home" if domain == "alarm_control_panel" else "main")
    return {"domain": domain, "service": service, "entity_id": f"{domain}.{slug}"}


def _plan_calls(text: str, offered: set[str]) -> list[ToolCallRequest]:
    transfers = sorted(name for name in offered if name.startswith(TRANSFER_PREFIX))
    if transfers:
        target = _pick_specialist(text, transfers, TRANSFER_PREFIX)
        return [_call(target, {"reason": f"Best suited for: {text[:80]}"})]

    consults = sorted(name for name in offered if name.startswith(CONSULT_PREFIX))
    if consults:
        return [_call(name, {"task": text}) for name in consults]

    if "ha_call" in offered:
        arguments = parse_home_command(text)
        if arguments is not None:
            return [_call("ha_call", arguments)]

    remember = _REMEMBER.search(text)
    if remember and "memory_add" in offered:
        return [_call("memory_add", {"content": remember.group("content").strip()})]
    if _RECALL.search(text) and "memory_search" in offered:
        return [_call("memory_search", {"query": text})]

    code = _PYTHON_FENCE.search(text)
    if code and "code_interpreter" in offered:
        return [_call("code_interpreter", {"code": code.group("code")})]

    if "ha_search" in offered and rules.HOME_INTENT.search(text):
        return [_call("ha_search", {"query": text[:200]})]
    if "web_search" in offered and rules.INFORMATION_INTENT.search(text):
        return [_call("web_search", {"query": text})]
    return []


def _pick_specialist(text: str, names: list[str], prefix: str) -> str:
    available = {name[len(prefix) :]: name for name in names}
    for specialist_id, intent in rules.SPECIALIST_INTENTS:
        if specialist_id in available and intent.search(text):
            return available[specialist_id]
    return available.get(rules.GENERAL_SPECIALIST, names[0])


def _call(name: str, arguments: dict[str, Any]) -> ToolCallRequest:
    return ToolCallRequest(id=f"call_{uuid.uuid4().hex[:12]}", name=name, arguments=arguments)


def _last_index(messages: Sequence[ChatMessage], role: str) -> int:
    for index in range(len(messages) - 1, -1, -1):
        if messages[index].role == role:
            return index
    return -1


def _compose_answer(tool_results: list[ChatMessage]) -> str:
    lines: list[str] = []
    for message in tool_results:
        try:
            payload = json.loads(message.content)
        except (TypeError, ValueError):
            payload = {"success": True, "result": message.content}
        lines.append(_describe_result(message.name or "tool", payload))
    return "\n".join(lines)


def _describe_result(name: str, payload: dict[str, Any]) -> str:
    if name.startswith(CONSULT_PREFIX):
        specialist = payload.get("specialist", name[len(CONSULT_PREFIX) :])
        if payload.get("success"):
            return f"The {specialist} specialist reported: {payload.get('output', '')}"
        return f"The {specialist} specialist could not help: {payload.get('error', 'unknown error')}."

    if not payload.get("success"):
        return f"I could not complete {name}: {payload.get('error', 'unknown error')}."

    result = payload.get("result") or {}
    if name == "ha_call":
        entity = result.get("entity_id") or "the device"
        return f"Done. I called {result.get('service', 'the service')} on {entity}."
    if name == "ha_search":
        entities = ", ".join(entity["entity_id"] for entity in result.get("entities", [])[:5])
        return f"I found {result.get('count', 0)} matching devices: {entities or 'none'}."
    if name == "memory_add":
        return "Got it. I saved that to memory."
    if name == "memory_search":
        found = [row["content"] for row in result.get("results", [])[:3]]
        if not found:
            return "I do not have any memories about that yet."
        return "Here is what I remember: " + "; ".join(found) + "."
    if name == "web_search":
        hits = result.get("results", [])[:3]
        if not hits:
            return "The web search returned no results."
        return "Top results: " + "; ".join(str(hit.get("title", hit.get("url", ""))) for hit in hits) + "."
    if name == "code_interpreter":
        output = str(result.get("stdout", "")).strip() or "(no output)"
        return f"The code ran with exit code {result.get('exit_code')}. Output: {output}"
    return f"{name} completed successfully."


def _direct_answer(text: str) -> str:
    if not text.strip():
        return "Hello! How can I help you today?"
    return f"Here is my answer to your request: {text.strip()[:200]}"
