"""Versioned rule tables for query classification and intent inference.

The tables are plain data so they can be tuned and tested without touching the
classifier or the runner. Bump ``RULESET_VERSION`` whenever a table changes.
"""

from __future__ import annotations

import re
from typing import Final

RULESET_VERSION: Final = "2024.11.1"

# Fast path: trivially simple intents.
SIMPLE_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"turn (on|off|the).+(light|lamp|switch|fan|tv)", re.IGNORECASE),
    re.compile(r"(lights?|lamps?) (on|off)", re.IGNORECASE),
    re.compile(r"(open|close|lock|unlock).+(door|window|garage)", re.IGNORECASE),
    re.compile(r"weather|temperature|forecast", re.IGNORECASE),
    re.compile(r"what time is it", re.IGNORECASE),
    re.compile(r"^(hi|hello|hey)[\s\W]*$", re.IGNORECASE),
)

# Complexity markers that short-circuit to the top tier.
COMPLEX_PATTERNS: Final[tuple[re.Pattern[str], ...]] = (
    re.compile(r"\b(write|create|build|develop|code|implement|design)\b", re.IGNORECASE),
    re.compile(r"\b(analy[sz]e|explain|describe|detail)\b.+\bhow\b", re.IGNORECASE),
    re.compile(r"\b(how|why)\b[^?]+\b(and|but|while)\b[^?]+\b(how|why|what)\b", re.IGNORECASE),
    re.compile(r"\b(plan|strategy|architect|system)\b", re.IGNORECASE),
    re.compile(r"\b(compare|contrast|difference between)\b", re.IGNORECASE),
    re.compile(r"\b(debug|fix|solve|troubleshoot)\b.+\b(code|error|bug)\b", re.IGNORECASE),
    re.compile(r"\b(calculate|compute)\b.+\b(complex|advanced)\b", re.IGNORECASE),
)

CODE_FENCE: Final = re.compile(r"```")
MATH_SYMBOLS: Final = re.compile(r"[∫∑∏∂∇∆∞√π]")

FOLLOW_UP_WORDS: Final = ("why", "how", "explain", "elaborate", "detail", "analyze")

TECHNICAL_TERMS: Final = (
    "algorithm",
    "architecture",
    "optimization",
    "refactor",
    "design pattern",
    "performance",
    "scalability",
    "complexity",
    "implementation",
    "framework",
    "infrastructure",
    "asynchronous",
    "concurrent",
    "distributed",
    "microservice",
)

# Signal weights: length, code blocks, math symbols, question depth, technical terms.
SIGNAL_WEIGHTS: Final = {
    "length": 0.2,
    "code_blocks": 0.3,
    "math_symbols": 0.2,
    "question_depth": 0.15,
    "technical_terms": 0.15,
}

# Per-unit multipliers used to normalize raw counts onto 0-100.
LENGTH_SATURATION_CHARS: Final = 500
CODE_BLOCK_POINTS: Final = 30
MATH_SYMBOL_POINTS: Final = 20
MULTI_QUESTION_POINTS: Final = 40
FOLLOW_UP_POINTS: Final = 40
TECHNICAL_TERM_POINTS: Final = 15

MODERATE_THRESHOLD: Final = 40
COMPLEX_THRESHOLD: Final = 70
HISTORY_ESCALATION_BONUS: Final = 10

# Intent keywords used by the routing policy to narrow tools and specialists.
HOME_INTENT: Final = re.compile(
    r"\b(turn|light|lights|lamp|switch|climate|thermostat|lock|unlock|dim|brighten|"
    r"door|garage|alarm|fan|heating|cover|blinds)\b",
    re.IGNORECASE,
)
INFORMATION_INTENT: Final = re.compile(
    r"\b(search|find|lookup|look up|latest|current|news|research|weather|forecast|who|what is)\b",
    re.IGNORECASE,
)
MEMORY_INTENT: Final = re.compile(
    r"\b(remember|recall|forget|preference|preferences|save|store|my favou?rite)\b",
    re.IGNORECASE,
)
CODE_INTENT: Final = re.compile(
    r"\b(calculate|compute|code|python|script|data|chart|graph|program|debug)\b",
    re.IGNORECASE,
)

# Specialist intents, checked in order.
SPECIALIST_INTENTS: Final = (
    ("home", HOME_INTENT),
    ("memory", MEMORY_INTENT),
    ("research", INFORMATION_INTENT),
    ("code", CODE_INTENT),
)
GENERAL_SPECIALIST: Final = "general"

# Tool subsets granted per tier.
HOME_TOOLS: Final = ("ha_call",)
INFORMATION_TOOLS: Final = ("web_search",)
SIMPLE_DEFAULT_TOOLS: Final = ("memory_search", "web_search")
DEFAULT_TOOLS: Final = ("ha_search", "ha_call", "memory_search", "memory_add", "web_search")
FULL_TOOLS: Final = DEFAULT_TOOLS + ("code_interpreter",)
