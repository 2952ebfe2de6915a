"""Deterministic complexity classifier.

Order of evaluation:
1. fast-path regexes for trivially simple intents -> ``simple``
2. complexity-marker regexes -> ``complex``
3. weighted score over five signals, thresholded at 40 / 70.

A long conversation history adds an escalation bonus to the weighted score,
capped at one tier step. The classifier never fails: empty or non-text input is
``simple``.
"""

from __future__ import annotations

from collections.abc import Sequence

from agent_router.config import ClassifierConfig
from agent_router.routing import rules
from agent_router.types import ComplexityScore, ComplexitySignals, ComplexityTier, Message

_TIER_ORDER = (ComplexityTier.SIMPLE, ComplexityTier.MODERATE, ComplexityTier.COMPLEX)


def classify(
    text: str,
    history: Sequence[Message] | None = None,
    *,
    config: ClassifierConfig | None = None,
) -> ComplexityScore:
    if not isinstance(text, str):
        text = ""
    stripped = text.strip()
    signals = compute_signals(stripped)

    if not stripped:
        return ComplexityScore(tier=ComplexityTier.SIMPLE, signals=signals, rule="empty")

    if any(pattern.search(stripped) for pattern in rules.SIMPLE_PATTERNS):
        return ComplexityScore(
            tier=ComplexityTier.SIMPLE,
            signals=signals,
            score=weighted_score(signals),
            rule="fast_path",
        )

    if any(pattern.search(stripped) for pattern in rules.COMPLEX_PATTERNS):
        return ComplexityScore(
            tier=ComplexityTier.COMPLEX,
            signals=signals,
            score=weighted_score(signals),
            rule="complexity_marker",
        )

    config = config or ClassifierConfig()
    score = weighted_score(signals)
    tier = tier_for_score(score)
    rule = "weighted"

    if history is not None and len(history) > config.history_escalation_threshold:
        escalated = tier_for_score(score + rules.HISTORY_ESCALATION_BONUS)
        capped = _TIER_ORDER[min(_TIER_ORDER.index(tier) + 1, len(_TIER_ORDER) - 1)]
        if _TIER_ORDER.index(escalated) > _TIER_ORDER.index(tier):
            tier = capped
            rule = "history_escalation"

    return ComplexityScore(tier=tier, signals=signals, score=score, rule=rule)


def compute_signals(text: str) -> ComplexitySignals:
    """Normalize each raw signal onto 0-100."""
    lowered = text.lower()

    length = min(100, round(len(text) / rules.LENGTH_SATURATION_CHARS * 100))

    fences = len(rules.CODE_FENCE.findall(text)) // 2
    code_blocks = min(100, fences * rules.CODE_BLOCK_POINTS)

    math_symbols = min(100, len(rules.MATH_SYMBOLS.findall(text)) * rules.MATH_SYMBOL_POINTS)

    depth = 0
    if text.count("?") > 2:
        depth += rules.MULTI_QUESTION_POINTS
    if any(word in lowered for word in rules.FOLLOW_UP_WORDS):
        depth += rules.FOLLOW_UP_POINTS
    question_depth = min(100, depth)

    terms = sum(1 for term in rules.TECHNICAL_TERMS if term in lowered)
    technical_terms = min(100, terms * rules.TECHNICAL_TERM_POINTS)

    return ComplexitySignals(
        length=length,
        code_blocks=code_blocks,
        math_symbols=math_symbols,
        question_depth=question_depth,
        technical_terms=technical_terms,
    )


def weighted_score(signals: ComplexitySignals) -> int:
    weights = rules.SIGNAL_WEIGHTS
    total = (
        signals.length * weights["length"]
        + signals.code_blocks * weights["code_blocks"]
        + signals.math_symbols * weights["math_symbols"]
        + signals.question_depth * weights["question_depth"]
        + signals.technical_terms * weights["technical_terms"]
    )
    return round(total)


def tier_for_score(score: float) -> ComplexityTier:
    if score < rules.MODERATE_THRESHOLD:
        return ComplexityTier.SIMPLE
    if score < rules.COMPLEX_THRESHOLD:
        return ComplexityTier.MODERATE
    return ComplexityTier.COMPLEX
