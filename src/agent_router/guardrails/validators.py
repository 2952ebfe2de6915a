"""Standard input/output validators.

Every validator is a pure ``(text) -> GuardrailResult`` function with a stable
name. Validators never rewrite text; they only report.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from agent_router.config import GuardrailConfig
from agent_router.types import GuardrailResult

SANITIZE_INPUT = "sanitize-user-input"
CONTENT_FILTER = "content-filter"
PROMPT_INJECTION = "prompt-injection-detection"
OUTPUT_QUALITY = "output-quality-check"
INFORMATION_LEAKAGE = "information-leakage-prevention"
HOME_SAFETY = "home-assistant-safety"

_SSN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
_CREDIT_CARD = re.compile(r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b")
_EMAIL = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")

_INJECTION_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"ignore (previous|above|all) (instructions|prompts|rules)",
        r"disregard (previous|above|all) (instructions|prompts|rules)",
        r"forget (everything|all|previous)",
        r"you are now (a|an) (different|new)",
        r"new instructions:",
        r"system:\s",
        r"\[system\]",
        r"override (instructions|prompt|rules)",
        r"act as (if|though) you (are|were)",
        r"pretend (you are|to be)",
    )
)
_SPECIAL_CHAR = re.compile(r"[^\w\s]|_")
# Density is only meaningful once there is enough text to measure.
_MIN_DENSITY_SAMPLE = 8

_SECRET_PATTERNS = tuple(
    re.compile(pattern)
    for pattern in (
        r"sk-[a-zA-Z0-9]{32,}",
        r"ghp_[a-zA-Z0-9]{36}",
        r"xox[baprs]-[a-zA-Z0-9-]+",
        r"AIza[a-zA-Z0-9_-]{35}",
        r"AKIA[0-9A-Z]{16}",
    )
)
_ENV_REFERENCE = re.compile(r"process\.env|os\.environ|getenv", re.IGNORECASE)

_DANGEROUS_ACTIONS = re.compile(
    r"\b(unlock(ed|ing)?|disarm(ed|ing)?|garage (door )?(is )?open(ed)?|door unlocked|"
    r"alarm disarmed|disable(d)?|delete(d)?|remove(d)?)\b",
    re.IGNORECASE,
)


@dataclass(slots=True, frozen=True)
class Validator:
    name: str
    check: Callable[[str], GuardrailResult]

    def __call__(self, text: str) -> GuardrailResult:
        return self.check(text)


def sanitize_input(config: GuardrailConfig) -> Validator:
    def _check(text: str) -> GuardrailResult:
        normalized = " ".join(text.split())
        if len(normalized) > config.max_input_length:
            return GuardrailResult(
                validator=SANITIZE_INPUT,
                tripwire_triggered=True,
                info={
                    "error": f"Input exceeds maximum length of {config.max_input_length} characters",
                    "length": len(normalized),
                },
            )
        return GuardrailResult(
            validator=SANITIZE_INPUT,
            tripwire_triggered=False,
            info={"original_length": len(text), "normalized_length": len(normalized)},
        )

    return Validator(SANITIZE_INPUT, _check)


def content_filter() -> Validator:
    def _check(text: str) -> GuardrailResult:
        if _SSN.search(text):
            return GuardrailResult(
                validator=CONTENT_FILTER,
                tripwire_triggered=True,
                info={
                    "error": "Sensitive information detected: Social Security Number",
                    "type": "PII",
                    "pattern": "SSN",
                },
            )
        if _CREDIT_CARD.search(text):
            return GuardrailResult(
                validator=CONTENT_FILTER,
                tripwire_triggered=True,
                info={
                    "error": "Sensitive information detected: Credit Card Number",
                    "type": "PII",
                    "pattern": "CC",
                },
            )
        return GuardrailResult(
            validator=CONTENT_FILTER,
            tripwire_triggered=False,
            info={
                "contains_email": bool(_EMAIL.search(text)),
                "contains_phone": bool(_PHONE.search(text)),
                "checks": "passed",
            },
        )

    return Validator(CONTENT_FILTER, _check)


def prompt_injection(config: GuardrailConfig) -> Validator:
    def _check(text: str) -> GuardrailResult:
        lowered = text.lower()
        for pattern in _INJECTION_PATTERNS:
            if pattern.search(lowered):
                return GuardrailResult(
                    validator=PROMPT_INJECTION,
                    tripwire_triggered=True,
                    info={
                        "error": "Potential prompt injection detected",
                        "pattern": pattern.pattern,
                        "confidence": config.injection_confidence,
                    },
                )

        compact = "".join(lowered.split())
        if len(compact) >= _MIN_DENSITY_SAMPLE:
            ratio = len(_SPECIAL_CHAR.findall(compact)) / len(compact)
            if ratio > config.special_char_ratio:
                return GuardrailResult(
                    validator=PROMPT_INJECTION,
                    tripwire_triggered=True,
                    info={
                        "error": "Suspicious input pattern detected",
                        "reason": "High special character ratio",
                        "ratio": round(ratio, 3),
                        "confidence": round(min(1.0, ratio / config.special_char_ratio / 2), 3),
                    },
                )

        return GuardrailResult(
            validator=PROMPT_INJECTION,
            tripwire_triggered=False,
            info={"safety_check": "passed"},
        )

    return Validator(PROMPT_INJECTION, _check)


def output_quality(config: GuardrailConfig) -> Validator:
    def _check(text: str) -> GuardrailResult:
        stripped = text.strip()
        if len(stripped) < config.min_output_length:
            return GuardrailResult(
                validator=OUTPUT_QUALITY,
                tripwire_triggered=True,
                info={
                    "error": f"Output too short (minimum {config.min_output_length} characters)",
                    "length": len(stripped),
                },
            )
        if len(stripped) > config.max_output_length:
            return GuardrailResult(
                validator=OUTPUT_QUALITY,
                tripwire_triggered=True,
                info={
                    "error": f"Output exceeds maximum length of {config.max_output_length} characters",
                    "length": len(stripped),
                },
            )
        checks = [
            bool(re.search(r"[.!?]$", stripped)),
            stripped[:1].isupper(),
            stripped != stripped.upper(),
        ]
        return GuardrailResult(
            validator=OUTPUT_QUALITY,
            tripwire_triggered=False,
            info={"length": len(stripped), "quality_score": round(sum(checks) / len(checks), 3)},
        )

    return Validator(OUTPUT_QUALITY, _check)


def information_leakage() -> Validator:
    def _check(text: str) -> GuardrailResult:
        for pattern in _SECRET_PATTERNS:
            if pattern.search(text):
                return GuardrailResult(
                    validator=INFORMATION_LEAKAGE,
                    tripwire_triggered=True,
                    info={
                        "error": "Potential API key or token detected in output",
                        "pattern": pattern.pattern,
                    },
                )
        if _ENV_REFERENCE.search(text):
            return GuardrailResult(
                validator=INFORMATION_LEAKAGE,
                tripwire_triggered=True,
                info={
                    "error": "Potential environment variable reference in output",
                    "risk": "information_disclosure",
                },
            )
        return GuardrailResult(
            validator=INFORMATION_LEAKAGE,
            tripwire_triggered=False,
            info={"security_check": "passed"},
        )

    return Validator(INFORMATION_LEAKAGE, _check)


def home_safety() -> Validator:
    """Flags dangerous smart-home actions mentioned in output.

    Never trips: blocking dangerous actions is the approval engine's job.
    """

    def _check(text: str) -> GuardrailResult:
        actions = sorted({match.group(0).lower() for match in _DANGEROUS_ACTIONS.finditer(text)})
        return GuardrailResult(
            validator=HOME_SAFETY,
            tripwire_triggered=False,
            info={"flagged": bool(actions), "actions": actions},
        )

    return Validator(HOME_SAFETY, _check)
