"""Ordered guardrail pipelines with first-trip-wins semantics."""

from __future__ import annotations

from collections.abc import Sequence

from agent_router.config import GuardrailConfig
from agent_router.errors import GuardrailRejection
from agent_router.guardrails import validators as v
from agent_router.obs.logging import get_logger
from agent_router.types import GuardrailResult

logger = get_logger(name=__name__)


class GuardrailPipeline:
    """Runs validators in declared order, stopping at the first trip."""

    def __init__(
        self,
        *,
        input_validators: Sequence[v.Validator],
        output_validators: Sequence[v.Validator],
        name: str = "standard",
    ) -> None:
        self.name = name
        self.input_validators = tuple(input_validators)
        self.output_validators = tuple(output_validators)

    def run_input(self, text: str) -> list[GuardrailResult]:
        return self._run(self.input_validators, text, stage="input")

    def run_output(self, text: str) -> list[GuardrailResult]:
        return self._run(self.output_validators, text, stage="output")

    def check_input(self, text: str) -> list[GuardrailResult]:
        """Run input validators and raise the first trip as a rejection."""
        return self._raise_on_trip(self.run_input(text), stage="input")

    def check_output(self, text: str) -> list[GuardrailResult]:
        return self._raise_on_trip(self.run_output(text), stage="output")

    def _run(self, validators: Sequence[v.Validator], text: str, *, stage: str) -> list[GuardrailResult]:
        results: list[GuardrailResult] = []
        for validator in validators:
            try:
                result = validator(text)
            except Exception as exc:
                # A broken validator fails closed.
                logger.warning(
                    "guardrail_validator_failed",
                    validator=validator.name,
                    stage=stage,
                    error=str(exc),
                )
                result = GuardrailResult(
                    validator=validator.name,
                    tripwire_triggered=True,
                    info={"error": f"Validator {validator.name} failed", "exception": str(exc)},
                )
            results.append(result)
            if result.tripwire_triggered:
                logger.info(
                    "guardrail_tripped",
                    pipeline=self.name,
                    stage=stage,
                    validator=result.validator,
                )
                break
        return results

    @staticmethod
    def _raise_on_trip(results: list[GuardrailResult], *, stage: str) -> list[GuardrailResult]:
        if results and results[-1].tripwire_triggered:
            tripped = results[-1]
            raise GuardrailRejection(tripped.validator, tripped.info, stage=stage)
        return results


def standard_input_validators(config: GuardrailConfig) -> list[v.Validator]:
    return [v.sanitize_input(config), v.content_filter(), v.prompt_injection(config)]


def standard_output_validators(config: GuardrailConfig) -> list[v.Validator]:
    return [v.output_quality(config), v.information_leakage()]


def build_guardrails(domain: str, config: GuardrailConfig | None = None) -> GuardrailPipeline:
    """Compose the standard pipeline plus the domain validator, if any."""
    config = config or GuardrailConfig()
    output_validators = standard_output_validators(config)
    if domain == "home":
        output_validators.append(v.home_safety())
    return GuardrailPipeline(
        input_validators=standard_input_validators(config),
        output_validators=output_validators,
        name=domain,
    )
