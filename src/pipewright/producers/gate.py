from __future__ import annotations

import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

from pipewright.probe import NOT_FOUND_EXIT_CODE, ProcessResult
from pipewright.producers.base import FallbackSignal, Producer

log = logging.getLogger(__name__)

ProducerEventHook = Callable[[dict[str, Any]], None]

ERROR_PATTERNS: dict[str, re.Pattern[str]] = {
    "rate_limit": re.compile(r"rate.limit|too many requests|\b429\b", re.IGNORECASE),
    "quota": re.compile(r"quota.exceeded|resource.exhausted|insufficient.quota", re.IGNORECASE),
    "authentication": re.compile(
        r"authentication.failed|unauthori[sz]ed|invalid.api.key|not.logged.in", re.IGNORECASE
    ),
}
REFUSAL_PATTERN = re.compile(r"I cannot|I'm unable|I can't help|as an AI", re.IGNORECASE)
META_COMMENTARY_PATTERNS = [
    re.compile(
        r"^I will (generate|create|produce|write|provide|prepare|develop|design|draft)",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(
        r"^I('m going to|'ll) (generate|create|produce|write|provide|prepare|develop)",
        re.IGNORECASE | re.MULTILINE,
    ),
    re.compile(r"Stage \d+ .* is complete", re.IGNORECASE),
    re.compile(r"\*\*Outputs Generated:\*\*"),
    re.compile(r"Ready for Stage", re.IGNORECASE),
    re.compile(r"^Let me (start|begin) by", re.IGNORECASE | re.MULTILINE),
    re.compile(
        r"^(Now|Next),? I('ll| will) (proceed|move on|continue)", re.IGNORECASE | re.MULTILINE
    ),
]
HEADING_PATTERN = re.compile(r"^#{1,3}\s+\S", re.MULTILINE)
BULLET_PATTERN = re.compile(r"^\s*[-*]\s+\S", re.MULTILINE)
SENTENCE_SPLIT = re.compile(r"[.!?\n]+")
REFUSAL_WINDOW = 200
ECHO_THRESHOLD = 0.6


def match_error_pattern(text: str) -> str | None:
    for label, pattern in ERROR_PATTERNS.items():
        if pattern.search(text):
            return label
    return None


def _is_prompt_echo(output: str, prompt: str) -> bool:
    if len(prompt) < 50:
        return False
    prompt_lower = prompt.lower()
    sentences = [
        sentence.strip()
        for sentence in SENTENCE_SPLIT.split(output)
        if len(sentence.strip()) > 20
    ]
    if not sentences:
        return False
    echoed = sum(1 for sentence in sentences if sentence.lower() in prompt_lower)
    return echoed / len(sentences) > ECHO_THRESHOLD


def validate_output(output: str, prompt: str, *, min_chars: int = 500) -> str | None:
    """Return the reason ``output`` is unusable, or ``None`` when it looks like real work."""
    if REFUSAL_PATTERN.search(output[:REFUSAL_WINDOW]):
        return "model refusal detected"
    problems: list[str] = []
    if len(output) < min_chars:
        problems.append(f"too short ({len(output)}/{min_chars} chars)")
    if any(pattern.search(output) for pattern in META_COMMENTARY_PATTERNS):
        problems.append("meta-commentary detected")
    headings = len(HEADING_PATTERN.findall(output))
    bullets = len(BULLET_PATTERN.findall(output))
    if headings < 2 and bullets < 5:
        problems.append("lacks structural content (needs 2+ headings or 5+ bullets)")
    if _is_prompt_echo(output, prompt):
        problems.append("prompt echo detected")
    return "; ".join(problems) or None


@dataclass(slots=True)
class ProducerAttempt:
    producer: str
    signal: FallbackSignal | None
    reason: str
    duration_seconds: float = 0.0


@dataclass(slots=True)
class GateOutcome:
    success: bool
    output: str = ""
    used_producer: str | None = None
    signal: FallbackSignal | None = None
    reason: str = ""
    attempts: list[ProducerAttempt] = field(default_factory=list)


class FallbackGate:
    """Tries producers strictly in the given order and stops at the first usable result."""

    def __init__(
        self,
        producers: Sequence[Producer],
        *,
        timeout_seconds: float = 300.0,
        min_output_chars: int = 500,
        event_hook: ProducerEventHook | None = None,
    ) -> None:
        self.producers = list(producers)
        self.timeout_seconds = timeout_seconds
        self.min_output_chars = min_output_chars
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def classify(
        self, producer: Producer, result: ProcessResult, prompt: str
    ) -> tuple[FallbackSignal | None, str]:
        if result.timed_out:
            return FallbackSignal.TIMEOUT, f"timed out after {self.timeout_seconds:.1f}s"
        if result.exit_code == NOT_FOUND_EXIT_CODE:
            return FallbackSignal.PRODUCER_NOT_FOUND, result.stderr.strip() or "binary not found"
        if result.exit_code != 0:
            detail = result.stderr.strip()[:400] or result.stdout.strip()[:400]
            return FallbackSignal.PRODUCER_ERROR, f"exit code {result.exit_code}: {detail}"
        output = result.stdout.strip()
        if not output:
            return FallbackSignal.TIMEOUT, "empty response"
        matched = match_error_pattern(output)
        if matched is not None:
            return FallbackSignal.PRODUCER_ERROR, f"{matched} error reported in output"
        if producer.validates_output:
            problem = validate_output(output, prompt, min_chars=self.min_output_chars)
            if problem is not None:
                return FallbackSignal.OUTPUT_INVALID, problem
        return None, "ok"

    async def invoke(
        self, prompt: str, producers: Sequence[Producer] | None = None
    ) -> GateOutcome:
        candidates = list(producers) if producers is not None else self.producers
        outcome = GateOutcome(success=False)
        if not candidates:
            outcome.reason = "no producers configured"
            return outcome

        for producer in candidates:
            if not producer.is_available():
                attempt = ProducerAttempt(
                    producer=producer.name,
                    signal=FallbackSignal.PRODUCER_NOT_FOUND,
                    reason=f"{producer.name} is not installed",
                )
            else:
                result = await producer.invoke(prompt, self.timeout_seconds)
                signal, reason = self.classify(producer, result, prompt)
                attempt = ProducerAttempt(
                    producer=producer.name,
                    signal=signal,
                    reason=reason,
                    duration_seconds=result.duration_seconds,
                )
                if signal is None:
                    outcome.attempts.append(attempt)
                    outcome.success = True
                    outcome.output = result.stdout.strip()
                    outcome.used_producer = producer.name
                    outcome.signal = None
                    outcome.reason = reason
                    self._emit(
                        {
                            "event": "producer_success",
                            "producer": producer.name,
                            "attempt": len(outcome.attempts),
                            "fallback": len(outcome.attempts) > 1,
                            "duration_seconds": round(result.duration_seconds, 3),
                        }
                    )
                    log.info("Producer %s succeeded", producer.name)
                    return outcome

            outcome.attempts.append(attempt)
            outcome.signal = attempt.signal
            outcome.reason = f"{producer.name}: {attempt.reason}"
            self._emit(
                {
                    "event": "producer_attempt_failed",
                    "producer": producer.name,
                    "attempt": len(outcome.attempts),
                    "signal": attempt.signal.value if attempt.signal else None,
                    "reason": attempt.reason,
                }
            )
            log.warning(
                "Producer %s failed (%s): %s; trying next",
                producer.name,
                attempt.signal.value if attempt.signal else "-",
                attempt.reason,
            )

        log.error("All producers exhausted: %s", outcome.reason)
        return outcome
