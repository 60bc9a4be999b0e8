from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum

from pipewright.quality import GateStatus, QualityResult

log = logging.getLogger(__name__)


class RetryStrategy(StrEnum):
    INITIAL = "initial"
    FEEDBACK = "feedback"
    MINIMAL = "minimal"


def strategy_for(attempt: int) -> RetryStrategy:
    if attempt <= 1:
        return RetryStrategy.INITIAL
    if attempt == 2:
        return RetryStrategy.FEEDBACK
    return RetryStrategy.MINIMAL


@dataclass(slots=True, frozen=True)
class AttemptDirective:
    attempt: int
    strategy: RetryStrategy
    feedback: tuple[str, ...] = ()


@dataclass(slots=True)
class RetryState:
    stage_id: str
    max_attempts: int
    attempt: int = 0
    errors: list[str] = field(default_factory=list)
    last_score: float | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts

    def next_directive(self) -> AttemptDirective:
        self.attempt += 1
        return AttemptDirective(
            attempt=self.attempt,
            strategy=strategy_for(self.attempt),
            feedback=tuple(self.errors),
        )

    def absorb(self, result: QualityResult) -> None:
        self.errors = result.error_messages()
        self.last_score = result.score


@dataclass(slots=True, frozen=True)
class AttemptRecord:
    attempt: int
    strategy: RetryStrategy
    status: GateStatus
    errors: tuple[str, ...] = ()
    score: float = 0.0


@dataclass(slots=True)
class RetryOutcome:
    success: bool
    final_result: QualityResult | None
    attempts: list[AttemptRecord] = field(default_factory=list)
    blocked: bool = False

    def history_lines(self) -> list[str]:
        lines: list[str] = []
        for record in self.attempts:
            lines.append(
                f"Attempt {record.attempt} ({record.strategy.value}): "
                f"{record.status.value}, score {record.score:.2f}"
            )
            lines.extend(f"  - {error}" for error in record.errors)
        return lines


Produce = Callable[[AttemptDirective], Awaitable[None]]
Evaluate = Callable[[], QualityResult]


async def run_with_retry(
    stage_id: str,
    max_attempts: int,
    produce: Produce,
    evaluate: Evaluate,
) -> RetryOutcome:
    """Plan-Do-Check-Act loop around ``produce`` and ``evaluate``.

    Attempt 1 runs the task as-is, attempt 2 injects the failing check messages as
    feedback, and attempt 3 onwards narrows the request to the required artifacts.
    A blocked gate stops the loop immediately.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    state = RetryState(stage_id=stage_id, max_attempts=max_attempts)
    outcome = RetryOutcome(success=False, final_result=None)

    while not state.exhausted:
        directive = state.next_directive()
        log.info(
            "Attempt %d/%d (%s)",
            directive.attempt,
            max_attempts,
            directive.strategy.value,
            extra={"stage": stage_id},
        )
        await produce(directive)
        result = evaluate()
        outcome.final_result = result
        outcome.attempts.append(
            AttemptRecord(
                attempt=directive.attempt,
                strategy=directive.strategy,
                status=result.status,
                errors=tuple(result.error_messages()),
                score=result.score,
            )
        )

        if result.status.is_success:
            outcome.success = True
            return outcome
        if result.status.is_blocking:
            log.error("Gate blocked; not retrying", extra={"stage": stage_id})
            outcome.blocked = True
            return outcome
        state.absorb(result)
        log.warning(
            "Gate requested retry with %d issue(s)", len(state.errors), extra={"stage": stage_id}
        )

    log.error("Retry budget of %d attempt(s) exhausted", max_attempts, extra={"stage": stage_id})
    return outcome
