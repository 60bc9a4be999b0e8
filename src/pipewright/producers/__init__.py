from __future__ import annotations

from pathlib import Path

from pipewright.producers.base import FallbackSignal, Producer, ProducerFailure
from pipewright.producers.baseline import BaselineProducer
from pipewright.producers.claude import ClaudeProducer
from pipewright.producers.cli import CliProducer
from pipewright.producers.codex import CodexProducer
from pipewright.producers.gate import FallbackGate, GateOutcome, ProducerAttempt, validate_output
from pipewright.producers.gemini import GeminiProducer

PRODUCER_TYPES: dict[str, type[Producer]] = {
    "claude": ClaudeProducer,
    "codex": CodexProducer,
    "gemini": GeminiProducer,
    "baseline": BaselineProducer,
}


def build_producer(name: str, working_directory: Path | None = None) -> Producer:
    normalized = name.strip().lower()
    producer_type = PRODUCER_TYPES.get(normalized)
    if producer_type is None:
        raise ValueError(
            f"Unknown producer '{name}'. Expected one of: {', '.join(sorted(PRODUCER_TYPES))}"
        )
    if issubclass(producer_type, CliProducer):
        return producer_type(working_directory=working_directory)
    return producer_type()


def build_producers(
    order: list[str],
    working_directory: Path | None = None,
    *,
    allow_baseline: bool = True,
) -> list[Producer]:
    producers = [build_producer(name, working_directory) for name in order]
    if allow_baseline and all(producer.name != "baseline" for producer in producers):
        producers.append(BaselineProducer())
    return producers


__all__ = [
    "BaselineProducer",
    "ClaudeProducer",
    "CliProducer",
    "CodexProducer",
    "FallbackGate",
    "FallbackSignal",
    "GateOutcome",
    "GeminiProducer",
    "Producer",
    "ProducerAttempt",
    "ProducerFailure",
    "build_producer",
    "build_producers",
    "validate_output",
]
