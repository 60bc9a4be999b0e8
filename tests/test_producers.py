import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

from pipewright.probe import ProcessResult
from pipewright.producers import (
    BaselineProducer,
    ClaudeProducer,
    CodexProducer,
    FallbackGate,
    FallbackSignal,
    GeminiProducer,
    Producer,
    build_producer,
    build_producers,
    validate_output,
)
from pipewright.producers.cli import CliProducer

GOOD_OUTPUT = "# Architecture\n\n## Overview\n\n" + "\n".join(
    f"- Component {index} handles a distinct responsibility in the service." for index in range(12)
)


class FakeProducer(Producer):
    def __init__(
        self,
        name: str,
        result: ProcessResult | None = None,
        *,
        available: bool = True,
    ) -> None:
        self.name = name
        self.result = result or ProcessResult(exit_code=0, stdout=GOOD_OUTPUT)
        self.available = available
        self.calls: list[str] = []

    def is_available(self) -> bool:
        return self.available

    async def invoke(self, prompt: str, timeout_seconds: float) -> ProcessResult:
        _ = timeout_seconds
        self.calls.append(prompt)
        return self.result


class SlowScript(CliProducer):
    name = "slow"

    def build_command(self, prompt: str) -> list[str]:
        _ = prompt
        return [sys.executable, "-c", "import time; time.sleep(30)"]


class EchoScript(CliProducer):
    name = "echo"

    def build_command(self, prompt: str) -> list[str]:
        return [sys.executable, "-c", "import sys; print(sys.argv[1])", prompt]


def test_cli_command_shapes() -> None:
    assert ClaudeProducer().build_command("do it") == [
        "claude",
        "-p",
        "do it",
        "--output-format",
        "text",
    ]
    assert CodexProducer().build_command("do it") == ["codex", "exec", "do it"]
    assert GeminiProducer().build_command("do it") == ["gemini", "-p", "do it", "--yolo"]


def test_build_producer_registry(tmp_path: Path) -> None:
    producer = build_producer("Codex", tmp_path)

    assert isinstance(producer, CodexProducer)
    assert producer.working_directory == tmp_path
    with pytest.raises(ValueError):
        build_producer("unknown-model")


def test_build_producers_appends_baseline_once() -> None:
    names = [producer.name for producer in build_producers(["claude", "gemini"])]
    assert names == ["claude", "gemini", "baseline"]

    names = [producer.name for producer in build_producers(["claude"], allow_baseline=False)]
    assert names == ["claude"]


def test_gate_uses_first_successful_producer_in_order() -> None:
    failing = FakeProducer("a", ProcessResult(exit_code=1, stderr="boom"))
    succeeding = FakeProducer("b")
    never = FakeProducer("c")
    events: list[dict[str, Any]] = []
    gate = FallbackGate([failing, succeeding, never], event_hook=events.append)

    outcome = asyncio.run(gate.invoke("write the architecture"))

    assert outcome.success is True
    assert outcome.used_producer == "b"
    assert never.calls == []
    assert [attempt.producer for attempt in outcome.attempts] == ["a", "b"]
    assert outcome.attempts[0].signal is FallbackSignal.PRODUCER_ERROR
    assert [event["event"] for event in events] == ["producer_attempt_failed", "producer_success"]


def test_gate_classifies_each_failure_mode() -> None:
    missing = FakeProducer("missing", available=False)
    timed_out = FakeProducer("slow", ProcessResult(exit_code=124, timed_out=True))
    empty = FakeProducer("empty", ProcessResult(exit_code=0, stdout="   "))
    limited = FakeProducer(
        "limited", ProcessResult(exit_code=0, stdout=GOOD_OUTPUT + "\nError: rate limit reached")
    )
    chatty = FakeProducer(
        "chatty", ProcessResult(exit_code=0, stdout="I will generate the plan shortly.")
    )
    gate = FallbackGate([missing, timed_out, empty, limited, chatty])

    outcome = asyncio.run(gate.invoke("prompt"))

    assert outcome.success is False
    assert [attempt.signal for attempt in outcome.attempts] == [
        FallbackSignal.PRODUCER_NOT_FOUND,
        FallbackSignal.TIMEOUT,
        FallbackSignal.TIMEOUT,
        FallbackSignal.PRODUCER_ERROR,
        FallbackSignal.OUTPUT_INVALID,
    ]
    assert outcome.signal is FallbackSignal.OUTPUT_INVALID
    assert outcome.reason.startswith("chatty:")
    assert missing.calls == []


def test_baseline_is_the_last_resort() -> None:
    gate = FallbackGate([FakeProducer("a", available=False), BaselineProducer()])

    outcome = asyncio.run(gate.invoke("# Stage 01\n\nDo the work."))

    assert outcome.success is True
    assert outcome.used_producer == "baseline"
    assert outcome.output == "# Stage 01\n\nDo the work."


def test_gate_without_producers_fails() -> None:
    outcome = asyncio.run(FallbackGate([]).invoke("prompt"))

    assert outcome.success is False
    assert outcome.reason == "no producers configured"


def test_validate_output_signals() -> None:
    assert validate_output(GOOD_OUTPUT, "unrelated prompt", min_chars=100) is None
    assert "too short" in (validate_output("## a\n## b\n", "p", min_chars=100) or "")
    assert validate_output("I cannot help with that request.", "p") == "model refusal detected"
    assert "meta-commentary" in (validate_output("Let me start by reading files.", "p") or "")


def test_cli_producer_times_out_and_kills_process() -> None:
    result = asyncio.run(SlowScript().invoke("ignored", timeout_seconds=0.5))

    assert result.timed_out is True
    assert result.exit_code == 124


def test_cli_producer_captures_stdout() -> None:
    result = asyncio.run(EchoScript().invoke("hello producer", timeout_seconds=30))

    assert result.ok
    assert result.stdout.strip() == "hello producer"


def test_cli_producer_missing_binary() -> None:
    producer = ClaudeProducer(binary="definitely-missing-claude-binary")

    assert producer.is_available() is False
    result = asyncio.run(producer.invoke("prompt", timeout_seconds=5))
    assert result.exit_code == 127
