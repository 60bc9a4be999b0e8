from __future__ import annotations

from abc import ABC, abstractmethod
from enum import StrEnum

from pipewright.probe import ProcessResult


class FallbackSignal(StrEnum):
    PRODUCER_NOT_FOUND = "producer_not_found"
    TIMEOUT = "timeout"
    PRODUCER_ERROR = "producer_error"
    OUTPUT_INVALID = "output_invalid"


class ProducerFailure(RuntimeError):
    """Raised when no configured producer delivered usable output."""

    def __init__(self, message: str, *, signal: FallbackSignal | None = None) -> None:
        super().__init__(message)
        self.signal = signal


class Producer(ABC):
    name: str = "producer"
    validates_output: bool = True

    @abstractmethod
    def is_available(self) -> bool:
        """Cheap presence probe; must not invoke the producer."""

    @abstractmethod
    async def invoke(self, prompt: str, timeout_seconds: float) -> ProcessResult:
        """Run the producer once and return its captured process result."""
