from __future__ import annotations

from pipewright.probe import ProcessResult
from pipewright.producers.base import Producer


class BaselineProducer(Producer):
    """Last-resort producer that hands the rendered prompt back as the work order.

    The host session (or a human) performs the stage work; the quality gate then
    judges whatever lands on disk.
    """

    name = "baseline"
    validates_output = False

    def is_available(self) -> bool:
        return True

    async def invoke(self, prompt: str, timeout_seconds: float) -> ProcessResult:
        return ProcessResult(exit_code=0, stdout=prompt)
