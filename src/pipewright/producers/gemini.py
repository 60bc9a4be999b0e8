from __future__ import annotations

from pipewright.producers.cli import CliProducer


class GeminiProducer(CliProducer):
    name = "gemini"
    default_binary = "gemini"

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-p", prompt, "--yolo"]
