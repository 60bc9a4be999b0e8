from __future__ import annotations

from pipewright.producers.cli import CliProducer


class ClaudeProducer(CliProducer):
    name = "claude"
    default_binary = "claude"

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-p", prompt, "--output-format", "text"]
