from __future__ import annotations

from pipewright.producers.cli import CliProducer


class CodexProducer(CliProducer):
    name = "codex"
    default_binary = "codex"

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "exec", prompt]
