from dataclasses import dataclass, field

from rich import print

from site_manager.config import Config
from site_manager.console import warn
from site_manager.prompts import PromptSource, StaticPrompt
from site_manager.runner import CommandRunner


@dataclass
class RuntimeContext:
    """Everything a command needs, built once per invocation."""

    config: Config
    runner: CommandRunner
    prompt: PromptSource = field(default_factory=StaticPrompt)
    warnings: list[str] = field(default_factory=list)

    def warn(self, msg: str):
        self.warnings.append(msg)
        warn(msg)

    def report_warnings(self):
        if not self.warnings:
            return
        print("-" * 40)
        print(f"[yellow]Completed with {len(self.warnings)} warning(s):[/yellow]")
        for msg in self.warnings:
            print(f"  - {msg.splitlines()[0]}")
