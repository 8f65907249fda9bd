import json
from pathlib import Path

import pytest

from site_manager.config import Config
from site_manager.context import RuntimeContext
from site_manager.prompts import StaticPrompt
from site_manager.runner import CommandResult, CommandRunner


class FakeRunner(CommandRunner):
    """Records every command instead of running it.

    Rules registered with ``on`` match by substring; the most recent matching
    rule wins. Unmatched commands succeed with no output.
    """

    def __init__(self):
        super().__init__(timeout=5)
        self.commands: list[str] = []
        self.rules: list[tuple] = []

    def on(self, pattern: str, exited: int = 0, stdout: str = "", stderr: str = "", effect=None):
        self.rules.append((pattern, exited, stdout, stderr, effect))

    def _execute(self, command, cwd, env, timeout):
        self.commands.append(command)
        for pattern, exited, stdout, stderr, effect in reversed(self.rules):
            if pattern in command:
                if effect is not None:
                    effect(command)
                return CommandResult(command, exited, stdout, stderr)
        return CommandResult(command, 0)

    def ran(self, pattern: str) -> list[str]:
        return [c for c in self.commands if pattern in c]

    def index(self, pattern: str) -> int:
        return next(i for i, c in enumerate(self.commands) if pattern in c)


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def config(tmp_path):
    return Config(
        nginx_path=str(tmp_path / "nginx"),
        sites_available=str(tmp_path / "nginx" / "sites-available"),
        sites_enabled=str(tmp_path / "nginx" / "sites-enabled"),
        home_root=str(tmp_path / "home"),
        state_dir=str(tmp_path / "state"),
        email="admin@example.com",
        agree_tos=True,
    )


@pytest.fixture
def prompt():
    return StaticPrompt()


@pytest.fixture
def ctx(config, runner, prompt):
    return RuntimeContext(config=config, runner=runner, prompt=prompt)


def write_project(app_dir: Path, manifest: dict | None = None, files: dict[str, str] | None = None):
    app_dir.mkdir(parents=True, exist_ok=True)
    if manifest is not None:
        (app_dir / "package.json").write_text(json.dumps(manifest))
    for name, content in (files or {}).items():
        path = app_dir / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return app_dir
