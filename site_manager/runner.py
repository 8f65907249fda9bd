import shlex
from contextlib import nullcontext
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from invoke import Context
from invoke.exceptions import CommandTimedOut

from site_manager.errors import ExternalCommandError

Command = str | Sequence[str]


@dataclass
class CommandResult:
    command: str
    exited: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exited == 0

    @property
    def output(self) -> str:
        return "\n".join(part.strip() for part in (self.stdout, self.stderr) if part.strip())


def to_shell(cmd: Command) -> str:
    return cmd if isinstance(cmd, str) else shlex.join(str(part) for part in cmd)


class CommandRunner:
    """Runs local programs through invoke and captures their output.

    Every call is bounded by ``timeout`` seconds; failures raise
    ``ExternalCommandError`` unless ``check=False``.
    """

    def __init__(self, timeout: int = 900):
        self.timeout = timeout

    def _execute(
        self, command: str, cwd: Path | None, env: dict | None, timeout: int
    ) -> CommandResult:
        c = Context()
        with c.cd(str(cwd)) if cwd else nullcontext():
            try:
                result = c.run(
                    command,
                    hide=True,
                    warn=True,
                    in_stream=False,
                    env=env or {},
                    timeout=timeout,
                )
            except CommandTimedOut as e:
                raise ExternalCommandError(command, None, e.result.stdout + e.result.stderr) from e
        return CommandResult(command, result.exited, result.stdout, result.stderr)

    def run(
        self,
        cmd: Command,
        *,
        cwd: Path | str | None = None,
        env: dict | None = None,
        check: bool = True,
        timeout: int | None = None,
    ) -> CommandResult:
        command = to_shell(cmd)
        result = self._execute(
            command, Path(cwd) if cwd else None, env, timeout or self.timeout
        )
        if check and not result.ok:
            raise ExternalCommandError(command, result.exited, result.output)
        return result

    def run_as(
        self,
        user: str,
        cmd: Command,
        *,
        cwd: Path | str | None = None,
        check: bool = True,
        timeout: int | None = None,
    ) -> CommandResult:
        """Runs ``cmd`` in a login shell of ``user``, optionally inside ``cwd``."""
        inner = to_shell(cmd)
        if cwd:
            inner = f"cd {shlex.quote(str(cwd))} && {inner}"
        return self.run(
            f"su - {shlex.quote(user)} -c {shlex.quote(inner)}", check=check, timeout=timeout
        )

    def chown(self, user: str, *paths: Path | str, recursive: bool = False, no_dereference: bool = False):
        args = ["chown"]
        if recursive:
            args.append("-R")
        if no_dereference:
            args.append("-h")
        self.run([*args, f"{user}:{user}", *(str(p) for p in paths)])

    def user_exists(self, user: str) -> bool:
        return self.run(["id", "-u", user], check=False).ok

    def which(self, program: str) -> bool:
        return self.run(f"command -v {shlex.quote(program)}", check=False).ok
