import re
from typing import Protocol

from rich.prompt import Confirm, Prompt

from site_manager.console import is_secret, log, warn

ENV_KEY = re.compile(r"^[A-Za-z_][A-Za-z0-9_.]*$")


class PromptSource(Protocol):
    def ask(self, key: str, default: str = "", secret: bool = False) -> str: ...

    def confirm(self, question: str, default: bool = False) -> bool: ...

    def pause(self, message: str) -> None:
        """Blocks until the operator acknowledges ``message``."""
        ...


class TerminalPrompt:
    def ask(self, key: str, default: str = "", secret: bool = False) -> str:
        if secret:
            shown = " (current value hidden)" if default else ""
            answer = Prompt.ask(f"{key}{shown}", password=True, default="", show_default=False)
            return answer or default
        return Prompt.ask(key, default=default, show_default=bool(default))

    def confirm(self, question: str, default: bool = False) -> bool:
        return Confirm.ask(question, default=default)

    def pause(self, message: str) -> None:
        Prompt.ask(f"{message} [dim](press Enter to continue)[/dim]", default="", show_default=False)


class StaticPrompt:
    """Answers from a fixed mapping; used for non-interactive runs and tests.

    A list answer is consumed one item per question, then falls back to the default.
    """

    def __init__(self, answers: dict[str, str | list[str]] | None = None, assume_yes: bool = True):
        self.answers = {k: list(v) if isinstance(v, list) else v for k, v in (answers or {}).items()}
        self.assume_yes = assume_yes
        self.asked: list[str] = []
        self.hidden: list[str] = []

    def ask(self, key: str, default: str = "", secret: bool = False) -> str:
        self.asked.append(key)
        if secret:
            self.hidden.append(key)
        answer = self.answers.get(key, default)
        if isinstance(answer, list):
            return answer.pop(0) if answer else default
        return answer

    def confirm(self, question: str, default: bool = False) -> bool:
        self.asked.append(question)
        return self.assume_yes

    def pause(self, message: str) -> None:
        log(message)


FALLBACK_ENV_KEYS = ["NODE_ENV", "PORT", "DATABASE_URL", "JWT_SECRET", "JWT_EXPIRES_IN"]


def prompt_env_values(
    prompt: PromptSource, keys: list[str], current: dict[str, str]
) -> dict[str, str]:
    """Ask for every key (or a fallback list), then for any extra variables.

    :param keys: Keys to ask for, usually the ones listed in .env.example
    :param current: Values shown as defaults
    :return: Only the answers that differ from ``current``
    """
    answers = {}
    for key in keys or FALLBACK_ENV_KEYS:
        default = current.get(key, "")
        value = prompt.ask(key, default=default, secret=is_secret(key))
        if value != default:
            answers[key] = value

    if prompt.confirm("Add more environment variables?", default=False):
        while True:
            key = prompt.ask("Variable name (empty to finish)").strip()
            if not key:
                break
            if not ENV_KEY.match(key):
                warn(f"Invalid variable name '{key}': use letters, digits and '_'")
                continue
            answers[key] = prompt.ask(key, secret=is_secret(key))
    return answers
