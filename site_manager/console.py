import sys

from rich import print

SECRET_MARKERS = ("password", "secret", "key", "token")


def log(msg: str):
    print(f"[green][INFO][/green] {msg}")


def warn(msg: str):
    print(f"[yellow][WARN][/yellow] {msg}")


def error(msg: str):
    print(f"[red][ERROR][/red] {msg}")
    sys.exit(1)


def is_secret(key: str) -> bool:
    lowered = key.lower()
    return any(marker in lowered for marker in SECRET_MARKERS)


def mask_value(key: str, value: str) -> str:
    """Hides secret-looking values, keeping the last two characters as a hint."""
    if not value or not is_secret(key):
        return value
    if len(value) <= 4:
        return "****"
    return "*" * (len(value) - 2) + value[-2:]
