import os
import re
import secrets
import string
from pathlib import Path

from dotenv import dotenv_values
from rich import print

from site_manager.console import log, mask_value
from site_manager.errors import ValidationError
from site_manager.profile import Framework, ProjectProfile
from site_manager.prompts import ENV_KEY, prompt_env_values

HEADER = "# Archivo generado por SiteManager"
DATABASE_HEADER = "# Configuración de base de datos"
OTHER_HEADER = "# Otras configuraciones"

DATABASE_KEYS = [
    "DATABASE_URL",
    "DB_CONNECTION",
    "DB_HOST",
    "DB_PORT",
    "DB_DATABASE",
    "DB_USERNAME",
    "DB_PASSWORD",
]

# Build-time public configuration, grouped under its own header
PUBLIC_CONFIG: dict[Framework, tuple[str, tuple[str, ...]]] = {
    Framework.NEXTJS: ("NextJS", ("NEXT_PUBLIC_",)),
    Framework.REACT: ("React", ("REACT_APP_",)),
    Framework.VUE: ("Vue", ("VITE_", "VUE_APP_")),
    Framework.NUXT: ("Nuxt", ("NUXT_",)),
    Framework.LARAVEL: ("Laravel", ("APP_",)),
}

NEEDS_QUOTES = re.compile(r"[\s#\"']")


def read_env_file(path: Path) -> dict[str, str]:
    """:return: Key/value pairs in file order; bare keys map to an empty string"""
    if not path.exists():
        return {}
    return {k: v or "" for k, v in dotenv_values(path, interpolate=False).items()}


def format_env_value(value: str) -> str:
    if not NEEDS_QUOTES.search(value):
        return value
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
    return f'"{escaped}"'


def render_env(values: dict[str, str], framework: Framework = Framework.UNKNOWN) -> str:
    """Sections in fixed order, keys sorted within each, so output only depends on ``values``."""
    database = [k for k in DATABASE_KEYS if k in values]
    label, prefixes = PUBLIC_CONFIG.get(framework, ("", ()))
    public = sorted(k for k in values if k not in database and prefixes and k.startswith(prefixes))
    other = sorted(k for k in values if k not in database and k not in public)

    lines = [HEADER, ""]
    for header, keys in [
        (DATABASE_HEADER, database),
        (f"# Configuración de {label}", public),
        (OTHER_HEADER, other),
    ]:
        if not keys:
            continue
        lines.append(header)
        lines.extend(f"{k}={format_env_value(values[k])}" for k in keys)
        lines.append("")
    return "\n".join(lines)


def parse_env_assignments(assignments: list[str] | None) -> dict[str, str]:
    """Parses ``KEY=VALUE`` command-line pairs."""
    values = {}
    for item in assignments or []:
        key, sep, value = item.partition("=")
        key = key.strip()
        if not sep or not ENV_KEY.match(key):
            raise ValidationError(f"Invalid env assignment '{item}': expected KEY=VALUE")
        values[key] = value
    return values


def generate_secret(length: int = 32) -> str:
    alphabet = string.ascii_letters + string.digits
    return "".join(secrets.choice(alphabet) for _ in range(length))


def framework_values(
    profile: ProjectProfile, domain: str, root_domain: str, port: int, existing: dict[str, str]
) -> dict[str, str]:
    """
    Values the runtime needs regardless of what the example says. Generated
    secrets are only filled in when ``existing`` has no value for them.
    """
    if profile.app_type == "laravel":
        return {
            "APP_ENV": "production",
            "APP_DEBUG": "false",
            "APP_URL": f"https://{domain}",
        }

    values = {"NODE_ENV": "production", "PORT": str(port)}
    example = profile.example_env_vars
    if profile.framework is Framework.NESTJS:
        if "JWT_SECRET" in example and not existing.get("JWT_SECRET"):
            values["JWT_SECRET"] = generate_secret(32)
        if "JWT_EXPIRES_IN" in example and not existing.get("JWT_EXPIRES_IN"):
            values["JWT_EXPIRES_IN"] = "7d"
    if profile.framework is Framework.NEXTJS and "NEXT_PUBLIC_API_URL" in example:
        values["NEXT_PUBLIC_API_URL"] = f"https://api.{root_domain}"
    return values


def write_env_file(ctx, owner: str, path: Path, values: dict[str, str], framework: Framework):
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    os.fchmod(fd, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        f.write(render_env(values, framework))
    ctx.runner.chown(owner, path)


def print_env_summary(values: dict[str, str]):
    for key in sorted(values):
        print(f"  {key}={mask_value(key, values[key])}")


def synthesize_env(
    ctx,
    target,
    app_dir: Path,
    profile: ProjectProfile,
    *,
    port: int,
    credential=None,
    overrides: dict[str, str] | None = None,
    previous: dict[str, str] | None = None,
    interactive: bool = False,
) -> dict[str, str]:
    """Merge every env source into ``<app_dir>/.env``.

    Precedence, lowest first: .env.example, values carried over from the
    previous deployment, the checkout's own .env, database credentials,
    framework values, overrides, interactive answers.

    :param credential: DatabaseCredential, or None when there is no database wiring
    :param previous: .env values of the checkout this deploy replaced
    :return: The merged values that were written
    """
    env_path = app_dir / ".env"
    example = read_env_file(app_dir / ".env.example")
    existing = {**(previous or {}), **read_env_file(env_path)}

    values = {**example, **existing}
    if credential is not None:
        values.update(credential.env_vars())
    values.update(
        framework_values(profile, target.domain, target.root_domain, port, existing)
    )
    values.update(overrides or {})

    if interactive:
        keys = list(example) or list(profile.example_env_vars)
        values.update(prompt_env_values(ctx.prompt, keys, values))

    log(f"Writing {env_path} ({len(values)} variables)...")
    write_env_file(ctx, target.owner_user, env_path, values, profile.framework)
    return values
