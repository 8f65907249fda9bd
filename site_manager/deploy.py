"""Deployment orchestration: deploy, reset and remove applications."""

import shutil
from datetime import datetime
from pathlib import Path

from site_manager.console import log
from site_manager.database import (
    DatabaseCredential,
    credential_from_env,
    placeholder_credential,
    provision_database,
)
from site_manager.detector import (
    apply_database_override,
    detect_app_type,
    detect_laravel_project,
    detect_project,
)
from site_manager.envfile import print_env_summary, read_env_file, synthesize_env, write_env_file
from site_manager.errors import DatabaseUnavailable, ExternalCommandError, PreconditionError
from site_manager.nginx import patch_upstream
from site_manager.pm2 import apply_process, resolve_build_command, resolve_start_command
from site_manager.ports import release_port, resolve_port
from site_manager.profile import ProjectProfile
from site_manager.prompts import prompt_env_values
from site_manager.repository import acquire_repository
from site_manager.target import DeploymentTarget, parse_repository, resolve_target

INSTALL_COMMANDS = {
    "npm": ["npm ci", "npm install", "npm install --legacy-peer-deps", "npm install --force"],
    "yarn": ["yarn install --frozen-lockfile", "yarn install"],
    "pnpm": ["pnpm install --frozen-lockfile", "pnpm install"],
}

LARAVEL_DIRS = [
    "storage/app/public",
    "storage/framework/cache",
    "storage/framework/sessions",
    "storage/framework/views",
    "storage/logs",
    "bootstrap/cache",
]


def check_site(ctx, target: DeploymentTarget):
    """The site must have been provisioned before anything is deployed into it."""
    if not target.home_dir.is_dir():
        kind = f"parent domain {target.parent_domain}" if target.is_subdomain else "site"
        raise PreconditionError(
            f"Home directory {target.home_dir} does not exist. "
            f"Create the {kind} first: sm site --domain {target.root_domain}"
        )
    if not ctx.runner.user_exists(target.owner_user):
        raise PreconditionError(f"System user {target.owner_user} does not exist")


def find_app_dir(target: DeploymentTarget) -> Path:
    """:return: The checkout inside the domain's app directory"""
    if not target.app_dir.is_dir():
        raise PreconditionError(f"No application deployed for {target.domain} ({target.app_dir})")
    for manifest in ["package.json", "artisan"]:
        if (target.app_dir / manifest).exists():
            return target.app_dir
    candidates = sorted(
        d for d in target.app_dir.iterdir()
        if d.is_dir() and ((d / "package.json").exists() or (d / "artisan").exists())
    )
    if not candidates:
        raise PreconditionError(f"No project found in {target.app_dir}")
    return candidates[0]


def wire_database(
    ctx, target: DeploymentTarget, profile: ProjectProfile, existing_password: str | None = None
) -> DatabaseCredential | None:
    """Provision the database, degrading to a warning when that is not possible."""
    if not profile.requires_database:
        return None
    try:
        return provision_database(ctx, target, profile, existing_password=existing_password)
    except DatabaseUnavailable as e:
        ctx.warn(f"Skipping database setup: {e}")
        return None
    except ExternalCommandError as e:
        ctx.warn(f"Database setup failed, using placeholder credentials: {e}")
        return placeholder_credential(ctx, target, profile)


def install_dependencies(ctx, target: DeploymentTarget, app_dir: Path, profile: ProjectProfile) -> bool:
    commands = INSTALL_COMMANDS.get(profile.package_manager, INSTALL_COMMANDS["npm"])
    if not profile.has_lockfile:
        commands = [c for c in commands if c != "npm ci" and "--frozen-lockfile" not in c]
    for command in commands:
        log(f"Installing dependencies: {command}")
        result = ctx.runner.run_as(target.owner_user, command, cwd=app_dir, check=False)
        if result.ok:
            return True
        log(f"{command} failed (exit {result.exited}), trying next strategy")
    ctx.warn("Could not install dependencies with any strategy; the app may not start")
    return False


def run_prisma(ctx, target: DeploymentTarget, app_dir: Path, profile: ProjectProfile, env: dict[str, str]):
    """Generate the Prisma client and apply migrations when a connection string exists.

    :param env: The values written to the checkout's .env
    """
    if not profile.has_database_orm:
        return
    if not env.get("DATABASE_URL"):
        ctx.warn("Skipping Prisma generate/migrate: DATABASE_URL is not set")
        return

    log("Generating Prisma client...")
    result = ctx.runner.run_as(target.owner_user, "npx prisma generate", cwd=app_dir, check=False)
    if not result.ok:
        ctx.warn(f"prisma generate failed: {result.output}")
    if profile.has_migrations:
        log("Applying Prisma migrations...")
        result = ctx.runner.run_as(target.owner_user, "npx prisma migrate deploy", cwd=app_dir, check=False)
        if not result.ok:
            ctx.warn(f"prisma migrate deploy failed: {result.output}")


def reconcile_nodejs(
    ctx,
    target: DeploymentTarget,
    app_dir: Path,
    *,
    database: str | None = None,
    overrides: dict[str, str] | None = None,
    previous_env: dict[str, str] | None = None,
    existing_password: str | None = None,
    interactive: bool = False,
    install: bool = True,
    prefer_existing_port: bool = False,
):
    """Drive a Node.js checkout to a running PM2 process.

    :param install: Install dependencies and build; the reset path skips this
    :param prefer_existing_port: Keep the port already configured in nginx
    """
    profile = detect_project(app_dir)
    apply_database_override(profile, database)
    log(f"Detected {profile.summary()}")
    if profile.node_version:
        log(f"Project asks for Node.js {profile.node_version}")

    port = resolve_port(ctx, target, prefer_existing=prefer_existing_port)
    credential = wire_database(ctx, target, profile, existing_password)

    if profile.requires_env_file or credential or overrides or interactive:
        values = synthesize_env(
            ctx,
            target,
            app_dir,
            profile,
            port=port,
            credential=credential,
            overrides=overrides,
            previous=previous_env,
            interactive=interactive,
        )
        print_env_summary(values)
    else:
        values = read_env_file(app_dir / ".env")

    patch_upstream(ctx, target, port)

    if install:
        install_dependencies(ctx, target, app_dir, profile)
        run_prisma(ctx, target, app_dir, profile, values)
        build = resolve_build_command(profile)
        if build:
            log(f"Building: {build}")
            ctx.runner.run_as(target.owner_user, build, cwd=app_dir)

    start = resolve_start_command(profile, port)
    apply_process(ctx, target, app_dir, port, start)
    log(f"{target.domain} is running on port {port}")


def artisan(ctx, target: DeploymentTarget, app_dir: Path, command: str, tolerant: bool = False):
    log(f"php artisan {command}")
    result = ctx.runner.run_as(target.owner_user, f"php artisan {command}", cwd=app_dir, check=not tolerant)
    if not result.ok:
        ctx.warn(f"php artisan {command} failed: {result.output}")


def subdomain_roots(target: DeploymentTarget) -> list[Path]:
    """:return: Subdomain document roots nested in a root domain's public_html"""
    public = target.public_html
    if target.is_subdomain or public.is_symlink() or not public.is_dir():
        return []
    return sorted(d for d in public.iterdir() if d.is_dir() and d.name.endswith(f".{target.domain}"))


def link_public_html(ctx, target: DeploymentTarget, app_dir: Path):
    public = target.public_html
    if public.is_symlink() or public.is_file():
        public.unlink()
    elif public.is_dir():
        aside = public.with_name(f"{public.name}.{datetime.now():%Y%m%d%H%M%S}")
        public.rename(aside)
        ctx.warn(f"Moved existing {public} to {aside}")
    public.parent.mkdir(parents=True, exist_ok=True)
    public.symlink_to(app_dir / "public")
    ctx.runner.chown(target.owner_user, public, no_dereference=True)
    log(f"{public} -> {app_dir / 'public'}")


def reconcile_laravel(
    ctx,
    target: DeploymentTarget,
    app_dir: Path,
    *,
    database: str | None = None,
    overrides: dict[str, str] | None = None,
    previous_env: dict[str, str] | None = None,
    existing_password: str | None = None,
    interactive: bool = False,
):
    nested = subdomain_roots(target)
    if nested:
        names = ", ".join(d.name for d in nested)
        raise PreconditionError(
            f"{target.public_html} holds the document roots of {names}; "
            f"replacing it with the Laravel public/ link would take them offline. "
            f"Move them out or deploy Laravel to a subdomain"
        )

    profile = detect_laravel_project(app_dir, database)
    owner = target.owner_user

    for directory in LARAVEL_DIRS:
        (app_dir / directory).mkdir(parents=True, exist_ok=True)
    ctx.runner.chown(owner, app_dir / "storage", app_dir / "bootstrap" / "cache", recursive=True)

    credential = wire_database(ctx, target, profile, existing_password)
    values = synthesize_env(
        ctx,
        target,
        app_dir,
        profile,
        port=0,
        credential=credential,
        overrides=overrides,
        previous=previous_env,
        interactive=interactive,
    )
    print_env_summary(values)

    log("Installing composer dependencies...")
    ctx.runner.run_as(owner, "composer install --no-dev --optimize-autoloader", cwd=app_dir)

    if not values.get("APP_KEY"):
        artisan(ctx, target, app_dir, "key:generate --force")
    artisan(ctx, target, app_dir, "storage:link", tolerant=True)
    if credential is not None:
        artisan(ctx, target, app_dir, "migrate --force", tolerant=True)
    artisan(ctx, target, app_dir, "config:cache")
    artisan(ctx, target, app_dir, "route:cache", tolerant=True)
    artisan(ctx, target, app_dir, "view:cache")

    link_public_html(ctx, target, app_dir)
    log(f"Laravel application deployed for {target.domain}")


def deploy(
    ctx,
    domain: str,
    repo_url: str,
    *,
    branch: str = "main",
    app_type: str | None = None,
    use_ssh: bool = False,
    database: str | None = None,
    overrides: dict[str, str] | None = None,
    interactive: bool = False,
    reuse_password: bool = False,
):
    """Clone ``repo_url`` for ``domain`` and bring it up.

    :param app_type: laravel or nodejs; detected from the checkout when None
    :param reuse_password: Keep the database password of the previous deployment
    """
    target = resolve_target(domain, ctx.config.home_root)
    repo = parse_repository(repo_url, branch, use_ssh, fallback_name=domain.split(".")[0])
    check_site(ctx, target)

    previous_env = read_env_file(target.repo_dir(repo.name) / ".env")
    existing_password = None
    if reuse_password:
        previous = credential_from_env(previous_env)
        existing_password = previous.password if previous else None
        if not existing_password:
            ctx.warn("No previous database password found, a new one will be generated")

    log(f"Deploying {repo.url} to {target.domain}...")
    app_dir = acquire_repository(ctx, target, repo)
    app_type = app_type or detect_app_type(app_dir)

    kwargs = dict(
        database=database,
        overrides=overrides,
        previous_env=previous_env,
        existing_password=existing_password,
        interactive=interactive,
    )
    if app_type == "laravel":
        reconcile_laravel(ctx, target, app_dir, **kwargs)
    else:
        reconcile_nodejs(ctx, target, app_dir, **kwargs)


def reset_process(ctx, domain: str, *, interactive: bool = False):
    """Re-apply env, port and PM2 config for an existing checkout without re-cloning."""
    target = resolve_target(domain, ctx.config.home_root)
    check_site(ctx, target)
    app_dir = find_app_dir(target)
    current = credential_from_env(read_env_file(app_dir / ".env"))

    log(f"Resetting PM2 for {target.domain} ({app_dir})...")
    reconcile_nodejs(
        ctx,
        target,
        app_dir,
        existing_password=current.password if current else None,
        interactive=interactive,
        install=False,
        prefer_existing_port=True,
    )


def backup_app(ctx, target: DeploymentTarget, app_dir: Path) -> Path:
    target.backups_dir.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d%H%M%S")
    archive = target.backups_dir / f"{target.domain}_{stamp}.tar.gz"
    log(f"Backing up {app_dir} to {archive}...")
    ctx.runner.run(["tar", "-czf", str(archive), "-C", str(app_dir.parent), app_dir.name])
    ctx.runner.chown(target.owner_user, target.backups_dir, recursive=True)
    return archive


def remove_project(ctx, domain: str, *, backup: bool = False) -> Path | None:
    """Stop and delete a deployed application.

    :param backup: Archive the checkout under ~/backups first
    :return: The backup archive, if one was made
    """
    target = resolve_target(domain, ctx.config.home_root)
    if not target.app_dir.is_dir():
        raise PreconditionError(f"No application deployed for {target.domain} ({target.app_dir})")

    owner = target.owner_user
    log(f"Stopping PM2 process {target.domain}...")
    for action in ["stop", "delete"]:
        result = ctx.runner.run_as(owner, ["pm2", action, target.domain], check=False)
        if not result.ok:
            ctx.warn(f"pm2 {action} {target.domain} failed: {result.output}")
    result = ctx.runner.run_as(owner, ["pm2", "save"], check=False)
    if not result.ok:
        ctx.warn(f"pm2 save failed: {result.output}")

    result = ctx.runner.run(["pkill", "-f", f"node.*{target.app_dir}"], check=False)
    if result.exited not in (0, 1):
        ctx.warn(f"pkill failed: {result.output}")

    archive = backup_app(ctx, target, target.app_dir) if backup else None

    log(f"Removing {target.app_dir}...")
    shutil.rmtree(target.app_dir)
    if target.descriptor_path.exists():
        target.descriptor_path.unlink()
    released = release_port(ctx, target.domain)
    if released:
        log(f"Released port {released}")
    log(f"{target.domain} removed")
    return archive


def update_env(
    ctx,
    domain: str,
    *,
    overrides: dict[str, str] | None = None,
    import_file: Path | None = None,
    interactive: bool = False,
) -> dict[str, str]:
    """Edit the .env of a deployed application in place.

    :param import_file: Env file whose values are merged in before ``overrides``
    """
    target = resolve_target(domain, ctx.config.home_root)
    app_dir = find_app_dir(target)
    if (app_dir / "artisan").exists():
        profile = detect_laravel_project(app_dir)
    else:
        profile = detect_project(app_dir)

    values = read_env_file(app_dir / ".env")
    if import_file is not None:
        if not import_file.exists():
            raise PreconditionError(f"Env file {import_file} not found")
        values.update(read_env_file(import_file))
    values.update(overrides or {})
    if interactive:
        keys = list(profile.example_env_vars) or list(values)
        values.update(prompt_env_values(ctx.prompt, keys, values))

    write_env_file(ctx, target.owner_user, app_dir / ".env", values, profile.framework)
    log(f"Updated {app_dir / '.env'} ({len(values)} variables)")
    print_env_summary(values)
    if profile.app_type == "nodejs":
        log(f"Run 'sm deploy reset-pm2 --domain {domain}' to restart with the new values")
    return values
