"""SiteManager command line.

Usage: sm <command> [options]

Examples:
    sm site --domain example.com --type nodejs
    sm deploy --domain example.com --repo https://github.com/acme/shop.git
    sm deploy --domain api.example.com --repo git@github.com:acme/api.git --ssh --database postgresql
    sm deploy reset-pm2 --domain example.com
    sm deploy remove --domain example.com --backup
    sm secure --domain example.com --email admin@example.com
"""

import os
from contextlib import contextmanager
from pathlib import Path
from typing import Annotated, Literal

import cyclopts
from cyclopts import Parameter

from site_manager import __version__
from site_manager.config import load_config
from site_manager.console import error, log
from site_manager.context import RuntimeContext
from site_manager.deploy import deploy, remove_project, reset_process, update_env
from site_manager.envfile import parse_env_assignments
from site_manager.errors import SiteManagerError
from site_manager.prompts import StaticPrompt, TerminalPrompt
from site_manager.runner import CommandRunner
from site_manager.site import check_status, create_site, secure_site

app = cyclopts.App(
    name="sm", help="Provision and deploy web sites on this server", version=__version__
)

deploy_app = cyclopts.App(name="deploy", help="Deploy and manage applications")
app.command(deploy_app)

AppType = Literal["laravel", "nodejs"]
SiteType = Literal["laravel", "nodejs", "static"]
DatabaseName = Literal["postgresql", "postgres", "pg", "mysql"]


def build_context(interactive: bool = True, assume_yes: bool = False) -> RuntimeContext:
    try:
        config = load_config()
    except SiteManagerError as e:
        error(str(e))
    prompt = TerminalPrompt() if interactive and not assume_yes else StaticPrompt(assume_yes=True)
    return RuntimeContext(
        config=config,
        runner=CommandRunner(timeout=config.command_timeout),
        prompt=prompt,
    )


def require_root():
    if os.geteuid() != 0:
        error("This command must be run as root")


@contextmanager
def reporting(ctx: RuntimeContext):
    """Prints accumulated warnings and turns known failures into a clean exit."""
    try:
        yield
    except SiteManagerError as e:
        ctx.report_warnings()
        error(str(e))
    else:
        ctx.report_warnings()


@deploy_app.default
def deploy_application(
    *,
    domain: str,
    repo: str,
    branch: str = "main",
    app_type: Annotated[AppType | None, Parameter(name="--type")] = None,
    ssh: bool = False,
    database: DatabaseName | None = None,
    env: list[str] | None = None,
    interactive: bool = False,
    reuse_password: bool = False,
    yes: bool = False,
):
    """Clone a repository into a site and start it.

    :param domain: Site domain (must exist, see 'sm site')
    :param repo: Git URL (https://... or git@host:owner/repo.git with --ssh)
    :param branch: Branch to deploy
    :param app_type: Application type (detected from the checkout if omitted)
    :param ssh: Clone over SSH with a generated deploy key
    :param database: Force the database engine to provision
    :param env: Extra KEY=VALUE variables for the .env file (repeatable)
    :param interactive: Prompt for environment variables
    :param reuse_password: Keep the database password of the previous deployment
    :param yes: Do not wait for confirmations (deploy key registration)
    """
    require_root()
    ctx = build_context(interactive=True, assume_yes=yes)
    with reporting(ctx):
        deploy(
            ctx,
            domain,
            repo,
            branch=branch,
            app_type=app_type,
            use_ssh=ssh,
            database=database,
            overrides=parse_env_assignments(env),
            interactive=interactive,
            reuse_password=reuse_password,
        )


@deploy_app.command(name="reset-pm2")
def reset_pm2(*, domain: str, interactive: bool = False):
    """Rewrite env, nginx port and PM2 config for a deployed app and restart it.

    :param domain: Site domain
    :param interactive: Prompt for environment variables
    """
    require_root()
    ctx = build_context()
    with reporting(ctx):
        reset_process(ctx, domain, interactive=interactive)


@deploy_app.command(name="remove")
def remove_application(*, domain: str, backup: bool = False):
    """Stop and delete a deployed application.

    :param domain: Site domain
    :param backup: Archive the application to ~/backups before removing it
    """
    require_root()
    ctx = build_context()
    with reporting(ctx):
        archive = remove_project(ctx, domain, backup=backup)
        if archive:
            log(f"Backup: {archive}")


@app.command(name="site")
def site(
    *,
    domain: str,
    site_type: Annotated[SiteType, Parameter(name="--type")] = "nodejs",
    php: str | None = None,
    port: int | None = None,
):
    """Create a site: system user, directories and nginx config.

    :param domain: Site domain; subdomains reuse the parent's user
    :param site_type: Site template
    :param php: PHP-FPM version for laravel sites
    :param port: Upstream port for nodejs sites (allocated if omitted)
    """
    require_root()
    ctx = build_context()
    with reporting(ctx):
        create_site(ctx, domain, site_type, php=php, port=port)


@app.command(name="secure")
def secure(
    *,
    domain: str,
    email: str | None = None,
    force: bool = False,
    skip_dns: bool = False,
):
    """Obtain a Let's Encrypt certificate and enable HTTPS.

    :param domain: Site domain
    :param email: Email for Let's Encrypt (default from config)
    :param force: Renew even if a certificate exists
    :param skip_dns: Skip the DNS A-record check
    """
    require_root()
    ctx = build_context()
    with reporting(ctx):
        secure_site(ctx, domain, email=email, force=force, skip_dns=skip_dns)


@app.command(name="env")
def env_command(
    *,
    domain: str,
    env: list[str] | None = None,
    file: Path | None = None,
    interactive: bool = False,
):
    """Edit the .env file of a deployed application.

    :param domain: Site domain
    :param env: KEY=VALUE pairs to set (repeatable)
    :param file: Env file to import
    :param interactive: Prompt for each variable
    """
    require_root()
    ctx = build_context()
    with reporting(ctx):
        update_env(
            ctx,
            domain,
            overrides=parse_env_assignments(env),
            import_file=file,
            interactive=interactive,
        )


@app.command(name="status")
def status():
    """Check that nginx, PHP, certbot, PM2 and composer are available."""
    ctx = build_context(interactive=False)
    with reporting(ctx):
        check_status(ctx)


def main():
    app()


if __name__ == "__main__":
    main()
