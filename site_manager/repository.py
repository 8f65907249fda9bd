import shutil
from pathlib import Path
from textwrap import dedent

from rich import print

from site_manager.console import log
from site_manager.target import DeploymentTarget, RepositoryRef


def ssh_config_stanza(target: DeploymentTarget, repo: RepositoryRef, key: Path) -> str:
    return dedent(f"""
        # Added by SiteManager for {target.domain}
        Host {repo.ssh_alias(target)}
            Hostname {repo.host}
            User git
            IdentityFile {key}
            IdentitiesOnly yes
            StrictHostKeyChecking accept-new
    """).lstrip("\n")


def ensure_ssh_config(ctx, target: DeploymentTarget, repo: RepositoryRef, key: Path):
    """Appends the host alias for ``repo`` to the owner's ssh config unless present."""
    config = target.ssh_dir / "config"
    current = config.read_text() if config.exists() else ""
    if f"Host {repo.ssh_alias(target)}\n" in current:
        return
    separator = "\n" if current and not current.endswith("\n\n") else ""
    config.write_text(current + separator + ssh_config_stanza(target, repo, key))
    config.chmod(0o600)
    ctx.runner.chown(target.owner_user, config)


def ensure_ssh_key(ctx, target: DeploymentTarget, repo: RepositoryRef) -> Path:
    """Generate (once) the deploy key for ``repo`` and wait until it is registered.

    :return: Path of the private key
    """
    owner = target.owner_user
    target.ssh_dir.mkdir(parents=True, exist_ok=True)
    target.ssh_dir.chmod(0o700)
    ctx.runner.chown(owner, target.ssh_dir)

    key = repo.ssh_key_path(target)
    public_key = key.with_name(key.name + ".pub")
    if key.exists():
        log(f"Using existing deploy key {key}")
    else:
        log(f"Generating deploy key {key}...")
        ctx.runner.run(
            ["ssh-keygen", "-t", "ed25519", "-N", "", "-C", f"{owner}@{target.domain}", "-f", str(key)]
        )
        ctx.runner.chown(owner, key, public_key)

        print("[yellow]Add this public key to the repository's Deploy Keys:[/yellow]")
        print(public_key.read_text().strip() if public_key.exists() else f"(see {public_key})")
        ctx.prompt.pause("Waiting until the deploy key has been added")

    ensure_ssh_config(ctx, target, repo, key)
    return key


def prepare_app_dir(ctx, target: DeploymentTarget, app_dir: Path):
    apps_dir = target.home_dir / "apps"
    target.app_dir.mkdir(parents=True, exist_ok=True)
    ctx.runner.chown(target.owner_user, apps_dir, recursive=True)
    if app_dir.exists():
        log(f"Removing previous checkout {app_dir}...")
        shutil.rmtree(app_dir)


def acquire_repository(ctx, target: DeploymentTarget, repo: RepositoryRef) -> Path:
    """Fresh shallow clone of ``repo`` into the deployment's app directory.

    Any previous checkout is removed first; a failed clone is left as is.

    :return: The checkout directory
    """
    app_dir = target.repo_dir(repo.name)
    prepare_app_dir(ctx, target, app_dir)

    clone = [
        "git", "clone", "--depth", "1", "--branch", repo.branch, "--single-branch",
        repo.clone_url(target), str(app_dir),
    ]
    if repo.use_ssh:
        ensure_ssh_key(ctx, target, repo)
        log(f"Cloning {repo.url} ({repo.branch}) over SSH as {target.owner_user}...")
        ctx.runner.run_as(target.owner_user, clone)
    else:
        log(f"Cloning {repo.url} ({repo.branch})...")
        ctx.runner.run(clone)

    ctx.runner.chown(target.owner_user, app_dir, recursive=True)
    return app_dir
