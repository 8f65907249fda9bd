"""PM2 process descriptors and the stop/replace/start cycle."""

import json
from dataclasses import asdict, dataclass
from pathlib import Path

from site_manager.console import log
from site_manager.profile import Framework, ProjectProfile


@dataclass
class ProcessDescriptor:
    name: str
    script: str
    cwd: str
    env: dict[str, str]
    error_file: str
    out_file: str
    merge_logs: bool = True
    max_memory_restart: str = "200M"
    restart_delay: int = 3000
    watch: bool = False
    exec_mode: str = "fork"
    instances: int = 1
    autorestart: bool = True

    def to_json(self) -> str:
        return json.dumps({"apps": [asdict(self)]}, indent=2) + "\n"


def build_descriptor(target, app_dir: Path, port: int, start_command: str) -> ProcessDescriptor:
    return ProcessDescriptor(
        name=target.domain,
        script=start_command,
        cwd=str(app_dir),
        env={"NODE_ENV": "production", "PORT": str(port)},
        error_file=str(target.error_log),
        out_file=str(target.output_log),
    )


def run_script(profile: ProjectProfile, script: str, *args: str) -> str:
    runner = "npm run" if profile.package_manager == "npm" else profile.package_manager
    command = f"{runner} {script}"
    if args:
        separator = " --" if profile.package_manager == "npm" else ""
        command += separator + " " + " ".join(args)
    return command


def resolve_start_command(profile: ProjectProfile, port: int) -> str:
    has_start = "start" in profile.scripts
    framework = profile.framework

    if framework is Framework.NEXTJS:
        if has_start:
            return run_script(profile, "start", "-p", str(port))
        return f"npx next start -p {port}"
    if has_start:
        return run_script(profile, "start")
    if framework is Framework.NESTJS:
        return "node dist/src/main.js" if profile.uses_typescript else "node src/main.js"
    if framework is Framework.REACT:
        return f"npx serve -s build -l {port}"
    return f"node {profile.main_file or 'index.js'}"


def resolve_build_command(profile: ProjectProfile) -> str | None:
    if "build" in profile.scripts:
        return run_script(profile, "build")
    if profile.framework is Framework.NESTJS and profile.uses_typescript:
        return "npx nest build"
    if profile.framework is Framework.NEXTJS:
        return "npx next build"
    if profile.framework is Framework.REACT:
        return "npx react-scripts build"
    return None


def reset_log(ctx, owner: str, path: Path):
    path.write_text("")
    ctx.runner.chown(owner, path)


def stop_process(ctx, target):
    """Deletes any process registered under the domain, as root and as the owner."""
    name = target.domain
    ctx.runner.run(["pm2", "delete", name], check=False)
    ctx.runner.run_as(target.owner_user, ["pm2", "delete", name], check=False)


def apply_process(ctx, target, app_dir: Path, port: int, start_command: str) -> ProcessDescriptor:
    """Replace the domain's PM2 process with one running ``start_command``.

    :param app_dir: Working directory of the process
    :return: The descriptor written to ``target.descriptor_path``
    """
    owner = target.owner_user
    target.logs_dir.mkdir(parents=True, exist_ok=True)
    ctx.runner.chown(owner, target.logs_dir)
    reset_log(ctx, owner, target.error_log)
    reset_log(ctx, owner, target.output_log)

    descriptor = build_descriptor(target, app_dir, port, start_command)
    log(f"Writing PM2 config {target.descriptor_path}...")
    target.descriptor_path.write_text(descriptor.to_json())
    ctx.runner.chown(owner, target.descriptor_path)

    log(f"Stopping existing PM2 process {target.domain}...")
    stop_process(ctx, target)

    startup = ctx.runner.run(
        ["pm2", "startup", "systemd", "-u", owner, "--hp", str(target.home_dir)], check=False
    )
    if not startup.ok:
        ctx.warn(f"pm2 startup failed for {owner}: {startup.output}")

    log(f"Starting {target.domain} on port {port}: {start_command}")
    ctx.runner.run_as(owner, ["pm2", "start", str(target.descriptor_path)])

    saved = ctx.runner.run_as(owner, ["pm2", "save"], check=False)
    if not saved.ok:
        ctx.warn(f"pm2 save failed for {owner}: {saved.output}")
    return descriptor
