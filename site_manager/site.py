"""Site provisioning (user, directories, nginx) and TLS certificates."""

import platform
from pathlib import Path

import dns.exception
import dns.resolver
from rich import print

from site_manager.console import log
from site_manager.errors import PreconditionError, ValidationError
from site_manager.nginx import read_upstream_port, reload_nginx, render_site_config, render_ssl_config
from site_manager.ports import resolve_port
from site_manager.target import DeploymentTarget, resolve_target

SITE_TYPES = ("laravel", "nodejs", "static")
SITE_DIRS = ["public_html", "nginx", "logs", "apps"]

STATUS_PROGRAMS = [
    ("php", ["php", "-v"]),
    ("certbot", ["certbot", "--version"]),
    ("pm2", ["pm2", "--version"]),
    ("composer", ["composer", "--version"]),
    ("git", ["git", "--version"]),
    ("node", ["node", "--version"]),
]

PLACEHOLDER_INDEX = """<!doctype html>
<html>
  <head><title>{domain}</title></head>
  <body><h1>{domain}</h1><p>Site provisioned by SiteManager.</p></body>
</html>
"""


def resolve_dns_a(domain: str, nameserver: str = "8.8.8.8") -> str | None:
    """Resolve domain to IPv4 address using specified nameserver.

    :param domain: Domain name to resolve
    :param nameserver: DNS nameserver IP (default: 8.8.8.8)
    :return: First A record IP address, or None if resolution fails
    """
    try:
        resolver = dns.resolver.Resolver()
        resolver.nameservers = [nameserver]
        answer = resolver.resolve(domain, "A")
        return str(answer[0]) if answer else None
    except dns.exception.DNSException:
        return None


def local_addresses(ctx) -> list[str]:
    result = ctx.runner.run(["hostname", "-I"], check=False)
    return result.stdout.split() if result.ok else []


def site_links(ctx, target: DeploymentTarget) -> tuple[Path, Path]:
    name = f"{target.domain}.conf"
    return Path(ctx.config.sites_available) / name, Path(ctx.config.sites_enabled) / name


def ensure_owner(ctx, target: DeploymentTarget):
    owner = target.owner_user
    if target.is_subdomain:
        if not target.home_dir.is_dir() or not ctx.runner.user_exists(owner):
            raise PreconditionError(
                f"Parent domain {target.parent_domain} is not set up. "
                f"Run: sm site --domain {target.parent_domain}"
            )
        return
    if ctx.runner.user_exists(owner):
        log(f"User {owner} already exists")
        return
    log(f"Creating user {owner}...")
    ctx.runner.run(["useradd", "-m", "-d", str(target.home_dir), "-s", "/bin/bash", owner])


def install_site_config(ctx, target: DeploymentTarget, text: str):
    target.nginx_conf.parent.mkdir(parents=True, exist_ok=True)
    target.nginx_conf.write_text(text)
    ctx.runner.chown(target.owner_user, target.nginx_conf)

    available, enabled = site_links(ctx, target)
    for link in (available, enabled):
        link.parent.mkdir(parents=True, exist_ok=True)
        if link.is_symlink() or link.exists():
            link.unlink()
    available.symlink_to(target.nginx_conf)
    enabled.symlink_to(available)

    result = ctx.runner.run(["nginx", "-t"], check=False)
    if not result.ok:
        ctx.warn(f"nginx -t reported problems: {result.output}")
        return
    reload_nginx(ctx)


def create_site(
    ctx,
    domain: str,
    site_type: str = "nodejs",
    *,
    php: str | None = None,
    port: int | None = None,
) -> DeploymentTarget:
    """Provision the user, home tree and nginx config for a domain.

    :param site_type: laravel, nodejs or static
    :param php: PHP-FPM version (default from config)
    :param port: Upstream port for nodejs sites (default: allocated)
    """
    if site_type not in SITE_TYPES:
        raise ValidationError(f"Unknown site type '{site_type}'. Use: {', '.join(SITE_TYPES)}")
    target = resolve_target(domain, ctx.config.home_root)
    ensure_owner(ctx, target)

    log(f"Creating directories for {target.domain}...")
    for name in SITE_DIRS:
        (target.home_dir / name).mkdir(parents=True, exist_ok=True)
    target.public_html.mkdir(parents=True, exist_ok=True)
    target.app_dir.mkdir(parents=True, exist_ok=True)
    index = target.public_html / "index.html"
    if site_type == "static" and not index.exists():
        index.write_text(PLACEHOLDER_INDEX.format(domain=target.domain))

    owner = target.owner_user
    result = ctx.runner.run(["usermod", "-a", "-G", owner, "www-data"], check=False)
    if not result.ok:
        ctx.warn(f"Could not add www-data to group {owner}: {result.output}")
    target.home_dir.chmod(0o750)
    ctx.runner.chown(owner, target.home_dir, recursive=True)

    if site_type == "nodejs" and port is None:
        port = resolve_port(ctx, target)
    text = render_site_config(
        target,
        site_type,
        port=port,
        php=php or ctx.config.default_php,
        use_www=ctx.config.use_www,
    )
    log(f"Writing nginx config {target.nginx_conf}...")
    install_site_config(ctx, target, text)
    log(f"Site {target.domain} ready ({site_type})")
    return target


def check_dns(ctx, domain: str):
    ip = resolve_dns_a(domain)
    addresses = local_addresses(ctx)
    if ip is None:
        ctx.warn(f"DNS: {domain} has no A record; certificate issuance will likely fail")
    elif addresses and ip not in addresses:
        ctx.warn(f"DNS: {domain} -> {ip}, but this server has {', '.join(addresses)}")
    else:
        log(f"DNS verified: {domain} -> {ip}")


def secure_site(
    ctx,
    domain: str,
    *,
    email: str | None = None,
    force: bool = False,
    skip_dns: bool = False,
):
    """Obtain a Let's Encrypt certificate and switch the site to HTTPS.

    :param email: Let's Encrypt account email (default from config)
    :param force: Request a new certificate even if one exists
    :param skip_dns: Do not check the domain's A record first
    """
    config = ctx.config
    email = email or config.email
    if not email:
        raise PreconditionError("No email configured. Pass --email or set 'email' in the config")
    if not config.agree_tos:
        raise PreconditionError(
            "Let's Encrypt terms not accepted. Set 'agree_tos: true' in the config"
        )

    target = resolve_target(domain, config.home_root)
    if not target.nginx_conf.exists():
        raise PreconditionError(f"Site {domain} does not exist. Run: sm site --domain {domain}")

    if not skip_dns:
        check_dns(ctx, domain)

    certificate = Path("/etc/letsencrypt/live") / domain / "fullchain.pem"
    if certificate.exists() and not force:
        log(f"Certificate for {domain} already exists, use --force to renew")
    else:
        log(f"Requesting certificate for {domain}...")
        command = [
            "certbot", "certonly", "--webroot",
            "--webroot-path", str(target.public_html),
            "--email", email,
            "--domain", domain,
            "--agree-tos", "--non-interactive",
        ]
        if config.use_www and not target.is_subdomain:
            command += ["--domain", f"www.{domain}"]
        if force:
            command.append("--force-renewal")
        ctx.runner.run(command)

    current = target.nginx_conf.read_text()
    port = read_upstream_port(current)
    if port is not None:
        site_type = "nodejs"
    elif "fastcgi_pass" in current:
        site_type = "laravel"
    else:
        site_type = "static"
    text = render_ssl_config(
        target, site_type, port=port, php=config.default_php, use_www=config.use_www
    )
    log(f"Writing SSL nginx config {target.nginx_conf}...")
    install_site_config(ctx, target, text)
    log(f"SSL configured! https://{domain}")


def check_status(ctx) -> list[str]:
    """:return: Issues found"""
    print(f"SiteManager on {platform.node()} ({platform.system()} {platform.release()})")
    print("-" * 40)
    issues = []

    nginx = ctx.runner.run(["systemctl", "is-active", "nginx"], check=False).stdout.strip()
    if nginx == "active":
        print("[OK] nginx: running")
    else:
        print(f"[FAIL] nginx: {nginx or 'not installed'}")
        issues.append("nginx not running")

    for name, command in STATUS_PROGRAMS:
        result = ctx.runner.run(command, check=False)
        if result.ok:
            version = result.stdout.strip().splitlines()[0] if result.stdout.strip() else "installed"
            print(f"[OK] {name}: {version}")
        else:
            print(f"[FAIL] {name}: not available")
            issues.append(f"{name} not available")

    print(f"[OK] config: nginx {ctx.config.nginx_path}, homes {ctx.config.home_root}")
    print("-" * 40)
    if issues:
        print(f"Issues found ({len(issues)}):")
        for issue in issues:
            print(f"  - {issue}")
    else:
        print("All checks passed!")
    return issues
