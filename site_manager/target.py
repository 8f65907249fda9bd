"""Domain and repository identity: who owns a site and where it lives on disk."""

import re
from dataclasses import dataclass
from pathlib import Path

from site_manager.errors import ValidationError

LABEL_CHARS = re.compile(r"^[a-z0-9-]+$")
SSH_URL = re.compile(r"^git@(?P<host>[^:/]+):(?P<path>[^:]+)$")
HTTPS_URL = re.compile(r"^https://(?P<host>[^/]+)(?:/(?P<path>.*))?$")


def validate_domain(domain: str):
    if not domain:
        raise ValidationError("Domain cannot be empty")
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValidationError(f"Invalid domain '{domain}': expected at least two labels")
    for label in labels:
        if not label:
            raise ValidationError(f"Invalid domain '{domain}': empty label")
        if not LABEL_CHARS.match(label):
            raise ValidationError(
                f"Invalid domain '{domain}': label '{label}' must contain only a-z, 0-9 and '-'"
            )
        if label.startswith("-") or label.endswith("-"):
            raise ValidationError(
                f"Invalid domain '{domain}': label '{label}' cannot start or end with '-'"
            )


@dataclass(frozen=True)
class DeploymentTarget:
    domain: str
    is_subdomain: bool
    parent_domain: str | None
    owner_user: str
    home_dir: Path

    @property
    def root_domain(self) -> str:
        return self.parent_domain or self.domain

    @property
    def app_dir(self) -> Path:
        return self.home_dir / "apps" / self.domain

    def repo_dir(self, name: str) -> Path:
        return self.app_dir / name

    @property
    def nginx_conf(self) -> Path:
        return self.home_dir / "nginx" / f"{self.domain}.conf"

    @property
    def logs_dir(self) -> Path:
        return self.home_dir / "logs"

    @property
    def error_log(self) -> Path:
        return self.logs_dir / f"{self.domain}_error.log"

    @property
    def output_log(self) -> Path:
        return self.logs_dir / f"{self.domain}_output.log"

    @property
    def descriptor_path(self) -> Path:
        return self.home_dir / f"pm.{self.domain}.config.json"

    @property
    def ssh_dir(self) -> Path:
        return self.home_dir / ".ssh"

    @property
    def backups_dir(self) -> Path:
        return self.home_dir / "backups"

    @property
    def public_html(self) -> Path:
        """Document root; subdomains get a directory inside the parent's."""
        if self.is_subdomain:
            return self.home_dir / "public_html" / self.domain
        return self.home_dir / "public_html"


def resolve_target(domain: str, home_root: str | Path = "/home") -> DeploymentTarget:
    """
    A domain with more than two labels whose first label is not ``www`` is a
    subdomain and lives under its parent's home directory and user.

    :param domain: Fully qualified domain, e.g. api.example.com
    :param home_root: Directory holding per-site home directories
    """
    validate_domain(domain)
    labels = domain.split(".")
    if len(labels) > 2 and labels[0] != "www":
        parent = ".".join(labels[1:])
        return DeploymentTarget(
            domain=domain,
            is_subdomain=True,
            parent_domain=parent,
            owner_user=labels[1],
            home_dir=Path(home_root) / parent,
        )
    return DeploymentTarget(
        domain=domain,
        is_subdomain=False,
        parent_domain=None,
        owner_user=labels[0],
        home_dir=Path(home_root) / domain,
    )


@dataclass(frozen=True)
class RepositoryRef:
    url: str
    branch: str
    use_ssh: bool
    host: str
    owner: str
    name: str

    def ssh_alias(self, target: DeploymentTarget) -> str:
        """Host alias in the owner's ssh config; one per domain and repo."""
        domain = target.domain.replace(".", "-")
        return f"{domain}-{self.host.split('.')[0]}-{self.owner}-{self.name}"

    def clone_url(self, target: DeploymentTarget) -> str:
        """SSH clones go through the per-domain host alias so keys never collide."""
        if self.use_ssh:
            return f"git@{self.ssh_alias(target)}:{self.owner}/{self.name}.git"
        return self.url

    def ssh_key_path(self, target: DeploymentTarget) -> Path:
        domain = target.domain.replace(".", "_")
        owner = self.owner.replace("-", "_")
        name = self.name.replace("-", "_")
        return target.ssh_dir / f"{domain}_{owner}_{name}"


def parse_repository(
    url: str, branch: str = "main", use_ssh: bool = False, fallback_name: str = "app"
) -> RepositoryRef:
    """
    :param url: git@host:owner/name.git for SSH, https://host/owner/name(.git) otherwise
    :param fallback_name: Used as the repo name when the URL has no owner/name path
    """
    url = url.strip()
    if not url:
        raise ValidationError("Repository URL cannot be empty")
    if not branch:
        raise ValidationError("Branch cannot be empty")

    pattern = SSH_URL if use_ssh else HTTPS_URL
    match = pattern.match(url)
    if not match:
        expected = "git@host:owner/repo.git" if use_ssh else "https://host/owner/repo"
        raise ValidationError(f"Invalid repository URL '{url}': expected {expected}")

    path = (match.group("path") or "").strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    parts = [p for p in path.split("/") if p]
    owner = parts[-2] if len(parts) >= 2 else ""
    name = parts[-1] if parts else fallback_name
    if use_ssh and not owner:
        raise ValidationError(f"Invalid repository URL '{url}': missing owner")

    return RepositoryRef(
        url=url,
        branch=branch,
        use_ssh=use_ssh,
        host=match.group("host"),
        owner=owner,
        name=name or fallback_name,
    )
