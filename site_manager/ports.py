import json
from pathlib import Path

from site_manager.console import log
from site_manager.errors import PreconditionError, ValidationError
from site_manager.nginx import derive_port, read_upstream_port


class PortRegistry:
    """Domain to upstream port table stored as JSON.

    Allocation starts at the hash-derived port and probes upward, wrapping
    inside ``[start, end]``, so two domains never share a port.
    """

    def __init__(self, path: Path, start: int = 3001, end: int = 3999):
        self.path = path
        self.start = start
        self.end = end
        self.ports: dict[str, int] = self.load()

    def load(self) -> dict[str, int]:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except json.JSONDecodeError as e:
            raise ValidationError(f"Corrupt port registry {self.path}: {e}") from e
        return {str(k): int(v) for k, v in data.items()}

    def save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(self.ports, indent=2, sort_keys=True) + "\n")

    def get(self, domain: str) -> int | None:
        return self.ports.get(domain)

    def owner_of(self, port: int) -> str | None:
        return next((d for d, p in self.ports.items() if p == port), None)

    def allocate(self, domain: str, preferred: int | None = None) -> int:
        """:return: The domain's existing port, or the first free one from ``preferred``"""
        if domain in self.ports:
            return self.ports[domain]

        span = self.end - self.start + 1
        first = preferred if preferred is not None else derive_port(domain)
        if not self.start <= first <= self.end:
            first = self.start + (first - self.start) % span
        taken = set(self.ports.values())
        for offset in range(span):
            port = self.start + (first - self.start + offset) % span
            if port not in taken:
                if port != first:
                    log(f"Port {first} is taken by {self.owner_of(first)}, using {port}")
                self.ports[domain] = port
                self.save()
                return port
        raise PreconditionError(f"No free port left in {self.start}-{self.end}")

    def release(self, domain: str) -> int | None:
        port = self.ports.pop(domain, None)
        if port is not None:
            self.save()
        return port


def resolve_port(ctx, target, prefer_existing: bool = False) -> int:
    """Pick the upstream port for a deployment.

    :param prefer_existing: Adopt the port already in the site's nginx config
        when the domain has no allocation yet (used by the reset path)
    """
    config = ctx.config
    existing = None
    if prefer_existing and target.nginx_conf.exists():
        existing = read_upstream_port(target.nginx_conf.read_text())

    if config.port_allocation == "hash":
        return existing or derive_port(target.domain)

    registry = PortRegistry(
        config.ports_file, config.port_range["start"], config.port_range["end"]
    )
    if registry.get(target.domain) is None and existing is not None:
        holder = registry.owner_of(existing)
        if holder is None:
            registry.ports[target.domain] = existing
            registry.save()
            return existing
    return registry.allocate(target.domain)


def release_port(ctx, domain: str) -> int | None:
    config = ctx.config
    if config.port_allocation == "hash":
        return None
    registry = PortRegistry(
        config.ports_file, config.port_range["start"], config.port_range["end"]
    )
    return registry.release(domain)
