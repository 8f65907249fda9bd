import pytest

from site_manager.errors import PreconditionError
from site_manager.nginx import derive_port
from site_manager.ports import PortRegistry, release_port, resolve_port
from site_manager.target import resolve_target


def test_first_allocation_uses_hash(tmp_path):
    registry = PortRegistry(tmp_path / "ports.json")
    assert registry.allocate("example.com") == derive_port("example.com")
    assert registry.allocate("example.com") == derive_port("example.com")


def test_collision_probes_next_port(tmp_path):
    path = tmp_path / "ports.json"
    taken = derive_port("example.com")
    registry = PortRegistry(path)
    registry.allocate("other.com", preferred=taken)

    port = registry.allocate("example.com")
    expected = taken + 1 if taken < 3999 else 3001
    assert port == expected
    assert PortRegistry(path).get("example.com") == expected


def test_wraps_and_exhausts(tmp_path):
    registry = PortRegistry(tmp_path / "ports.json", start=4000, end=4001)
    assert registry.allocate("a.com", preferred=4001) == 4001
    assert registry.allocate("b.com", preferred=4001) == 4000
    with pytest.raises(PreconditionError):
        registry.allocate("c.com")


def test_release(tmp_path):
    registry = PortRegistry(tmp_path / "ports.json")
    port = registry.allocate("example.com")
    assert registry.release("example.com") == port
    assert registry.release("example.com") is None
    assert PortRegistry(tmp_path / "ports.json").get("example.com") is None


def test_resolve_port_adopts_nginx_port_on_reset(ctx, config):
    target = resolve_target("example.com", config.home_root)
    target.nginx_conf.parent.mkdir(parents=True)
    target.nginx_conf.write_text("location / {\n    proxy_pass http://localhost:3777;\n}\n")

    assert resolve_port(ctx, target, prefer_existing=True) == 3777
    assert resolve_port(ctx, target) == 3777
    assert release_port(ctx, "example.com") == 3777


def test_hash_mode_has_no_table(ctx, config):
    config.port_allocation = "hash"
    target = resolve_target("example.com", config.home_root)
    assert resolve_port(ctx, target) == derive_port("example.com")
    assert not config.ports_file.exists()
    assert release_port(ctx, "example.com") is None
