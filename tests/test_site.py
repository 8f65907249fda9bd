from pathlib import Path

import pytest

from site_manager import site
from site_manager.errors import ExternalCommandError, PreconditionError, ValidationError
from site_manager.nginx import read_upstream_port
from site_manager.ports import PortRegistry
from site_manager.site import check_status, create_site, secure_site


def enabled_link(config, domain):
    return Path(config.sites_enabled) / f"{domain}.conf"


class TestCreateSite:
    def test_nodejs_site(self, ctx, runner, config):
        target = create_site(ctx, "example.com")

        port = PortRegistry(config.ports_file).get("example.com")
        assert read_upstream_port(target.nginx_conf.read_text()) == port
        for name in ["public_html", "nginx", "logs", "apps"]:
            assert (target.home_dir / name).is_dir()
        assert target.app_dir.is_dir()
        assert target.home_dir.stat().st_mode & 0o777 == 0o750

        available = Path(config.sites_available) / "example.com.conf"
        assert available.resolve() == target.nginx_conf.resolve()
        assert enabled_link(config, "example.com").resolve() == target.nginx_conf.resolve()
        assert runner.index("nginx -t") < runner.index("systemctl reload nginx")
        assert not runner.ran("useradd")

    def test_creates_missing_user(self, ctx, runner, config):
        runner.on("id -u example", exited=1)
        target = create_site(ctx, "example.com", "static")

        assert runner.ran(f"useradd -m -d {target.home_dir} -s /bin/bash example")
        assert runner.index("useradd") < runner.index("usermod -a -G example www-data")
        assert "example.com" in (target.public_html / "index.html").read_text()

    def test_explicit_port(self, ctx, config):
        target = create_site(ctx, "example.com", port=3500)
        assert read_upstream_port(target.nginx_conf.read_text()) == 3500
        assert not config.ports_file.exists()

    def test_laravel_php_version(self, ctx, config):
        target = create_site(ctx, "example.com", "laravel", php="8.2")
        assert "php8.2-fpm.sock" in target.nginx_conf.read_text()

    def test_recreate_replaces_links(self, ctx, config):
        create_site(ctx, "example.com", "static")
        target = create_site(ctx, "example.com", "nodejs")
        assert read_upstream_port(enabled_link(config, "example.com").read_text()) is not None
        assert target.nginx_conf.exists()

    def test_subdomain_requires_parent(self, ctx, runner):
        with pytest.raises(PreconditionError, match="sm site --domain example.com"):
            create_site(ctx, "api.example.com")
        assert not runner.ran("useradd")

    def test_subdomain_uses_parent_home(self, ctx, runner, config):
        parent = create_site(ctx, "example.com", "static")
        target = create_site(ctx, "api.example.com", "static")

        assert target.home_dir == parent.home_dir
        assert target.public_html == parent.home_dir / "public_html" / "api.example.com"
        assert (target.public_html / "index.html").exists()
        assert target.nginx_conf == parent.home_dir / "nginx" / "api.example.com.conf"
        assert enabled_link(config, "api.example.com").is_symlink()

    def test_nginx_test_failure_skips_reload(self, ctx, runner):
        runner.on("nginx -t", exited=1, stderr="unknown directive")
        create_site(ctx, "example.com", "static")
        assert not runner.ran("systemctl reload nginx")
        assert "unknown directive" in ctx.warnings[0]

    def test_unknown_type(self, ctx):
        with pytest.raises(ValidationError):
            create_site(ctx, "example.com", "django")


class TestSecureSite:
    def test_switches_to_https(self, ctx, runner):
        target = create_site(ctx, "example.com", port=3042)
        secure_site(ctx, "example.com", skip_dns=True)

        certbot = runner.ran("certbot certonly")[0]
        assert f"--webroot-path {target.public_html}" in certbot
        assert "--email admin@example.com" in certbot
        assert "--domain example.com --agree-tos" in certbot
        assert "--domain www.example.com" in certbot
        assert "--force-renewal" not in certbot

        text = target.nginx_conf.read_text()
        assert "listen 443 ssl" in text
        assert read_upstream_port(text) == 3042

    def test_subdomain_has_no_www(self, ctx, runner):
        create_site(ctx, "example.com", "static")
        create_site(ctx, "api.example.com", "static")
        secure_site(ctx, "api.example.com", email="ops@example.com", force=True, skip_dns=True)

        certbot = runner.ran("certbot certonly")[0]
        assert "www." not in certbot
        assert "--email ops@example.com" in certbot
        assert certbot.endswith("--force-renewal")

    def test_requires_email(self, ctx, config):
        config.email = ""
        with pytest.raises(PreconditionError, match="email"):
            secure_site(ctx, "example.com")

    def test_requires_terms(self, ctx, config):
        config.agree_tos = False
        with pytest.raises(PreconditionError, match="agree_tos"):
            secure_site(ctx, "example.com")

    def test_requires_site(self, ctx, runner):
        with pytest.raises(PreconditionError, match="does not exist"):
            secure_site(ctx, "example.com", skip_dns=True)
        assert not runner.ran("certbot")

    def test_certbot_failure(self, ctx, runner):
        create_site(ctx, "example.com", "static")
        runner.on("certbot", exited=1, stderr="Challenge failed")
        with pytest.raises(ExternalCommandError, match="Challenge failed"):
            secure_site(ctx, "example.com", skip_dns=True)

    @pytest.mark.parametrize(
        "resolved,warned",
        [("203.0.113.7", False), ("198.51.100.1", True), (None, True)],
    )
    def test_dns_check(self, ctx, runner, monkeypatch, resolved, warned):
        monkeypatch.setattr(site, "resolve_dns_a", lambda domain: resolved)
        runner.on("hostname -I", stdout="203.0.113.7 10.0.0.2 \n")
        create_site(ctx, "example.com", "static")

        secure_site(ctx, "example.com")
        assert any(w.startswith("DNS:") for w in ctx.warnings) == warned


def test_status_reports_issues(ctx, runner):
    runner.on("systemctl is-active nginx", stdout="active\n")
    runner.on("php -v", stdout="PHP 8.3.6 (cli)\nCopyright\n")
    runner.on("certbot --version", exited=127)

    assert check_status(ctx) == ["certbot not available"]


def test_status_nginx_down(ctx, runner):
    runner.on("systemctl is-active nginx", exited=3, stdout="inactive\n")
    assert "nginx not running" in check_status(ctx)
