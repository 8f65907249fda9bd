"""Nginx site configuration: rendering, upstream port patching and reloads."""

import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from textwrap import dedent

from site_manager.console import log

FNV_OFFSET_BASIS = 2166136261
FNV_PRIME = 16777619
PORT_BASE = 3001
PORT_SPAN = 999

UPSTREAM = re.compile(
    r"^(?P<scheme>https?)://(?P<host>\[[^\]]+\]|[^:/\s\[]+):(?P<port>\d+)(?P<path>/.*)?$"
)


def fnv1a_32(data: str) -> int:
    h = FNV_OFFSET_BASIS
    for byte in data.encode():
        h ^= byte
        h = (h * FNV_PRIME) & 0xFFFFFFFF
    return h


def derive_port(domain: str) -> int:
    """:return: Stable port in 3001-3999 for ``domain``"""
    return PORT_BASE + fnv1a_32(domain) % PORT_SPAN


@dataclass
class Directive:
    name: str
    args: list[str]
    line: int
    indent: str
    opens_block: bool = False
    closes_block: bool = False


def tokenize_nginx(text: str) -> list[Directive]:
    """
    Line-oriented view of an nginx config: one entry per directive, block
    opener or closing brace. Comments and blank lines are skipped; multi-line
    directives are not supported.
    """
    directives = []
    for i, raw in enumerate(text.splitlines()):
        content = raw.split("#", 1)[0].strip()
        if not content:
            continue
        indent = raw[: len(raw) - len(raw.lstrip())]
        if content == "}":
            directives.append(Directive("}", [], i, indent, closes_block=True))
            continue
        opens_block = content.endswith("{")
        words = content.rstrip("{;").split()
        if not words:
            continue
        directives.append(Directive(words[0], words[1:], i, indent, opens_block=opens_block))
    return directives


def read_upstream_port(text: str) -> int | None:
    for d in tokenize_nginx(text):
        if d.name == "proxy_pass" and d.args:
            match = UPSTREAM.match(d.args[0])
            if match:
                return int(match.group("port"))
    return None


class PatchStrategy(Enum):
    REPLACE = "replace"  # rewrite existing proxy_pass directives
    INJECT = "inject"  # add proxy_pass inside an existing location /
    APPEND = "append"  # add a whole location / block


def proxy_pass_line(indent: str, port: int) -> str:
    return f"{indent}proxy_pass http://localhost:{port};"


def block_body(directives: list[Directive], opener: int) -> list[Directive]:
    """:return: Directives directly inside the block opened at ``directives[opener]``"""
    body = []
    depth = 0
    for d in directives[opener + 1:]:
        if d.closes_block:
            if depth == 0:
                break
            depth -= 1
        elif depth == 0:
            body.append(d)
        if d.opens_block:
            depth += 1
    return body


def patch_text(text: str, port: int) -> tuple[str, PatchStrategy]:
    """Point the site's upstream at ``port``, touching as little text as possible.

    :return: (new text, strategy used)
    """
    lines = text.splitlines()
    directives = tokenize_nginx(text)

    upstreams = [
        d for d in directives if d.name == "proxy_pass" and d.args and UPSTREAM.match(d.args[0])
    ]
    if upstreams:
        for d in upstreams:
            old = d.args[0]
            match = UPSTREAM.match(old)
            new = f"{match.group('scheme')}://{match.group('host')}:{port}{match.group('path') or ''}"
            lines[d.line] = lines[d.line].replace(old, new, 1)
        return "\n".join(lines) + "\n", PatchStrategy.REPLACE

    # Last match: the first location / of an SSL config is the port 80 redirect
    for i in reversed(range(len(directives))):
        d = directives[i]
        if d.name == "location" and d.opens_block and d.args == ["/"]:
            existing = [p for p in block_body(directives, i) if p.name == "proxy_pass"]
            if existing:
                # Portless upstream such as an upstream{} name
                lines[existing[0].line] = proxy_pass_line(existing[0].indent, port)
                return "\n".join(lines) + "\n", PatchStrategy.REPLACE
            lines.insert(d.line + 1, proxy_pass_line(d.indent + "    ", port))
            return "\n".join(lines) + "\n", PatchStrategy.INJECT

    block = [
        "    location / {",
        proxy_pass_line("        ", port),
        "    }",
    ]
    server_close = last_server_close(directives)
    if server_close is None:
        lines.extend(block)
    else:
        lines[server_close:server_close] = block
    return "\n".join(lines) + "\n", PatchStrategy.APPEND


def last_server_close(directives: list[Directive]) -> int | None:
    """:return: Line index of the closing brace of the last server block"""
    depth = 0
    server_depth = None
    close = None
    for d in directives:
        if d.opens_block:
            depth += 1
            if d.name == "server" and depth == 1:
                server_depth = depth
        elif d.closes_block:
            if server_depth is not None and depth == server_depth:
                close = d.line
                server_depth = None
            depth -= 1
    return close


def reload_nginx(ctx) -> bool:
    log("Reloading nginx...")
    result = ctx.runner.run(["systemctl", "reload", "nginx"], check=False)
    if not result.ok:
        ctx.warn(f"Could not reload nginx: {result.output or 'exit ' + str(result.exited)}")
    return result.ok


def patch_upstream(ctx, target, port: int) -> PatchStrategy | None:
    """Rewrite ``target.nginx_conf`` to proxy to ``port`` and reload nginx.

    :return: Strategy used, or None when the site has no nginx config
    """
    conf: Path = target.nginx_conf
    if not conf.exists():
        log(f"No nginx config at {conf}, skipping port update")
        return None

    text, strategy = patch_text(conf.read_text(), port)
    log(f"Updating nginx upstream to port {port} ({strategy.value})...")
    conf.write_text(text)
    ctx.runner.chown(target.owner_user, conf)
    reload_nginx(ctx)
    return strategy


PROXY_HEADERS = dedent("""
    proxy_http_version 1.1;
    proxy_set_header Upgrade $http_upgrade;
    proxy_set_header Connection 'upgrade';
    proxy_set_header Host $host;
    proxy_set_header X-Real-IP $remote_addr;
    proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
    proxy_set_header X-Forwarded-Proto $scheme;
    proxy_cache_bypass $http_upgrade;
""").strip()


def indent_block(text: str, spaces: int) -> str:
    pad = " " * spaces
    return "\n".join(pad + line if line else line for line in text.splitlines())


def server_names(domain: str, use_www: bool, is_subdomain: bool) -> str:
    if use_www and not is_subdomain:
        return f"{domain} www.{domain}"
    return domain


def location_block(site_type: str, port: int | None, php: str) -> str:
    if site_type == "nodejs":
        return "\n".join([
            "location / {",
            f"    proxy_pass http://localhost:{port};",
            indent_block(PROXY_HEADERS, 4),
            "}",
        ])
    if site_type == "laravel":
        return dedent(f"""
            location / {{
                try_files $uri $uri/ /index.php?$query_string;
            }}

            location ~ \\.php$ {{
                include snippets/fastcgi-php.conf;
                fastcgi_pass unix:/run/php/php{php}-fpm.sock;
                fastcgi_param SCRIPT_FILENAME $realpath_root$fastcgi_script_name;
            }}

            location ~ /\\.(?!well-known).* {{
                deny all;
            }}
        """).strip()
    return dedent("""
        location / {
            try_files $uri $uri/ =404;
        }
    """).strip()


def render_site_config(
    target,
    site_type: str,
    *,
    port: int | None = None,
    php: str = "8.3",
    use_www: bool = True,
) -> str:
    """
    :param site_type: laravel, nodejs or static
    :param port: Upstream port for nodejs sites
    :param php: PHP-FPM version for laravel sites
    """
    root = target.public_html
    head = dedent(f"""
        server {{
            listen 80;
            listen [::]:80;
            server_name {server_names(target.domain, use_www, target.is_subdomain)};
            root {root};
            index index.html index.php;

            access_log {target.logs_dir}/{target.domain}_access.log;
            error_log {target.logs_dir}/{target.domain}_nginx_error.log;

            location /.well-known/acme-challenge/ {{
                root {root};
            }}
    """).strip("\n")
    return f"{head}\n\n{indent_block(location_block(site_type, port, php), 4)}\n}}\n"


def render_ssl_config(
    target,
    site_type: str,
    *,
    port: int | None = None,
    php: str = "8.3",
    use_www: bool = True,
) -> str:
    names = server_names(target.domain, use_www, target.is_subdomain)
    root = target.public_html
    live = f"/etc/letsencrypt/live/{target.domain}"
    head = dedent(f"""
        server {{
            listen 80;
            listen [::]:80;
            server_name {names};

            location /.well-known/acme-challenge/ {{
                root {root};
            }}

            location / {{
                return 301 https://$host$request_uri;
            }}
        }}

        server {{
            listen 443 ssl http2;
            listen [::]:443 ssl http2;
            server_name {names};
            root {root};
            index index.html index.php;

            ssl_certificate {live}/fullchain.pem;
            ssl_certificate_key {live}/privkey.pem;
            ssl_protocols TLSv1.2 TLSv1.3;
            ssl_prefer_server_ciphers on;

            access_log {target.logs_dir}/{target.domain}_access.log;
            error_log {target.logs_dir}/{target.domain}_nginx_error.log;
    """).strip("\n")
    return f"{head}\n\n{indent_block(location_block(site_type, port, php), 4)}\n}}\n"
