"""Text renderers for the artifacts written by :mod:`odoo_setup`.

Every function here is pure: it receives a resolved
:class:`odoo_setup.ProvisioningConfig` and returns the file content as a
string.  Writing, ownership and permissions are handled by the caller.
"""
from __future__ import annotations

import pathlib
from typing import TYPE_CHECKING, List

if TYPE_CHECKING:  # pragma: no cover
    from odoo_setup import ProvisioningConfig

ADDONS_SEPARATOR = ","


def addons_path(home: pathlib.Path) -> str:
    """Return the Odoo ``addons_path`` for a deployment rooted at ``home``.

    Order matters: when two directories provide a module with the same name,
    Odoo loads the one listed first.  Enterprise wins over custom addons,
    custom addons win over the community core.
    """

    directories = [home / "enterprise", home / "custom_addons", home / "odoo" / "addons"]
    return ADDONS_SEPARATOR.join(str(directory) for directory in directories)


def render_odoo_config(config: ProvisioningConfig) -> str:
    lines = [
        "[options]",
        f"admin_passwd = {config.admin_password}",
        "db_host = False",
        "db_port = False",
        f"db_user = {config.user}",
        f"db_password = {config.db_password}",
        f"addons_path = {addons_path(config.home)}",
        f"http_port = {config.http_port}",
        f"gevent_port = {config.realtime_port}",
        "proxy_mode = True",
        f"workers = {config.workers}",
        "limit_time_cpu = 600",
        "limit_time_real = 1200",
        f"logfile = {config.log_file}",
        "log_level = info",
    ]
    return "\n".join(lines) + "\n"


def render_service_unit(config: ProvisioningConfig) -> str:
    python = config.venv_dir / "bin" / "python3"
    odoo_bin = config.home / "odoo" / "odoo-bin"
    return (
        "[Unit]\n"
        f"Description=Odoo {config.version}\n"
        "Requires=postgresql.service\n"
        "After=network.target postgresql.service\n"
        "\n"
        "[Service]\n"
        "Type=simple\n"
        f"SyslogIdentifier={config.user}\n"
        f"User={config.user}\n"
        f"Group={config.user}\n"
        f"ExecStart={python} {odoo_bin} -c {config.config_path}\n"
        "Restart=on-failure\n"
        "RestartSec=10\n"
        "\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


def _upstreams(config: ProvisioningConfig) -> str:
    return (
        "upstream odoo {\n"
        f"    server 127.0.0.1:{config.http_port};\n"
        "}\n"
        "\n"
        "upstream odoochat {\n"
        f"    server 127.0.0.1:{config.realtime_port};\n"
        "}\n"
        "\n"
        "map $http_upgrade $connection_upgrade {\n"
        "    default upgrade;\n"
        "    ''      close;\n"
        "}\n"
    )


def _acme_location(config: ProvisioningConfig) -> str:
    return (
        "    location /.well-known/acme-challenge/ {\n"
        f"        root {config.paths.acme_webroot};\n"
        "    }\n"
    )


_FORWARDED_HEADERS = (
    "        proxy_set_header X-Forwarded-Host $host;\n"
    "        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;\n"
    "        proxy_set_header X-Forwarded-Proto $scheme;\n"
    "        proxy_set_header X-Real-IP $remote_addr;\n"
)


def _odoo_locations() -> str:
    return (
        "    proxy_read_timeout 720s;\n"
        "    proxy_connect_timeout 720s;\n"
        "    proxy_send_timeout 720s;\n"
        "    client_max_body_size 512m;\n"
        "\n"
        "    access_log /var/log/nginx/odoo.access.log;\n"
        "    error_log /var/log/nginx/odoo.error.log;\n"
        "\n"
        "    location /websocket {\n"
        "        proxy_pass http://odoochat;\n"
        "        proxy_set_header Upgrade $http_upgrade;\n"
        "        proxy_set_header Connection $connection_upgrade;\n"
        f"{_FORWARDED_HEADERS}"
        "    }\n"
        "\n"
        "    location /longpolling {\n"
        "        proxy_pass http://odoochat;\n"
        f"{_FORWARDED_HEADERS}"
        "    }\n"
        "\n"
        "    location / {\n"
        "        proxy_pass http://odoo;\n"
        f"{_FORWARDED_HEADERS}"
        "    }\n"
        "\n"
        "    location ~* /web/static/ {\n"
        "        proxy_cache_valid 200 60m;\n"
        "        proxy_buffering on;\n"
        "        expires 864000;\n"
        "        proxy_pass http://odoo;\n"
        "    }\n"
    )


def certificate_dir(config: ProvisioningConfig) -> pathlib.Path:
    """Directory where certbot keeps the live certificate for the domain."""

    return config.paths.letsencrypt_dir / "live" / config.hostname


def render_vhost(config: ProvisioningConfig) -> str:
    """Render the nginx virtual host for the selected proxy variant."""

    blocks: List[str] = [
        f"# nginx site for Odoo ({config.user}) generated by odoo_setup.py\n",
        _upstreams(config),
    ]
    if config.tls:
        cert_dir = certificate_dir(config)
        blocks.append(
            "server {\n"
            "    listen 80;\n"
            f"    server_name {config.hostname};\n"
            "\n"
            f"{_acme_location(config)}"
            "    location / {\n"
            "        return 301 https://$host$request_uri;\n"
            "    }\n"
            "}\n"
        )
        blocks.append(
            "server {\n"
            "    listen 443 ssl http2;\n"
            f"    server_name {config.hostname};\n"
            "\n"
            f"    ssl_certificate {cert_dir / 'fullchain.pem'};\n"
            f"    ssl_certificate_key {cert_dir / 'privkey.pem'};\n"
            "    ssl_protocols TLSv1.2 TLSv1.3;\n"
            "    ssl_session_cache shared:SSL:10m;\n"
            "\n"
            f"{_odoo_locations()}"
            "}\n"
        )
    else:
        blocks.append(
            "server {\n"
            "    listen 80 default_server;\n"
            "    server_name _;\n"
            "\n"
            f"{_odoo_locations()}"
            "}\n"
        )
    return "\n".join(blocks)


def render_acme_vhost(config: ProvisioningConfig) -> str:
    """Minimal HTTP site used while certbot answers the ACME challenge."""

    return (
        f"# temporary ACME site for {config.hostname} ({config.user})\n"
        "server {\n"
        "    listen 80;\n"
        f"    server_name {config.hostname};\n"
        "\n"
        f"{_acme_location(config)}"
        "    location / {\n"
        "        return 404;\n"
        "    }\n"
        "}\n"
    )
