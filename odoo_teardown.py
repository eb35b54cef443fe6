#!/usr/bin/env python3
"""Remove an Odoo deployment created by :mod:`odoo_setup`.

The service, the PostgreSQL role and its databases, the system account and
its home directory, the configuration file, the logs and the nginx site are
removed.  Certificates, shared packages and firewall rules are only removed
after a separate confirmation each.

Every step is best-effort: a failure is reported as a warning and the
remaining steps still run, so the summary is always reached.
"""
from __future__ import annotations

import logging
import pathlib
import shutil
import sys
import time
from typing import Callable, List, Optional, Sequence, TextIO, Tuple

from odoo_setup import (
    HTTP_PORT,
    REALTIME_PORT,
    AlreadySatisfied,
    AptManager,
    ExternalToolError,
    Pipeline,
    Prompt,
    ProvisioningError,
    SetupConfig,
    Step,
    StepDeclined,
    StepResult,
    account_exists,
    ask,
    ask_yes_no,
    build_arg_parser,
    configure_logging,
    ensure_root,
    load_setup_config,
    psql_execute,
    psql_query,
    role_exists,
    run_command,
    sql_identifier,
    sql_literal,
)

LOG = logging.getLogger(__name__)

CONFIRMATION_TOKEN = "DELETE"
SYSTEM_DATABASES = ("postgres", "template0", "template1")
DEFAULT_TEMP_DIRS = (pathlib.Path("/tmp"), pathlib.Path("/var/tmp"))
# Matches `find -mtime +1`: whole days are truncated, so at least two days old.
STALE_AFTER_SECONDS = 2 * 24 * 60 * 60


def confirm_teardown(setup: SetupConfig, prompt: Prompt = input, out: Optional[TextIO] = None) -> bool:
    """Ask for a ``yes`` followed by the literal confirmation token.

    Nothing on the host is touched before both answers are in.
    """

    out = out or sys.stdout
    print(
        "\n".join(
            [
                "",
                "ODOO COMPLETE UNINSTALLATION",
                "",
                "This will PERMANENTLY REMOVE:",
                f"  - the {setup.service_name} service and its systemd unit",
                f"  - the '{setup.odoo.user}' user and home directory ({setup.home})",
                f"  - the PostgreSQL role '{setup.odoo.user}' and the databases it owns",
                f"  - {setup.config_path} and the log directory {setup.log_dir}",
                "  - the nginx configuration serving Odoo",
                "  - SSL certificates, shared packages and firewall rules (each asked separately)",
                "",
                "THIS ACTION CANNOT BE UNDONE!",
                "",
            ]
        ),
        file=out,
    )
    if not ask_yes_no(prompt, "Are you absolutely sure you want to continue? (yes/no): "):
        return False
    try:
        token = prompt(f"Type '{CONFIRMATION_TOKEN}' in capital letters to confirm: ")
    except EOFError:
        return False
    return token == CONFIRMATION_TOKEN


def _service_active(name: str) -> bool:
    return run_command(["systemctl", "is-active", "--quiet", name], check=False).returncode == 0


class StopService(Step):
    item = "Odoo service stopped"

    def __init__(self, setup: SetupConfig) -> None:
        self.service = setup.service_name
        self.label = f"Stopping {self.service}"

    def apply(self) -> Optional[str]:
        if not _service_active(self.service):
            raise AlreadySatisfied("service is not running or does not exist")
        run_command(["systemctl", "stop", self.service])
        return "Odoo service stopped."


class RemoveServiceUnit(Step):
    label = "Removing systemd service"
    item = "Odoo service and systemd configuration"

    def __init__(self, setup: SetupConfig) -> None:
        self.service = setup.service_name
        self.unit_path = setup.unit_path

    def apply(self) -> Optional[str]:
        if not self.unit_path.exists():
            raise AlreadySatisfied("systemd service file not found")
        run_command(["systemctl", "disable", self.service], check=False)
        self.unit_path.unlink()
        run_command(["systemctl", "daemon-reload"])
        run_command(["systemctl", "reset-failed"], check=False)
        return "Systemd service removed."


class DropDatabases(Step):
    """Drop the role's databases, optionally every other database, then the role."""

    item = "PostgreSQL role and databases"

    def __init__(self, setup: SetupConfig, prompt: Prompt, out: Optional[TextIO] = None) -> None:
        self.user = setup.odoo.user
        self.prompt = prompt
        self.out = out
        self.label = f"Removing PostgreSQL role '{self.user}' and its databases"
        self.dropped: List[str] = []

    def _drop(self, database: str) -> None:
        LOG.info("Dropping database: %s", database)
        result = psql_execute(f"DROP DATABASE IF EXISTS {sql_identifier(database)};\n", check=False)
        if result.returncode != 0:
            LOG.warning("Failed to drop database: %s", database)
        else:
            self.dropped.append(database)

    def apply(self) -> Optional[str]:
        if shutil.which("psql") is None:
            raise AlreadySatisfied("PostgreSQL is not installed")
        if not _service_active("postgresql"):
            raise AlreadySatisfied("PostgreSQL service is not running")
        if not role_exists(self.user):
            raise AlreadySatisfied(f"PostgreSQL role '{self.user}' does not exist")

        owned = psql_query(
            "SELECT datname FROM pg_database "
            f"WHERE datdba=(SELECT oid FROM pg_roles WHERE rolname={sql_literal(self.user)})"
        )
        for database in owned:
            self._drop(database)

        LOG.info("Searching for additional databases...")
        excluded = ", ".join(sql_literal(name) for name in SYSTEM_DATABASES)
        remaining = psql_query(f"SELECT datname FROM pg_database WHERE datname NOT IN ({excluded})")
        if remaining:
            print("Found the following databases:", file=self.out or sys.stdout)
            print("\n".join(f"  {name}" for name in remaining), file=self.out or sys.stdout)
            # These may belong to other applications; never implied by the first answer.
            if ask_yes_no(self.prompt, "Do you want to remove ALL these databases? (yes/no): "):
                for database in remaining:
                    self._drop(database)

        psql_execute(f"DROP ROLE IF EXISTS {sql_identifier(self.user)};\n")
        dropped = ", ".join(self.dropped) or "none"
        return f"PostgreSQL role '{self.user}' removed (databases dropped: {dropped})."


class RemoveAccount(Step):
    item = "Odoo user and home directory"

    def __init__(self, setup: SetupConfig, sleep: Callable[[float], None] = time.sleep) -> None:
        self.user = setup.odoo.user
        self.home = setup.home
        self.sleep = sleep
        self.label = f"Removing system user '{self.user}' and home directory"

    def apply(self) -> Optional[str]:
        exists = account_exists(self.user)
        if not exists and not self.home.exists():
            raise AlreadySatisfied(f"system user '{self.user}' does not exist")
        if exists:
            run_command(["pkill", "-u", self.user], check=False)
            self.sleep(2)
            try:
                run_command(["userdel", "-r", self.user])
            except ExternalToolError:
                LOG.warning("Failed to remove user with home directory. Trying alternative method...")
                run_command(["userdel", self.user], check=False)
        if self.home.exists():
            shutil.rmtree(self.home)
        if exists:
            run_command(["groupdel", self.user], check=False)
        return "Odoo system user and home directory removed."


class RemovePath(Step):
    def __init__(self, path: pathlib.Path, label: str, item: str) -> None:
        self.path = path
        self.label = label
        self.item = item

    def apply(self) -> Optional[str]:
        if self.path.is_dir() and not self.path.is_symlink():
            shutil.rmtree(self.path)
        elif self.path.exists() or self.path.is_symlink():
            self.path.unlink()
        else:
            raise AlreadySatisfied(f"{self.path} not found")
        return f"{self.path} removed."


class RemoveProxyConfig(Step):
    label = "Removing nginx configuration"
    item = "nginx Odoo configuration"

    def __init__(self, setup: SetupConfig) -> None:
        self.available = setup.paths.nginx_available
        self.enabled = setup.paths.nginx_enabled
        self.markers = (setup.odoo.user, str(HTTP_PORT), str(REALTIME_PORT))

    def find_sites(self) -> List[pathlib.Path]:
        """Sites in ``sites-available`` that mention the account or Odoo's ports."""

        if not self.available.is_dir():
            return []
        sites = []
        for path in sorted(self.available.iterdir()):
            if path.name == "default" or path.is_symlink() or not path.is_file():
                continue
            text = path.read_text(encoding="utf-8", errors="replace")
            if any(marker in text for marker in self.markers):
                sites.append(path)
        return sites

    def _restore_default_site(self) -> None:
        default_available = self.available / "default"
        default_enabled = self.enabled / "default"
        if default_available.exists() and not default_enabled.is_symlink():
            self.enabled.mkdir(parents=True, exist_ok=True)
            if default_enabled.exists():
                default_enabled.unlink()
            default_enabled.symlink_to(default_available)
            LOG.info("Restored default nginx site.")

    def _reload(self) -> None:
        if shutil.which("nginx") is None:
            return
        if run_command(["nginx", "-t"], check=False).returncode != 0:
            LOG.warning("nginx configuration test failed. Please check manually.")
            return
        if run_command(["systemctl", "reload", "nginx"], check=False).returncode != 0:
            LOG.warning("Failed to reload nginx.")

    def apply(self) -> Optional[str]:
        sites = self.find_sites()
        for site in sites:
            LOG.info("Removing nginx config: %s", site)
            site.unlink()
            link = self.enabled / site.name
            if link.is_symlink() or link.exists():
                link.unlink()
        self._restore_default_site()
        self._reload()
        if not sites:
            raise AlreadySatisfied("no Odoo-specific nginx configuration found")
        return f"nginx configuration removed: {', '.join(site.name for site in sites)}."


class RemoveCertificates(Step):
    label = "Removing SSL certificates"
    item = "SSL certificates"

    def __init__(self, setup: SetupConfig, prompt: Prompt, out: Optional[TextIO] = None) -> None:
        self.letsencrypt_dir = setup.paths.letsencrypt_dir
        self.prompt = prompt
        self.out = out

    def apply(self) -> Optional[str]:
        if not ask_yes_no(self.prompt, "Do you want to remove SSL certificates? (yes/no): "):
            raise StepDeclined("Skipping SSL certificate removal.")
        if not self.letsencrypt_dir.is_dir():
            raise AlreadySatisfied("no SSL certificates directory found")
        if shutil.which("certbot") is None:
            live = self.letsencrypt_dir / "live"
            names = sorted(path.name for path in live.iterdir()) if live.is_dir() else []
            raise ProvisioningError(
                f"certbot is not installed; certificates left in place: {', '.join(names) or 'none'}"
            )

        listing = run_command(["certbot", "certificates"], check=False)
        print("Found certificates:", file=self.out or sys.stdout)
        print(listing.stdout, file=self.out or sys.stdout)
        answer = ask(self.prompt, "Enter domain name to remove certificate (or 'all' for all, or 'skip' to skip): ")
        if answer in ("", "skip"):
            raise StepDeclined("Skipping certificate removal.")
        if answer == "all":
            shutil.rmtree(self.letsencrypt_dir)
            return "All SSL certificates removed."
        run_command(["certbot", "delete", "--cert-name", answer, "--non-interactive"])
        return f"SSL certificate for {answer} removed."


class RemoveSharedPackages(Step):
    label = "Removing Odoo dependencies"
    item = "shared packages"

    POSTGRESQL_DIRS: Tuple[pathlib.Path, ...] = (pathlib.Path("/etc/postgresql"), pathlib.Path("/var/lib/postgresql"))
    NGINX_DIRS: Tuple[pathlib.Path, ...] = (pathlib.Path("/etc/nginx"), pathlib.Path("/var/log/nginx"))

    def __init__(self, setup: SetupConfig, prompt: Prompt, apt: AptManager) -> None:
        self.pdf_renderer = setup.packages.pdf_renderer_package
        self.prompt = prompt
        self.apt = apt
        self.kept: List[str] = []

    def _purge(self, name: str, packages: Sequence[str], leftovers: Sequence[pathlib.Path] = ()) -> bool:
        try:
            self.apt.purge(packages)
        except ExternalToolError as exc:
            LOG.warning("Failed to remove %s: %s", name, exc)
            return False
        for path in leftovers:
            shutil.rmtree(path, ignore_errors=True)
        LOG.info("%s removed.", name)
        return True

    def apply(self) -> Optional[str]:
        if not ask_yes_no(
            self.prompt, "Do you want to remove Odoo dependencies (wkhtmltopdf, nginx, postgresql)? (yes/no): "
        ):
            raise StepDeclined("Skipping dependency removal.")

        removed: List[str] = []
        self.kept = []
        if self.apt.is_installed(self.pdf_renderer):
            self._remove(removed, "wkhtmltopdf", [self.pdf_renderer])
        optional = [
            ("PostgreSQL", "Remove PostgreSQL? This will remove ALL databases! (yes/no): ",
             ["postgresql", "postgresql-*"], self.POSTGRESQL_DIRS),
            ("nginx", "Remove Nginx? (yes/no): ", ["nginx", "nginx-*"], self.NGINX_DIRS),
            ("certbot", "Remove Certbot? (yes/no): ", ["certbot", "python3-certbot-nginx"], ()),
        ]
        for name, question, packages, leftovers in optional:
            if ask_yes_no(self.prompt, question):
                self._remove(removed, name, packages, leftovers)
            else:
                self.kept.append(f"{name} (kept)")
        self.apt.autoremove()
        if not removed:
            raise AlreadySatisfied("no packages removed")
        self.item = f"shared packages: {', '.join(removed)}"
        return f"Removed packages: {', '.join(removed)}."

    def _remove(
        self, removed: List[str], name: str, packages: Sequence[str], leftovers: Sequence[pathlib.Path] = ()
    ) -> None:
        if self._purge(name, packages, leftovers):
            removed.append(name)
        else:
            self.kept.append(f"{name} (removal failed)")


class RemoveFirewallRules(Step):
    label = "Updating firewall rules"
    item = "nginx firewall rules"
    RULES = ("Nginx Full", "Nginx HTTP", "Nginx HTTPS", "80/tcp", "443/tcp")

    def __init__(self, prompt: Prompt) -> None:
        self.prompt = prompt

    def apply(self) -> Optional[str]:
        if shutil.which("ufw") is None:
            raise AlreadySatisfied("UFW not installed")
        if not ask_yes_no(self.prompt, "Remove firewall rules for Nginx? (yes/no): "):
            raise StepDeclined("Keeping firewall rules.")
        for rule in self.RULES:
            run_command(["ufw", "delete", "allow", rule], check=False)
        return "Firewall rules updated."


class CleanTemporaryFiles(Step):
    label = "Performing final cleanup"
    item = "stale temporary files"

    def __init__(
        self,
        directories: Sequence[pathlib.Path] = DEFAULT_TEMP_DIRS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.directories = directories
        self.clock = clock

    def apply(self) -> Optional[str]:
        cutoff = self.clock() - STALE_AFTER_SECONDS
        removed = 0
        for directory in self.directories:
            if not directory.is_dir():
                continue
            for path in directory.rglob("*odoo*"):
                try:
                    if path.is_symlink() or not path.is_file() or path.stat().st_mtime >= cutoff:
                        continue
                    path.unlink()
                    removed += 1
                except OSError as exc:
                    LOG.debug("Could not remove %s: %s", path, exc)
        if not removed:
            raise AlreadySatisfied("no stale temporary files")
        return f"Removed {removed} stale temporary file(s)."


def print_summary(steps: Sequence[Step], results: Sequence[StepResult], out: Optional[TextIO] = None) -> None:
    out = out or sys.stdout
    removed = []
    untouched = []
    failed = []
    for step, result in zip(steps, results):
        item = getattr(step, "item", "") or step.label
        if result.status == "applied":
            removed.append(item)
        elif result.status == "failed":
            failed.append(f"{item} ({result.detail})")
        else:
            untouched.append(f"{item} ({result.detail})")
        untouched.extend(getattr(step, "kept", ()))

    lines = ["", "ODOO UNINSTALLATION COMPLETED", ""]
    if removed:
        lines.append("The following items have been removed:")
        lines.extend(f"  + {item}" for item in removed)
    if untouched:
        lines.append("Skipped or left in place:")
        lines.extend(f"  - {item}" for item in untouched)
    if failed:
        lines.append("Failed (check manually):")
        lines.extend(f"  ! {item}" for item in failed)
    lines.append("")
    print("\n".join(lines), file=out)


class Deprovisioner:
    """Run the best-effort teardown pipeline."""

    def __init__(
        self,
        setup: SetupConfig,
        prompt: Prompt = input,
        sleep: Callable[[float], None] = time.sleep,
        apt: Optional[AptManager] = None,
        out: Optional[TextIO] = None,
        temp_dirs: Sequence[pathlib.Path] = DEFAULT_TEMP_DIRS,
    ) -> None:
        self.setup = setup
        self.prompt = prompt
        self.sleep = sleep
        self.apt = apt or AptManager()
        self.out = out
        self.temp_dirs = temp_dirs

    def steps(self) -> List[Step]:
        setup = self.setup
        return [
            StopService(setup),
            RemoveServiceUnit(setup),
            DropDatabases(setup, self.prompt, self.out),
            RemoveAccount(setup, self.sleep),
            RemovePath(setup.config_path, "Removing Odoo configuration file", "Odoo configuration file"),
            RemovePath(setup.log_dir, "Removing Odoo log directory", "Odoo log files"),
            RemoveProxyConfig(setup),
            RemoveCertificates(setup, self.prompt, self.out),
            RemoveSharedPackages(setup, self.prompt, self.apt),
            RemoveFirewallRules(self.prompt),
            CleanTemporaryFiles(self.temp_dirs),
        ]

    def run(self) -> List[StepResult]:
        steps = self.steps()
        results = Pipeline(steps, best_effort=True).run()
        print_summary(steps, results, self.out)
        LOG.info("Uninstallation finished.")
        return results


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_arg_parser(__doc__).parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    try:
        ensure_root()
        setup = load_setup_config(args.config)
    except ProvisioningError as exc:
        LOG.error("%s", exc)
        return 1

    try:
        if not confirm_teardown(setup, input):
            LOG.info("Uninstallation cancelled.")
            return 0
        LOG.info("Confirmation received. Starting uninstallation...")
        Deprovisioner(setup, input).run()
    except KeyboardInterrupt:
        LOG.error("Interrupted; the host may be partially cleaned up.")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
