#!/usr/bin/env python3
"""Single-host Odoo provisioning for Ubuntu.

Running this module as root walks through an ordered list of idempotent steps:

1. install the OS packages and the wkhtmltopdf PDF renderer,
2. create the PostgreSQL role and the dedicated system account,
3. clone the community, enterprise and custom addons trees and build a
   virtualenv,
4. render ``/etc/<user>.conf`` and the systemd unit, then (re)start Odoo,
5. publish Odoo through nginx, either plain HTTP or HTTPS with a Let's Encrypt
   certificate,
6. open the firewall and print the connection details.

Values that are not set in the defaults file (``odoo_setup.toml``) are
collected interactively before the first step runs.  Every step checks the
current state of the host first, so re-running the script on a provisioned
host only regenerates the secrets and restarts the service.

Use :mod:`odoo_teardown` to reverse the deployment.
"""
from __future__ import annotations

import argparse
import base64
import dataclasses
import logging
import os
import pathlib
import posixpath
import pwd
import secrets
import shlex
import shutil
import subprocess
import sys
import tempfile
from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Mapping, Optional, Sequence, TextIO, Tuple
from urllib.parse import urlparse

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older runtimes
    import tomli as tomllib  # type: ignore[no-redef]

import odoo_templates

LOG = logging.getLogger(__name__)

DEFAULT_ODOO_USER = "odoo18e"
DEFAULT_ODOO_VERSION = "18.0"
COMMUNITY_REPO = "https://github.com/odoo/odoo.git"
HTTP_PORT = 8069
REALTIME_PORT = 8072
REQUIREMENTS_MARKER = ".requirements-installed"

DEFAULT_PACKAGES = (
    "git",
    "python3",
    "python3-pip",
    "python3-venv",
    "python3-dev",
    "python3-wheel",
    "build-essential",
    "wget",
    "libxslt-dev",
    "libzip-dev",
    "libldap2-dev",
    "libsasl2-dev",
    "libpq-dev",
    "libjpeg-dev",
    "node-less",
    "postgresql",
    "nginx",
    "certbot",
    "ufw",
)
PDF_RENDERER_PACKAGE = "wkhtmltox"
PDF_RENDERER_URL = (
    "https://github.com/wkhtmltopdf/packaging/releases/download/"
    "0.12.6.1-2/wkhtmltox_0.12.6.1-2.jammy_amd64.deb"
)

Prompt = Callable[[str], str]


class ProvisioningError(Exception):
    """Base class for failures that stop a provisioning run."""


class ConfigurationError(ProvisioningError):
    """The defaults file could not be parsed."""


class PrivilegeError(ProvisioningError, PermissionError):
    """The tool was started without root privileges."""


class MissingInputError(ProvisioningError, ValueError):
    """A required value is still empty after the prompt phase."""

    def __init__(self, field: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"A value for '{field}' is required.")
        self.field = field


class ExternalToolError(ProvisioningError, subprocess.CalledProcessError):
    """A collaborator command exited with a non-zero status."""

    def __str__(self) -> str:
        message = subprocess.CalledProcessError.__str__(self)
        details = (self.stderr or self.stdout or "").strip()
        if details:
            message += f" {details.splitlines()[-1]}"
        return message


class AlreadySatisfied(Exception):
    """Signals that a step has nothing to do.  Not an error."""


class StepDeclined(Exception):
    """The operator declined an optional step."""


def ensure_root() -> None:
    if os.geteuid() != 0:
        raise PrivilegeError("This script must be run as root or with sudo.")


def run_command(
    cmd: List[str],
    check: bool = True,
    *,
    input: Optional[str] = None,
    cwd: Optional[pathlib.Path] = None,
    env: Optional[Mapping[str, str]] = None,
) -> subprocess.CompletedProcess[str]:
    LOG.debug("Executing command: %s", shlex.join(cmd))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=False,
            input=input,
            cwd=cwd,
            env=env,
        )
    except FileNotFoundError as exc:
        raise ExternalToolError(127, cmd, "", str(exc)) from exc
    if result.stdout:
        LOG.debug("stdout: %s", result.stdout.strip())
    if result.stderr:
        LOG.debug("stderr: %s", result.stderr.strip())
    if check and result.returncode != 0:
        raise ExternalToolError(result.returncode, cmd, result.stdout, result.stderr)
    return result


def run_as(user: str, cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess[str]:
    return run_command(["sudo", "-u", user, *cmd], check=check, **kwargs)


def sql_literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def sql_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def psql_query(sql: str) -> List[str]:
    """Run ``sql`` as the ``postgres`` superuser and return the result rows."""

    result = run_as("postgres", ["psql", "-tAc", sql])
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def psql_execute(sql: str, check: bool = True) -> subprocess.CompletedProcess[str]:
    # Statements travel on stdin so that passwords never show up in ``ps``.
    return run_as("postgres", ["psql", "-v", "ON_ERROR_STOP=1", "-q"], check=check, input=sql)


def role_exists(name: str) -> bool:
    return psql_query(f"SELECT 1 FROM pg_roles WHERE rolname={sql_literal(name)}") == ["1"]


def account_exists(name: str) -> bool:
    try:
        pwd.getpwnam(name)
    except KeyError:
        return False
    return True


def _chown(path: pathlib.Path, owner: str, group: str) -> None:
    shutil.chown(path, user=owner, group=group)


def generate_secret(num_bytes: int = 16) -> str:
    """Return ``num_bytes`` of random data, base64 encoded."""

    return base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")


def compute_workers(cpu_count: int) -> int:
    """Odoo's recommended worker count for ``cpu_count`` cores."""

    if cpu_count < 1:
        raise ValueError(f"CPU count must be a positive integer, got {cpu_count}")
    return 2 * cpu_count + 1


@dataclasses.dataclass(frozen=True)
class PathSettings:
    """Filesystem locations touched by the provisioner."""

    home_root: pathlib.Path = pathlib.Path("/opt")
    config_dir: pathlib.Path = pathlib.Path("/etc")
    log_root: pathlib.Path = pathlib.Path("/var/log")
    systemd_dir: pathlib.Path = pathlib.Path("/etc/systemd/system")
    nginx_available: pathlib.Path = pathlib.Path("/etc/nginx/sites-available")
    nginx_enabled: pathlib.Path = pathlib.Path("/etc/nginx/sites-enabled")
    letsencrypt_dir: pathlib.Path = pathlib.Path("/etc/letsencrypt")
    acme_webroot: pathlib.Path = pathlib.Path("/var/www/html")


@dataclasses.dataclass(frozen=True)
class OdooSettings:
    user: str = DEFAULT_ODOO_USER
    version: str = DEFAULT_ODOO_VERSION
    community_repo: str = COMMUNITY_REPO
    enterprise_repo: str = ""
    custom_addons_repo: str = ""


@dataclasses.dataclass(frozen=True)
class ProxySettings:
    hostname: str = ""
    admin_email: str = ""
    # ``None`` means "ask the operator".
    tls: Optional[bool] = None


@dataclasses.dataclass(frozen=True)
class PackageSettings:
    install: Tuple[str, ...] = DEFAULT_PACKAGES
    pdf_renderer_package: str = PDF_RENDERER_PACKAGE
    pdf_renderer_url: str = PDF_RENDERER_URL


def _table(data: Mapping[str, object], name: str) -> Mapping[str, object]:
    section = data.get(name, {})
    if not isinstance(section, Mapping):
        raise TypeError(f"[{name}] section must be a table in the configuration")
    return section


def _string(section: Mapping[str, object], key: str, default: str, prefix: str) -> str:
    value = section.get(key, default)
    if not isinstance(value, str):
        raise TypeError(f"{prefix}.{key} must be a string")
    return value.strip()


@dataclasses.dataclass(frozen=True)
class SetupConfig:
    """Static defaults loaded from a TOML file."""

    odoo: OdooSettings = dataclasses.field(default_factory=OdooSettings)
    proxy: ProxySettings = dataclasses.field(default_factory=ProxySettings)
    packages: PackageSettings = dataclasses.field(default_factory=PackageSettings)
    paths: PathSettings = dataclasses.field(default_factory=PathSettings)

    @property
    def home(self) -> pathlib.Path:
        return self.paths.home_root / self.odoo.user

    @property
    def config_path(self) -> pathlib.Path:
        return self.paths.config_dir / f"{self.odoo.user}.conf"

    @property
    def log_dir(self) -> pathlib.Path:
        return self.paths.log_root / self.odoo.user

    @property
    def service_name(self) -> str:
        return f"{self.odoo.user}.service"

    @property
    def unit_path(self) -> pathlib.Path:
        return self.paths.systemd_dir / self.service_name

    @classmethod
    def from_mapping(cls, data: Mapping[str, object]) -> "SetupConfig":
        odoo_section = _table(data, "odoo")
        defaults = OdooSettings()
        odoo = OdooSettings(
            user=_string(odoo_section, "user", defaults.user, "odoo"),
            version=_string(odoo_section, "version", defaults.version, "odoo"),
            community_repo=_string(odoo_section, "community_repo", defaults.community_repo, "odoo"),
            enterprise_repo=_string(odoo_section, "enterprise_repo", "", "odoo"),
            custom_addons_repo=_string(odoo_section, "custom_addons_repo", "", "odoo"),
        )
        if not odoo.user:
            raise TypeError("odoo.user must not be empty")

        proxy_section = _table(data, "proxy")
        tls = proxy_section.get("tls")
        if tls is not None and not isinstance(tls, bool):
            raise TypeError("proxy.tls must be a boolean if provided")
        proxy = ProxySettings(
            hostname=_string(proxy_section, "hostname", "", "proxy"),
            admin_email=_string(proxy_section, "admin_email", "", "proxy"),
            tls=tls,
        )

        packages_section = _table(data, "packages")
        package_list = packages_section.get("install", list(DEFAULT_PACKAGES))
        if isinstance(package_list, (str, bytes)) or not isinstance(package_list, Iterable):
            raise TypeError("packages.install must be a list of package names")
        packages = PackageSettings(
            install=tuple(str(item) for item in package_list),
            pdf_renderer_package=_string(
                packages_section, "pdf_renderer_package", PDF_RENDERER_PACKAGE, "packages"
            ),
            pdf_renderer_url=_string(packages_section, "pdf_renderer_url", PDF_RENDERER_URL, "packages"),
        )

        paths_section = _table(data, "paths")
        path_values = {}
        for field in dataclasses.fields(PathSettings):
            if field.name not in paths_section:
                continue
            value = paths_section[field.name]
            if not isinstance(value, str):
                raise TypeError(f"paths.{field.name} must be a string")
            path_values[field.name] = pathlib.Path(value)
        unknown = set(paths_section) - {field.name for field in dataclasses.fields(PathSettings)}
        if unknown:
            raise KeyError(f"Unknown path setting: {', '.join(sorted(unknown))}")

        return cls(odoo=odoo, proxy=proxy, packages=packages, paths=PathSettings(**path_values))


DEFAULT_CONFIG_PATH = pathlib.Path(__file__).with_name("odoo_setup.toml")


def load_setup_config(path: Optional[pathlib.Path] = None) -> SetupConfig:
    """Load a :class:`SetupConfig` from the provided TOML file.

    Without an explicit ``path`` the bundled ``odoo_setup.toml`` is used when it
    exists and the built-in defaults otherwise.
    """

    config_path = path or DEFAULT_CONFIG_PATH
    if path is None and not config_path.exists():
        LOG.debug("No defaults file at %s; using built-in defaults", config_path)
        return SetupConfig()
    try:
        with config_path.open("rb") as fh:
            data = tomllib.load(fh)
        return SetupConfig.from_mapping(data)
    except FileNotFoundError as exc:
        raise ConfigurationError(f"Configuration file not found: {config_path}") from exc
    except (TypeError, KeyError, tomllib.TOMLDecodeError) as exc:
        raise ConfigurationError(f"Invalid configuration in {config_path}: {exc}") from exc


@dataclasses.dataclass(frozen=True)
class ProvisioningConfig:
    """Fully resolved inputs shared by every provisioning step."""

    user: str
    home: pathlib.Path
    config_path: pathlib.Path
    log_dir: pathlib.Path
    version: str
    cpu_count: int
    workers: int
    community_repo: str
    enterprise_repo: str
    custom_addons_repo: str
    hostname: str
    admin_email: str
    tls: bool
    db_password: str = dataclasses.field(repr=False)
    admin_password: str = dataclasses.field(repr=False)
    paths: PathSettings = dataclasses.field(default_factory=PathSettings)
    http_port: int = HTTP_PORT
    realtime_port: int = REALTIME_PORT

    def __post_init__(self) -> None:
        required = {
            "user": self.user,
            "home": str(self.home),
            "config_path": str(self.config_path),
            "version": self.version,
            "community_repo": self.community_repo,
            "enterprise_repo": self.enterprise_repo,
            "hostname": self.hostname,
            "db_password": self.db_password,
            "admin_password": self.admin_password,
        }
        for field, value in required.items():
            if not value or value == ".":
                raise MissingInputError(field)
        if self.tls and not self.admin_email:
            raise MissingInputError("admin_email", "An email address is required for the TLS certificate.")
        if self.workers != compute_workers(self.cpu_count):
            raise ValueError(
                f"workers must be 2 * cpu_count + 1 ({compute_workers(self.cpu_count)}), got {self.workers}"
            )

    @property
    def community_dir(self) -> pathlib.Path:
        return self.home / "odoo"

    @property
    def enterprise_dir(self) -> pathlib.Path:
        return self.home / "enterprise"

    @property
    def custom_addons_dir(self) -> pathlib.Path:
        return self.home / "custom_addons"

    @property
    def venv_dir(self) -> pathlib.Path:
        return self.home / "venv"

    @property
    def log_file(self) -> pathlib.Path:
        return self.log_dir / "odoo.log"

    @property
    def service_name(self) -> str:
        return f"{self.user}.service"

    @property
    def unit_path(self) -> pathlib.Path:
        return self.paths.systemd_dir / self.service_name

    @property
    def vhost_name(self) -> str:
        return self.hostname if self.tls else self.user

    @property
    def url(self) -> str:
        scheme = "https" if self.tls else "http"
        return f"{scheme}://{self.hostname}"


def ask(prompt: Prompt, question: str) -> str:
    try:
        return prompt(question).strip()
    except EOFError:
        return ""


def ask_yes_no(prompt: Prompt, question: str) -> bool:
    return ask(prompt, question).lower() == "yes"


def resolve_config(
    setup: SetupConfig,
    prompt: Prompt = input,
    cpu_count: Optional[int] = None,
    secret_factory: Callable[[], str] = generate_secret,
) -> ProvisioningConfig:
    """Fill the gaps in ``setup`` interactively and freeze the result.

    Raises :class:`MissingInputError` when a required value is still empty.
    """

    hostname = setup.proxy.hostname or ask(prompt, "Enter the domain name or IP address for Odoo: ")
    if not hostname:
        raise MissingInputError("hostname", "Domain name or IP address is required.")

    tls = setup.proxy.tls
    if tls is None:
        tls = ask_yes_no(prompt, f"Obtain a Let's Encrypt certificate and serve {hostname} over HTTPS? (yes/no): ")

    admin_email = setup.proxy.admin_email
    if tls and not admin_email:
        admin_email = ask(prompt, "Enter your email for the SSL certificate: ")
        if not admin_email:
            raise MissingInputError("admin_email", "Email is required for the SSL certificate.")

    enterprise_repo = setup.odoo.enterprise_repo or ask(prompt, "Enter Odoo Enterprise Git URL: ")
    if not enterprise_repo:
        raise MissingInputError("enterprise_repo", "Enterprise repository URL is required.")

    custom_addons_repo = setup.odoo.custom_addons_repo or ask(
        prompt, "Enter Custom Addons Git URL (or press Enter to skip): "
    )

    cores = cpu_count or os.cpu_count() or 1
    return ProvisioningConfig(
        user=setup.odoo.user,
        home=setup.home,
        config_path=setup.config_path,
        log_dir=setup.log_dir,
        version=setup.odoo.version,
        cpu_count=cores,
        workers=compute_workers(cores),
        community_repo=setup.odoo.community_repo,
        enterprise_repo=enterprise_repo,
        custom_addons_repo=custom_addons_repo,
        hostname=hostname,
        admin_email=admin_email,
        tls=tls,
        db_password=secret_factory(),
        admin_password=secret_factory(),
        paths=setup.paths,
    )


class ArtifactWriter:
    """Writes rendered files so that readers never observe a partial file."""

    def write_file(
        self,
        path: pathlib.Path,
        content: str,
        *,
        mode: int,
        owner: str = "root",
        group: str = "root",
    ) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        tmp_path = pathlib.Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            os.chmod(tmp_path, mode)
            _chown(tmp_path, owner, group)
            os.replace(tmp_path, path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise
        LOG.info("Wrote %s", path)


class AptManager:
    """Thin wrapper around ``apt-get`` and ``dpkg-query``."""

    executable = "apt-get"
    query_tool = "dpkg-query"

    def _env(self) -> Mapping[str, str]:
        return {**os.environ, "DEBIAN_FRONTEND": "noninteractive"}

    def is_installed(self, package: str) -> bool:
        try:
            result = subprocess.run(
                [self.query_tool, "-W", "-f=${Status}", package],
                capture_output=True,
                text=True,
                check=False,
            )
        except OSError as exc:
            LOG.warning("Failed to determine installation status for %s: %s", package, exc)
            return False
        if result.returncode != 0:
            return False
        return "install ok installed" in (result.stdout or "")

    def missing(self, packages: Iterable[str]) -> List[str]:
        missing: List[str] = []
        for pkg in sorted(set(packages)):
            if self.is_installed(pkg):
                LOG.info("Package '%s' is already installed; skipping.", pkg)
            else:
                missing.append(pkg)
        return missing

    def install(self, packages: Iterable[str]) -> None:
        self.install_missing(self.missing(packages))

    def install_missing(self, missing: Sequence[str]) -> None:
        if not missing:
            return
        run_command([self.executable, "update"], env=self._env())
        run_command([self.executable, "upgrade", "-y"], env=self._env())
        run_command([self.executable, "install", "-y", *missing], env=self._env())

    def install_file(self, deb: pathlib.Path) -> None:
        run_command([self.executable, "install", "-y", str(deb)], env=self._env())

    def purge(self, packages: Sequence[str]) -> None:
        run_command([self.executable, "remove", "--purge", "-y", *packages], env=self._env())

    def autoremove(self) -> None:
        run_command([self.executable, "autoremove", "-y"], check=False, env=self._env())
        run_command([self.executable, "autoclean", "-y"], check=False, env=self._env())


class Step(ABC):
    """A named unit of provisioning or teardown work."""

    label = ""

    def is_satisfied(self) -> bool:
        """Return ``True`` when the host already is in the desired state."""
        return False

    @abstractmethod
    def apply(self) -> Optional[str]:
        """Perform the work.  May return a message to report on success."""


@dataclasses.dataclass(frozen=True)
class StepResult:
    label: str
    status: str
    detail: str = ""


class Pipeline:
    """Run steps in order.

    The forward pipeline stops at the first exception.  With
    ``best_effort=True`` failures are logged as warnings and the remaining
    steps still run.
    """

    def __init__(self, steps: Sequence[Step], best_effort: bool = False) -> None:
        self.steps = list(steps)
        self.best_effort = best_effort

    def run(self) -> List[StepResult]:
        return [self._run_step(step) for step in self.steps]

    def _run_step(self, step: Step) -> StepResult:
        LOG.info("%s...", step.label)
        try:
            if step.is_satisfied():
                raise AlreadySatisfied("already satisfied")
            message = step.apply()
        except AlreadySatisfied as exc:
            LOG.info("%s: %s; skipping.", step.label, exc)
            return StepResult(step.label, "skipped", str(exc))
        except StepDeclined as exc:
            LOG.info("%s: %s", step.label, exc)
            return StepResult(step.label, "declined", str(exc))
        except Exception as exc:
            if not self.best_effort:
                raise
            LOG.warning("%s failed: %s", step.label, exc)
            return StepResult(step.label, "failed", str(exc))
        LOG.info("%s", message or f"{step.label}: done.")
        return StepResult(step.label, "applied", message or "")


class InstallSystemPackages(Step):
    label = "Installing system dependencies"

    def __init__(self, apt: AptManager, packages: Sequence[str]) -> None:
        self.apt = apt
        self.packages = packages
        self.missing: Optional[List[str]] = None

    def is_satisfied(self) -> bool:
        self.missing = self.apt.missing(self.packages)
        return not self.missing

    def apply(self) -> Optional[str]:
        if self.missing is None:
            self.missing = self.apt.missing(self.packages)
        self.apt.install_missing(self.missing)
        return "System dependencies installed."


class InstallPdfRenderer(Step):
    label = "Installing wkhtmltopdf"

    def __init__(self, apt: AptManager, package: str, url: str) -> None:
        self.apt = apt
        self.package = package
        self.url = url

    def is_satisfied(self) -> bool:
        return self.apt.is_installed(self.package)

    def apply(self) -> Optional[str]:
        filename = posixpath.basename(urlparse(self.url).path) or f"{self.package}.deb"
        with tempfile.TemporaryDirectory(prefix="odoo-setup-") as tmp:
            deb = pathlib.Path(tmp) / filename
            run_command(["wget", "-qO", str(deb), self.url])
            self.apt.install_file(deb)
        return "wkhtmltopdf installed."


class EnsureDatabaseRole(Step):
    def __init__(self, config: ProvisioningConfig) -> None:
        self.config = config
        self.label = f"Setting up PostgreSQL role '{config.user}'"

    def is_satisfied(self) -> bool:
        return role_exists(self.config.user)

    def apply(self) -> Optional[str]:
        run_as("postgres", ["createuser", "--createdb", self.config.user])
        return f"PostgreSQL role '{self.config.user}' created."


class SetDatabasePassword(Step):
    """Store the freshly generated password on the role.

    Runs on every pass, matching the configuration file which is always
    re-rendered with a new password.
    """

    label = "Setting the PostgreSQL password"

    def __init__(self, config: ProvisioningConfig) -> None:
        self.config = config

    def apply(self) -> Optional[str]:
        psql_execute(
            f"ALTER ROLE {sql_identifier(self.config.user)} "
            f"WITH PASSWORD {sql_literal(self.config.db_password)};\n"
        )
        return f"Password set for PostgreSQL role '{self.config.user}'."


class EnsureSystemAccount(Step):
    def __init__(self, config: ProvisioningConfig) -> None:
        self.config = config
        self.label = f"Creating system user '{config.user}'"

    def is_satisfied(self) -> bool:
        return account_exists(self.config.user)

    def apply(self) -> Optional[str]:
        run_command(
            ["useradd", "-m", "-d", str(self.config.home), "-U", "-r", "-s", "/bin/bash", self.config.user]
        )
        return f"System user '{self.config.user}' created."


class FetchSources(Step):
    label = "Cloning Odoo repositories and setting up the Python environment"

    def __init__(self, config: ProvisioningConfig) -> None:
        self.config = config

    def _trees(self) -> List[Tuple[pathlib.Path, str, Optional[str]]]:
        config = self.config
        return [
            (config.community_dir, config.community_repo, config.version),
            (config.enterprise_dir, config.enterprise_repo, config.version),
            (config.custom_addons_dir, config.custom_addons_repo, None),
        ]

    def _python(self) -> pathlib.Path:
        return self.config.venv_dir / "bin" / "python3"

    def _marker(self) -> pathlib.Path:
        # Touched only after both pip installs succeed.
        return self.config.venv_dir / REQUIREMENTS_MARKER

    def is_satisfied(self) -> bool:
        return (
            all(path.is_dir() for path, _, _ in self._trees())
            and self._python().exists()
            and self._marker().exists()
        )

    def apply(self) -> Optional[str]:
        user = self.config.user
        changed = False
        for path, url, branch in self._trees():
            if path.is_dir():
                LOG.info("%s exists; skipping clone.", path)
                continue
            if not url:
                run_as(user, ["mkdir", "-p", str(path)])
                continue
            cmd = ["git", "clone", "--depth", "1"]
            if branch:
                cmd.extend(["--branch", branch])
            cmd.extend([url, str(path)])
            run_as(user, cmd, cwd=self.config.home)
            changed = True

        if not self._python().exists():
            run_as(user, ["python3", "-m", "venv", str(self.config.venv_dir)], cwd=self.config.home)
            changed = True

        if changed or not self._marker().exists():
            pip = str(self.config.venv_dir / "bin" / "pip")
            requirements = str(self.config.community_dir / "requirements.txt")
            run_as(user, [pip, "install", "wheel"], cwd=self.config.home)
            run_as(user, [pip, "install", "-r", requirements], cwd=self.config.home)
            run_as(user, ["touch", str(self._marker())])
        return "Odoo source code and Python environment are ready."


class RenderOdooConfig(Step):
    label = "Creating Odoo configuration file"

    def __init__(self, config: ProvisioningConfig, writer: ArtifactWriter) -> None:
        self.config = config
        self.writer = writer

    def apply(self) -> Optional[str]:
        config = self.config
        config.log_dir.mkdir(parents=True, exist_ok=True)
        _chown(config.log_dir, config.user, config.user)
        if config.log_file.exists():
            _chown(config.log_file, config.user, config.user)
        self.writer.write_file(
            config.config_path,
            odoo_templates.render_odoo_config(config),
            mode=0o640,
            owner=config.user,
            group=config.user,
        )
        return f"Odoo configuration file created with {config.workers} workers."


class InstallServiceUnit(Step):
    label = "Creating systemd service for Odoo"

    def __init__(self, config: ProvisioningConfig, writer: ArtifactWriter) -> None:
        self.config = config
        self.writer = writer

    def apply(self) -> Optional[str]:
        self.writer.write_file(
            self.config.unit_path, odoo_templates.render_service_unit(self.config), mode=0o644
        )
        run_command(["systemctl", "daemon-reload"])
        run_command(["systemctl", "enable", self.config.service_name])
        # Restarted on every run so that a re-rendered configuration takes effect.
        run_command(["systemctl", "restart", self.config.service_name])
        return f"Service {self.config.service_name} enabled and (re)started."


class ConfigureReverseProxy(Step):
    def __init__(self, config: ProvisioningConfig, writer: ArtifactWriter) -> None:
        self.config = config
        self.writer = writer
        variant = "HTTPS" if config.tls else "HTTP"
        self.label = f"Configuring nginx ({variant}) for {config.hostname}"

    def _certificate(self) -> pathlib.Path:
        return odoo_templates.certificate_dir(self.config) / "fullchain.pem"

    def _install_site(self, content: str) -> None:
        paths = self.config.paths
        available = paths.nginx_available / self.config.vhost_name
        enabled = paths.nginx_enabled / self.config.vhost_name
        self.writer.write_file(available, content, mode=0o644)
        paths.nginx_enabled.mkdir(parents=True, exist_ok=True)
        if enabled.is_symlink() or enabled.exists():
            enabled.unlink()
        enabled.symlink_to(available)
        default_site = paths.nginx_enabled / "default"
        if default_site.is_symlink() or default_site.exists():
            default_site.unlink()
            LOG.info("Disabled the default nginx site")

    def _reload(self) -> None:
        run_command(["nginx", "-t"])
        run_command(["systemctl", "reload-or-restart", "nginx"])

    def _issue_certificate(self) -> None:
        webroot = self.config.paths.acme_webroot
        webroot.mkdir(parents=True, exist_ok=True)
        run_command(
            [
                "certbot",
                "certonly",
                "--webroot",
                "-w",
                str(webroot),
                "-d",
                self.config.hostname,
                "--email",
                self.config.admin_email,
                "--agree-tos",
                "--non-interactive",
            ]
        )
        LOG.info("Certificate issued for %s", self.config.hostname)

    def apply(self) -> Optional[str]:
        if self.config.tls:
            if self._certificate().exists():
                LOG.info("Certificate for %s already present", self.config.hostname)
            else:
                self._install_site(odoo_templates.render_acme_vhost(self.config))
                self._reload()
                self._issue_certificate()
        self._install_site(odoo_templates.render_vhost(self.config))
        self._reload()
        return f"nginx configured for {self.config.url}"


class ConfigureFirewall(Step):
    label = "Configuring firewall"

    def __init__(self, config: ProvisioningConfig) -> None:
        self.config = config

    def apply(self) -> Optional[str]:
        profile = "Nginx Full" if self.config.tls else "Nginx HTTP"
        run_command(["ufw", "allow", "OpenSSH"])
        run_command(["ufw", "allow", profile])
        run_command(["ufw", "--force", "enable"])
        return "Firewall enabled."


class PrintSummary(Step):
    label = "Printing connection details"

    def __init__(self, config: ProvisioningConfig, out: Optional[TextIO] = None) -> None:
        self.config = config
        self.out = out

    def apply(self) -> Optional[str]:
        config = self.config
        out = self.out or sys.stdout
        # Printed, never logged: a log file must not hold the secrets.
        lines = [
            "",
            "==================== Odoo Instance Details ====================",
            f"URL:                  {config.url}",
            "Real-time Protocol:   WebSocket (with Longpolling fallback)",
            f"CPU Cores Detected:   {config.cpu_count}",
            f"Odoo Workers Set:     {config.workers}",
            f"Odoo Master Admin PW: {config.admin_password}",
            f"PostgreSQL Password:  {config.db_password}",
            "",
            f"To restart Odoo: 'sudo systemctl restart {config.user}'",
            "===============================================================",
            "",
        ]
        print("\n".join(lines), file=out)
        LOG.warning("IMPORTANT: Save the generated passwords securely!")
        return f"Odoo {config.version} provisioning is complete!"


class Provisioner:
    """Apply the forward pipeline to the host."""

    def __init__(
        self,
        config: ProvisioningConfig,
        packages: Optional[PackageSettings] = None,
        writer: Optional[ArtifactWriter] = None,
        apt: Optional[AptManager] = None,
        out: Optional[TextIO] = None,
    ) -> None:
        self.config = config
        self.packages = packages or PackageSettings()
        self.writer = writer or ArtifactWriter()
        self.apt = apt or AptManager()
        self.out = out

    def steps(self) -> List[Step]:
        config = self.config
        return [
            InstallSystemPackages(self.apt, self.packages.install),
            InstallPdfRenderer(self.apt, self.packages.pdf_renderer_package, self.packages.pdf_renderer_url),
            EnsureDatabaseRole(config),
            SetDatabasePassword(config),
            EnsureSystemAccount(config),
            FetchSources(config),
            RenderOdooConfig(config, self.writer),
            InstallServiceUnit(config, self.writer),
            ConfigureReverseProxy(config, self.writer),
            ConfigureFirewall(config),
            PrintSummary(config, self.out),
        ]

    def run(self) -> List[StepResult]:
        return Pipeline(self.steps()).run()


def build_arg_parser(description: Optional[str] = None) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=description or __doc__,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=pathlib.Path,
        help=f"Path to a TOML defaults file (default: {DEFAULT_CONFIG_PATH.name} next to this script).",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Show the executed commands and their output.",
    )
    parser.add_argument(
        "--log-file",
        type=pathlib.Path,
        help="Optional path to write logs in addition to the console output.",
    )
    return parser


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    return build_arg_parser().parse_args(argv)


def configure_logging(verbosity: int, log_file: Optional[pathlib.Path]) -> None:
    level = logging.DEBUG if verbosity >= 1 else logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter("%(levelname)s: %(message)s")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s: %(message)s"))
        root.addHandler(file_handler)


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose, args.log_file)

    try:
        LOG.info("Starting pre-run checks...")
        ensure_root()
        setup = load_setup_config(args.config)
        config = resolve_config(setup, input)
        LOG.info("Pre-run checks passed.")
        Provisioner(config, setup.packages).run()
    except ProvisioningError as exc:
        LOG.error("%s", exc)
        return 1
    except KeyboardInterrupt:
        LOG.error("Interrupted; the host may be partially provisioned.")
        return 130
    return 0


if __name__ == "__main__":
    sys.exit(main())
