import pathlib
import sys

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import odoo_setup
import odoo_teardown
from _fake_host import FakeHost

ENTERPRISE_REPO = "https://git.example.com/odoo/enterprise.git"


def make_setup(root: pathlib.Path, **proxy) -> odoo_setup.SetupConfig:
    paths = odoo_setup.PathSettings(
        home_root=root / "opt",
        config_dir=root / "etc",
        log_root=root / "var" / "log",
        systemd_dir=root / "etc" / "systemd" / "system",
        nginx_available=root / "etc" / "nginx" / "sites-available",
        nginx_enabled=root / "etc" / "nginx" / "sites-enabled",
        letsencrypt_dir=root / "etc" / "letsencrypt",
        acme_webroot=root / "var" / "www" / "html",
    )
    return odoo_setup.SetupConfig(
        odoo=odoo_setup.OdooSettings(enterprise_repo=ENTERPRISE_REPO),
        proxy=odoo_setup.ProxySettings(**proxy),
        paths=paths,
    )


def resolve(setup: odoo_setup.SetupConfig, cpu_count: int = 2) -> odoo_setup.ProvisioningConfig:
    return odoo_setup.resolve_config(setup, prompt=lambda question: "", cpu_count=cpu_count)


@pytest.fixture
def host(tmp_path, monkeypatch):
    fake = FakeHost(make_setup(tmp_path).paths)
    monkeypatch.setattr(odoo_setup.subprocess, "run", fake.run)
    monkeypatch.setattr(odoo_setup.pwd, "getpwnam", fake.getpwnam)
    monkeypatch.setattr(odoo_setup, "_chown", lambda path, owner, group: None)
    monkeypatch.setattr(odoo_teardown.shutil, "which", fake.which)
    return fake


def scripted(*answers):
    """Prompt stand-in returning ``answers`` in order and recording the questions."""

    replies = iter(answers)
    questions = []

    def prompt(question):
        questions.append(question)
        return next(replies)

    prompt.questions = questions
    return prompt
