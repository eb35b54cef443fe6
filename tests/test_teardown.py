import io
import os
import pathlib
import sys
import time

import pytest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

import odoo_setup
import odoo_teardown
from conftest import make_setup, resolve, scripted


def always(answer):
    return lambda question: answer


def deprovisioner(setup, tmp_path, prompt, out):
    return odoo_teardown.Deprovisioner(
        setup,
        prompt=prompt,
        sleep=lambda seconds: None,
        out=out,
        temp_dirs=[tmp_path / "tmp"],
    )


@pytest.mark.parametrize(
    "answers, expected",
    [
        (("yes", "DELETE"), True),
        (("YES", "DELETE"), True),
        (("yes", "delete"), False),
        (("yes", "DELETE "), False),
        (("yes", "REMOVE"), False),
        (("no", "DELETE"), False),
        (("", "DELETE"), False),
    ],
)
def test_confirmation_gate(host, tmp_path, answers, expected):
    out = io.StringIO()
    assert odoo_teardown.confirm_teardown(make_setup(tmp_path), scripted(*answers), out) is expected
    assert "THIS ACTION CANNOT BE UNDONE!" in out.getvalue()
    assert host.commands == []


def test_confirmation_gate_treats_end_of_input_as_refusal(tmp_path):
    def closed(question):
        raise EOFError

    assert odoo_teardown.confirm_teardown(make_setup(tmp_path), closed, io.StringIO()) is False


def test_cancelled_teardown_touches_nothing(host, monkeypatch, tmp_path):
    monkeypatch.setattr(odoo_teardown, "configure_logging", lambda verbosity, log_file: None)
    answers = iter(["yes", "delete"])
    monkeypatch.setattr(odoo_teardown, "ensure_root", lambda: None)
    monkeypatch.setattr("builtins.input", lambda question: next(answers))

    assert odoo_teardown.main([]) == 0
    assert host.commands == []


def test_teardown_requires_root(host, monkeypatch):
    monkeypatch.setattr(odoo_teardown, "configure_logging", lambda verbosity, log_file: None)
    monkeypatch.setattr(odoo_setup.os, "geteuid", lambda: 1000)
    assert odoo_teardown.main([]) == 1
    assert host.commands == []


def test_teardown_reverses_provisioning(host, tmp_path):
    setup = make_setup(tmp_path, hostname="198.51.100.7", tls=False)
    odoo_setup.Provisioner(resolve(setup), setup.packages, out=io.StringIO()).run()
    assert setup.home.is_dir()

    out = io.StringIO()
    results = deprovisioner(setup, tmp_path, always("no"), out).run()

    assert not odoo_setup.role_exists("odoo18e")
    assert not odoo_setup.account_exists("odoo18e")
    assert not setup.home.exists()
    assert not setup.unit_path.exists()
    assert not setup.config_path.exists()
    assert not setup.log_dir.exists()
    assert not (setup.paths.nginx_available / "odoo18e").exists()
    assert not (setup.paths.nginx_enabled / "odoo18e").is_symlink()
    assert "odoo18e.service" not in host.active_services

    statuses = [result.status for result in results]
    assert statuses[:7] == ["applied"] * 7
    assert statuses[7:10] == ["declined"] * 3
    summary = out.getvalue()
    assert "The following items have been removed:" in summary
    assert "  + PostgreSQL role and databases" in summary
    assert "  - SSL certificates (Skipping SSL certificate removal.)" in summary


def test_teardown_continues_after_failure(host, tmp_path, caplog):
    setup = make_setup(tmp_path, hostname="198.51.100.7", tls=False)
    odoo_setup.Provisioner(resolve(setup), setup.packages, out=io.StringIO()).run()
    host.fail["psql"] = 2
    caplog.set_level("INFO")

    out = io.StringIO()
    results = deprovisioner(setup, tmp_path, always("no"), out).run()

    status = {result.label: result.status for result in results}
    assert status["Removing PostgreSQL role 'odoo18e' and its databases"] == "failed"
    assert status["Removing system user 'odoo18e' and home directory"] == "applied"
    assert not setup.home.exists()
    assert "Failed (check manually):" in out.getvalue()
    assert any(record.levelname == "WARNING" for record in caplog.records)


def test_summary_does_not_claim_untouched_items(host, tmp_path):
    out = io.StringIO()
    results = deprovisioner(make_setup(tmp_path), tmp_path, always("no"), out).run()

    assert all(result.status in ("skipped", "declined") for result in results)
    summary = out.getvalue()
    assert "have been removed" not in summary
    assert "Odoo user and home directory (system user 'odoo18e' does not exist)" in summary


def test_other_databases_need_their_own_confirmation(host, tmp_path):
    host.roles.add("odoo18e")
    host.databases.update({"prod": "odoo18e", "blog": "wordpress"})
    out = io.StringIO()

    step = odoo_teardown.DropDatabases(make_setup(tmp_path), scripted("no"), out)
    step.apply()

    assert "prod" not in host.databases
    assert "blog" in host.databases
    assert "odoo18e" not in host.roles
    assert "  blog" in out.getvalue()


def test_other_databases_dropped_when_confirmed(host, tmp_path):
    host.roles.add("odoo18e")
    host.databases.update({"prod": "odoo18e", "blog": "wordpress"})

    step = odoo_teardown.DropDatabases(make_setup(tmp_path), scripted("yes"), io.StringIO())
    message = step.apply()

    assert host.databases == {}
    assert step.dropped == ["prod", "blog"]
    assert "prod, blog" in message


def test_database_step_skipped_without_postgresql(host, tmp_path, monkeypatch):
    monkeypatch.setattr(odoo_teardown.shutil, "which", lambda name: None)
    step = odoo_teardown.DropDatabases(make_setup(tmp_path), always("yes"), io.StringIO())
    with pytest.raises(odoo_setup.AlreadySatisfied):
        step.apply()
    assert host.commands == []


def test_proxy_sites_found_by_markers(host, tmp_path):
    setup = make_setup(tmp_path)
    available = setup.paths.nginx_available
    enabled = setup.paths.nginx_enabled
    available.mkdir(parents=True)
    enabled.mkdir(parents=True)
    (available / "erp.example.org").write_text("proxy_pass http://127.0.0.1:8069;\n", encoding="utf-8")
    (available / "blog").write_text("root /var/www/blog;\n", encoding="utf-8")
    (available / "default").write_text("listen 80 default_server;\n", encoding="utf-8")
    (enabled / "erp.example.org").symlink_to(available / "erp.example.org")
    (enabled / "blog").symlink_to(available / "blog")

    step = odoo_teardown.RemoveProxyConfig(setup)
    assert step.find_sites() == [available / "erp.example.org"]
    step.apply()

    assert not (available / "erp.example.org").exists()
    assert not (enabled / "erp.example.org").is_symlink()
    assert (available / "blog").exists()
    assert (enabled / "blog").is_symlink()
    assert (enabled / "default").resolve() == (available / "default").resolve()
    assert ["systemctl", "reload", "nginx"] in host.commands


def test_certificate_removal_for_single_domain(host, tmp_path):
    setup = make_setup(tmp_path)
    (setup.paths.letsencrypt_dir / "live" / "example.org").mkdir(parents=True)

    step = odoo_teardown.RemoveCertificates(setup, scripted("yes", "example.org"), io.StringIO())
    step.apply()

    assert ["certbot", "delete", "--cert-name", "example.org", "--non-interactive"] in host.commands


def test_certificate_removal_all(host, tmp_path):
    setup = make_setup(tmp_path)
    (setup.paths.letsencrypt_dir / "live" / "example.org").mkdir(parents=True)

    step = odoo_teardown.RemoveCertificates(setup, scripted("yes", "all"), io.StringIO())
    step.apply()

    assert not setup.paths.letsencrypt_dir.exists()


def test_shared_packages_asked_one_by_one(host, tmp_path):
    host.packages.update({"wkhtmltox", "postgresql", "nginx", "certbot"})
    prompt = scripted("yes", "no", "no", "yes")

    step = odoo_teardown.RemoveSharedPackages(make_setup(tmp_path), prompt, odoo_setup.AptManager())
    message = step.apply()

    assert host.packages == {"postgresql", "nginx"}
    assert message == "Removed packages: wkhtmltopdf, certbot."
    assert len(prompt.questions) == 4
    assert ["apt-get", "autoremove", "-y"] in host.commands


def test_summary_lists_kept_shared_packages(host, tmp_path):
    host.packages.update({"wkhtmltox", "postgresql", "nginx", "certbot"})
    step = odoo_teardown.RemoveSharedPackages(
        make_setup(tmp_path), scripted("yes", "no", "no", "no"), odoo_setup.AptManager()
    )
    out = io.StringIO()

    results = odoo_setup.Pipeline([step], best_effort=True).run()
    odoo_teardown.print_summary([step], results, out)

    summary = out.getvalue()
    assert "  + shared packages: wkhtmltopdf" in summary
    assert "  + shared packages\n" not in summary
    assert "  - PostgreSQL (kept)" in summary
    assert "  - nginx (kept)" in summary
    assert "  - certbot (kept)" in summary


def test_summary_reports_failed_package_removal(host, tmp_path):
    host.packages.update({"postgresql"})
    host.fail["apt-get"] = 100
    step = odoo_teardown.RemoveSharedPackages(
        make_setup(tmp_path), scripted("yes", "yes", "no", "no"), odoo_setup.AptManager()
    )
    out = io.StringIO()

    results = odoo_setup.Pipeline([step], best_effort=True).run()
    odoo_teardown.print_summary([step], results, out)

    assert "  - PostgreSQL (removal failed)" in out.getvalue()
    assert "have been removed" not in out.getvalue()


def test_account_removal_falls_back_when_userdel_fails(host, tmp_path):
    setup = make_setup(tmp_path)
    setup.home.mkdir(parents=True)
    host.accounts["odoo18e"] = setup.home
    host.fail["userdel"] = 1
    naps = []

    odoo_teardown.RemoveAccount(setup, sleep=naps.append).apply()

    assert naps == [2]
    assert not setup.home.exists()
    assert ["userdel", "odoo18e"] in host.commands
    assert ["groupdel", "odoo18e"] in host.commands


def test_stale_temporary_files_removed(tmp_path):
    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()
    old = time.time() - 2 * odoo_teardown.STALE_AFTER_SECONDS
    for name in ("odoo-old.log", "other-old.log"):
        (temp_dir / name).write_text("x", encoding="utf-8")
        os.utime(temp_dir / name, (old, old))
    (temp_dir / "odoo-fresh.log").write_text("x", encoding="utf-8")
    yesterday = time.time() - 30 * 60 * 60
    (temp_dir / "odoo-yesterday.log").write_text("x", encoding="utf-8")
    os.utime(temp_dir / "odoo-yesterday.log", (yesterday, yesterday))

    message = odoo_teardown.CleanTemporaryFiles([temp_dir]).apply()

    assert message == "Removed 1 stale temporary file(s)."
    assert sorted(path.name for path in temp_dir.iterdir()) == [
        "odoo-fresh.log",
        "odoo-yesterday.log",
        "other-old.log",
    ]
