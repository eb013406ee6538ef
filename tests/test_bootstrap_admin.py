"""Tests for seeding the admin principal."""

import sys
from pathlib import Path

from sessionauth.service.bootstrap import ensure_admin
from sessionauth.service.runtime import get_runtime

sys.path.insert(0, str(Path(__file__).resolve().parent.parent / "scripts"))

import bootstrap_admin  # noqa: E402


class TestEnsureAdmin:
    def test_creates_admin(self):
        runtime = get_runtime()

        result = ensure_admin(
            runtime.store,
            runtime.credentials,
            username="admin",
            password="first-secret",
            email="admin@example.com",
            full_name="Administrator",
        )

        assert result == {"username": "admin", "status": "created"}
        assert runtime.credentials.verify("admin", "first-secret").username == "admin"

    def test_updates_existing_admin(self):
        runtime = get_runtime()
        kwargs = dict(username="admin", email="admin@example.com", full_name="Administrator")
        ensure_admin(runtime.store, runtime.credentials, password="first-secret", **kwargs)

        result = ensure_admin(
            runtime.store,
            runtime.credentials,
            username="admin",
            password="second-secret",
            email="ops@example.com",
            full_name="Ops",
        )

        assert result["status"] == "updated"
        principal = runtime.store.get_principal("admin")
        assert principal.email == "ops@example.com"
        assert principal.full_name == "Ops"
        assert runtime.credentials.verify("admin", "second-secret").username == "admin"
        assert runtime.store.count_principals() == 1

    def test_dry_run_writes_nothing(self):
        runtime = get_runtime()

        result = ensure_admin(
            runtime.store,
            runtime.credentials,
            username="admin",
            password="pw",
            email="admin@example.com",
            dry_run=True,
        )

        assert result["status"] == "dry_run"
        assert runtime.store.count_principals() == 0


class TestBootstrapScript:
    def test_missing_password_fails(self, monkeypatch, capsys):
        monkeypatch.delenv("ADMIN_PASSWORD", raising=False)

        assert bootstrap_admin.main(["--email", "admin@example.com"]) == 1
        assert "ADMIN_PASSWORD" in capsys.readouterr().out

    def test_creates_admin_via_cli(self, capsys):
        code = bootstrap_admin.main(
            ["--username", "root", "--password", "pw", "--email", "root@example.com"]
        )

        assert code == 0
        assert "Created admin principal: root" in capsys.readouterr().out
        assert get_runtime().store.get_principal("root") is not None


class TestAdminEmailNormalization:
    def test_seed_email_matches_registration_form(self):
        runtime = get_runtime()

        ensure_admin(
            runtime.store,
            runtime.credentials,
            username="admin",
            password="pw",
            email="  Admin@Example.COM ",
        )

        assert runtime.store.get_principal("admin").email == "admin@example.com"
        assert runtime.store.get_principal_by_email("admin@example.com") is not None
