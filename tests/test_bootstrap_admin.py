import importlib.util
from pathlib import Path

import pytest

from siteguard.storage.models import Role

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"


@pytest.fixture
def script(monkeypatch):
    # main() only setdefaults these
    monkeypatch.setenv("PERSIST_MEMORY_STORE", "false")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    spec = importlib.util.spec_from_file_location("bootstrap_admin", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_creates_an_admin(script, runtime):
    result = script.bootstrap_admin("root@example.com", "correct-horse-battery")

    assert result["status"] == "created"
    principal = runtime.store.get_principal(result["principal_id"])
    assert principal.has_role(Role.ADMIN)
    assert runtime.auth.verify_credentials("root@example.com", "correct-horse-battery")


def test_promotes_an_existing_member(script, runtime, make_principal):
    member = make_principal("member@example.com")

    result = script.bootstrap_admin("member@example.com", "ignored-password")

    assert result == {"principal_id": member.id, "email": "member@example.com", "status": "promoted"}
    assert runtime.store.get_principal(member.id).has_role(Role.ADMIN)
    assert script.bootstrap_admin("member@example.com", "x")["status"] == "already_admin"


def test_dry_run_changes_nothing(script, runtime):
    result = script.bootstrap_admin("root@example.com", "correct-horse-battery", dry_run=True)

    assert result["status"] == "dry_run"
    assert runtime.store.get_principal_by_email("root@example.com") is None


def test_main_requires_credentials(script, monkeypatch):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)

    assert script.main([]) == 1
    assert script.main(["--email", "root@example.com"]) == 1


def test_main_reports_weak_passwords(script):
    assert script.main(["--email", "root@example.com", "--password", "short"]) == 1


def test_main_creates_the_admin(script, runtime):
    assert script.main(["--email", "Root@Example.com", "--password", "correct-horse-battery"]) == 0
    assert runtime.store.get_principal_by_email("root@example.com").has_role(Role.ADMIN)
