import asyncio
import importlib.util
from pathlib import Path

import pytest

from accountgate.service.runtime import get_runtime

_SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "bootstrap_admin.py"
_spec = importlib.util.spec_from_file_location("bootstrap_admin", _SCRIPT)
bootstrap = importlib.util.module_from_spec(_spec)
_spec.loader.exec_module(bootstrap)

ADMIN = {
    "email": "Root@X.com",
    "password": "Secure1234",
    "full_name": "Site Admin",
    "phone": "01912345678",
}


def test_creates_admin_account():
    result = asyncio.run(bootstrap.bootstrap_admin(**ADMIN))

    assert result["status"] == "created"
    account = get_runtime().store.get_account(result["account_id"])
    assert account.email == "root@x.com"
    assert account.is_admin
    assert account.email_verified


def test_second_run_is_a_no_op():
    asyncio.run(bootstrap.bootstrap_admin(**ADMIN))
    result = asyncio.run(bootstrap.bootstrap_admin(**ADMIN))
    assert result["status"] == "already_admin"


def test_promotes_existing_user():
    runtime = get_runtime()
    account = asyncio.run(
        runtime.auth.provision_account(
            email="user@x.com", password="Secure1234", full_name="Plain User", phone="01712345678"
        )
    )
    result = asyncio.run(bootstrap.bootstrap_admin("user@x.com", "Secure1234"))

    assert result == {"account_id": account.id, "email": "user@x.com", "status": "promoted"}
    assert runtime.store.get_account(account.id).is_admin


def test_promotion_needs_the_current_password():
    runtime = get_runtime()
    account = asyncio.run(
        runtime.auth.provision_account(
            email="user@x.com", password="Secure1234", full_name="Plain User", phone="01712345678"
        )
    )

    with pytest.raises(ValueError, match="password does not match"):
        asyncio.run(bootstrap.bootstrap_admin("user@x.com", "Other12345"))
    with pytest.raises(ValueError):
        asyncio.run(bootstrap.bootstrap_admin("user@x.com", "Other12345", dry_run=True))
    assert not runtime.store.get_account(account.id).is_admin


def test_dry_run_changes_nothing():
    result = asyncio.run(bootstrap.bootstrap_admin(**ADMIN, dry_run=True))
    assert result["status"] == "dry_run"
    assert get_runtime().store.get_account_by_email("root@x.com") is None


def test_creation_needs_name_and_phone():
    with pytest.raises(ValueError):
        asyncio.run(bootstrap.bootstrap_admin("new@x.com", "Secure1234"))


def test_main_requires_credentials(capsys, monkeypatch):
    monkeypatch.delenv("ADMIN_EMAIL", raising=False)
    monkeypatch.delenv("ADMIN_PASSWORD", raising=False)
    assert bootstrap.main([]) == 1
    assert "--email" in capsys.readouterr().out


def test_main_reports_weak_password(capsys, monkeypatch):
    monkeypatch.setenv("PERSIST_MEMORY_STORE", "false")
    code = bootstrap.main(
        ["--email", "new@x.com", "--password", "weak", "--full-name", "X", "--phone", "01712345678"]
    )
    assert code == 1
    assert "Error:" in capsys.readouterr().out
