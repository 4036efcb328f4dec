import argparse
import asyncio
import importlib.util
from pathlib import Path

import pytest

from authgate.service.runtime import get_runtime
from authgate.storage.models import AuthProvider, FederationStatus, UserType

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "reconcile_accounts.py"


@pytest.fixture
def script():
    spec = importlib.util.spec_from_file_location("reconcile_accounts", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _seed(**kwargs):
    return asyncio.run(get_runtime().store.create_user(**kwargs))


def test_parser_requires_subcommand(script):
    parser = script.build_parser()

    with pytest.raises(SystemExit):
        parser.parse_args([])
    args = parser.parse_args(["reconcile", "--email", "x@example.com"])
    assert args.command == "reconcile"
    assert args.email == "x@example.com"


def test_detect_and_reconcile(script):
    _seed(
        email="orphan@example.com",
        username="orphan",
        external_auth_id="vanished",
        auth_provider=AuthProvider.HYBRID,
    )

    report = asyncio.run(script.run(argparse.Namespace(command="detect")))
    result = asyncio.run(
        script.run(argparse.Namespace(command="reconcile", email="orphan@example.com"))
    )

    assert [row["email"] for row in report["orphaned_local"]] == ["orphan@example.com"]
    assert result == {"email": "orphan@example.com", "reconciled": True}
    user = asyncio.run(get_runtime().store.get_user_by_email("orphan@example.com"))
    assert user.federation_status == FederationStatus.DISABLED


def test_retry_and_stats(script):
    _seed(email="failed@example.com", username="failed", federation_status=FederationStatus.FAILED)

    retry = asyncio.run(script.run(argparse.Namespace(command="retry")))
    stats = asyncio.run(script.run(argparse.Namespace(command="stats")))

    assert retry == {"success": 0, "failed": 1}
    assert stats["failed"] == 1
    assert stats["local"] == 1


def test_promote_admin(script):
    user = _seed(email="boss@example.com", username="boss")
    runtime = get_runtime()

    dry = asyncio.run(script.promote_admin(runtime, "boss@example.com", dry_run=True))
    done = asyncio.run(script.promote_admin(runtime, "boss@example.com"))
    again = asyncio.run(script.promote_admin(runtime, "boss@example.com"))
    missing = asyncio.run(script.promote_admin(runtime, "ghost@example.com"))

    assert dry["status"] == "dry_run"
    assert done["status"] == "promoted"
    assert again["status"] == "already_admin"
    assert missing["status"] == "not_found"
    assert asyncio.run(runtime.store.get_user(user.id)).user_type == UserType.ADMIN
