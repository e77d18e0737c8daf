import asyncio
import importlib.util
from pathlib import Path

from authflow.service.runtime import get_runtime

SCRIPT = Path(__file__).resolve().parent.parent / "scripts" / "create_user.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("create_user_script", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_creates_activated_user_with_recovery_codes():
    script = _load_script()

    result = asyncio.run(
        script.create_user("ops@example.com", "ops", "OpsPassword1!", two_factor=True)
    )

    assert result["status"] == "created"
    user = get_runtime().store.get_user(result["user_id"])
    assert user.email_verified
    assert user.two_factor_enabled
    assert len(result["recovery_codes"]) == get_runtime().settings.recovery_code_count
    assert get_runtime().credentials.verify("ops@example.com", "OpsPassword1!") == user.id


def test_existing_user_and_dry_run_leave_store_untouched():
    script = _load_script()
    asyncio.run(script.create_user("ops@example.com", "ops", "OpsPassword1!"))

    again = asyncio.run(script.create_user("ops@example.com", "ops", "OpsPassword1!"))
    dry = asyncio.run(script.create_user("dry@example.com", "dry", "OpsPassword1!", dry_run=True))

    assert again["status"] == "exists"
    assert dry["status"] == "dry_run"
    assert get_runtime().store.get_user_by_email("dry@example.com") is None
