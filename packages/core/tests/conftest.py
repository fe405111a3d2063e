"""Pytest configuration and shared fixtures."""
import os
from pathlib import Path

import pytest
from cryptography.fernet import Fernet
from dotenv import load_dotenv

# Load .env file from project root before running tests
project_root = Path(__file__).parent.parent.parent.parent
env_path = project_root / ".env"
if env_path.exists():
    load_dotenv(env_path)
core_env_path = project_root / "packages" / "core" / ".env"
if core_env_path.exists():
    load_dotenv(core_env_path, override=False)

# Ensure encryption key is set for all tests
if not os.getenv("BYOKROUTER_ENCRYPTION_KEY"):
    os.environ["BYOKROUTER_ENCRYPTION_KEY"] = Fernet.generate_key().decode()


@pytest.fixture(scope="session", autouse=True)
def ensure_encryption_key():
    """Ensure encryption key is available for all tests."""
    if not os.getenv("BYOKROUTER_ENCRYPTION_KEY"):
        os.environ["BYOKROUTER_ENCRYPTION_KEY"] = Fernet.generate_key().decode()


@pytest.fixture(autouse=True)
def isolate_policy_env(monkeypatch):
    """Keep routing flags from the developer's shell out of the tests."""
    for flag in ("BYOK_ENABLED", "BYOK_USES_INTERNAL_CREDITS", "BYOK_ONLY_MODE", "POLICY_FILE"):
        monkeypatch.delenv(f"BYOKROUTER_{flag}", raising=False)
