# config/validation.py

"""
Environment variable validation for the unification service.
Checked once at startup in production; other environments skip it.
"""

import os
import sys
from pathlib import Path
from typing import List, Tuple

from .base import KNOWN_SOURCES

_PLACEHOLDER_SECRETS = {"", "your-secret-key", "your_secret_key", "dev-secret-key-change-in-production"}


def _truthy(name: str) -> bool:
    return os.environ.get(name, "false").strip().lower() in {"1", "true", "yes", "on"}


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Returns ``(is_valid, errors)``; ``flask_env`` defaults to ``FLASK_ENV``.
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")
    if flask_env != "production":
        return True, []

    errors = []

    if os.environ.get("SECRET_KEY", "") in _PLACEHOLDER_SECRETS:
        errors.append(
            "SECRET_KEY is required in production and must not be the default value. "
            'Generate a secure key: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production (the client store and sync ledger live there).")

    sources = [token.strip().lower() for token in os.environ.get("UNIFIER_SOURCES", "").split(",") if token.strip()]
    unknown = [source for source in sources if source not in KNOWN_SOURCES]
    if unknown:
        errors.append(f"UNIFIER_SOURCES contains unknown sources: {', '.join(unknown)}")

    if _truthy("UNIFIER_WORKER_ENABLED"):
        for name in ("CELERY_BROKER_URL", "CELERY_RESULT_BACKEND"):
            if not os.environ.get(name):
                errors.append(f"{name} is required when UNIFIER_WORKER_ENABLED=true")

    policy_path = os.environ.get("UNIFIER_MERGE_POLICY_PATH")
    if policy_path and not Path(policy_path).exists():
        errors.append(f"UNIFIER_MERGE_POLICY_PATH points to a missing file: {policy_path}")

    return not errors, errors


def validate_and_exit(flask_env: str = None) -> None:
    """Print every validation error and exit with status 1 when the environment is invalid."""
    is_valid, errors = validate_environment(flask_env)
    if is_valid:
        return

    print("=" * 80, file=sys.stderr)
    print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
    print("=" * 80, file=sys.stderr)
    for i, error in enumerate(errors, 1):
        print(f"{i}. {error}", file=sys.stderr)
    print("=" * 80, file=sys.stderr)
    sys.exit(1)
