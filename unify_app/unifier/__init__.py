"""
Identity unifier feature package.

Provides conditional blueprint, CLI and Celery registration; when the unifier
is disabled only a placeholder CLI group is mounted.
"""

from __future__ import annotations

from typing import Any

from flask import Flask

from unify_app.utils.unifier import get_unifier_sources, is_unifier_enabled

from .celery_app import EXTENSION_KEY, ensure_celery_app, get_celery_app
from .cli import get_disabled_unifier_group, unifier_cli
from .pipeline.ledger import RunFilters, SyncRunService
from .views import unifier_blueprint

UNIFIER_EXTENSION_KEY = EXTENSION_KEY

__all__ = [
    "init_unifier",
    "UNIFIER_EXTENSION_KEY",
    "get_celery_app",
    "RunFilters",
    "SyncRunService",
]


def _ensure_extension_state(app: Flask) -> dict[str, Any]:
    return app.extensions.setdefault(
        UNIFIER_EXTENSION_KEY,
        {
            "enabled": False,
            "sources": (),
            "worker_enabled": False,
            "celery_app": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    command_name = unifier_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(unifier_cli)
    else:
        app.cli.add_command(get_disabled_unifier_group())


def init_unifier(app: Flask) -> None:
    """
    Conditionally mount the unifier blueprint, CLI and Celery app.

    State is recorded in ``app.extensions['unifier']`` for the views, CLI and
    dispatch helpers.
    """
    enabled = is_unifier_enabled(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "sources": get_unifier_sources(app),
            "worker_enabled": bool(app.config.get("UNIFIER_WORKER_ENABLED", False)),
        }
    )

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Unifier disabled via UNIFIER_ENABLED flag; skipping registration.")
        return

    ensure_celery_app(app, state)

    if unifier_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(unifier_blueprint)
    elif unifier_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Unifier blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)
    app.logger.info("Unifier enabled with sources: %s", ", ".join(state["sources"]) or "none")
