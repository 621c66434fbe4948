"""
Utility helpers for unifier feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_unifier_enabled(app=None) -> bool:
    """Return True when the unifier feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("UNIFIER_ENABLED", False))


def get_unifier_sources(app=None) -> Tuple[str, ...]:
    """Return the configured unifier source identifiers."""
    config = _get_config(app)
    sources: Iterable[str] = config.get("UNIFIER_SOURCES", ())
    return tuple(sources)
