"""
Field-level merge of a normalized contact into a canonical client.

The strategies are declared per column by ``config.merge_policy``. This module
turns a profile plus a (client, contact) pair into a ``MergePlan`` listing the
columns that actually change, and applies that plan. Planning never touches the
session so it can be previewed from the CLI or the review queue.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, MutableMapping, Sequence

from config.merge_policy import (
    DEEP_MERGE,
    DEFAULT_PROFILE,
    FILL_EMPTY,
    FIRST_WRITE,
    LATEST,
    SHOULD_UPDATE,
    UNION,
    MergePolicyProfile,
)
from unify_app.models import Client, LifecycleStage

from .normalize import PLATFORM_ID_COLUMNS, NormalizedContact


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return not value
    return False


def should_update(existing: Any, incoming: Any) -> bool:
    """True iff ``incoming`` is non-empty and ``existing`` is empty or different."""
    if is_empty(incoming):
        return False
    return is_empty(existing) or existing != incoming


def union_tags(existing: Iterable[str] | None, incoming: Iterable[str] | None) -> list[str]:
    merged = {tag for tag in (existing or ()) if not is_empty(tag)}
    merged.update(tag for tag in (incoming or ()) if not is_empty(tag))
    return sorted(merged)


def deep_merge(existing: Mapping[str, Any] | None, incoming: Mapping[str, Any] | None) -> dict[str, Any]:
    """
    Merge ``incoming`` into a copy of ``existing``.

    Nested maps recurse. Scalars and arrays from ``incoming`` replace the stored
    value wholesale unless they are empty, so metadata only ever grows.
    """
    result: dict[str, Any] = {}
    for key, value in (existing or {}).items():
        result[key] = deep_merge(value, None) if isinstance(value, Mapping) else value
    for key, value in (incoming or {}).items():
        current = result.get(key)
        if isinstance(value, Mapping):
            result[key] = deep_merge(current if isinstance(current, Mapping) else None, value)
        elif not is_empty(value):
            result[key] = list(value) if isinstance(value, tuple) else value
    return result


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FieldChange:
    field_name: str
    strategy: str
    previous: Any
    value: Any


@dataclass(frozen=True)
class MergePlan:
    client_id: int | None
    changes: Sequence[FieldChange] = ()
    stats: Mapping[str, int] = field(default_factory=dict)

    @property
    def is_create(self) -> bool:
        return self.client_id is None

    @property
    def changed(self) -> bool:
        return bool(self.changes)

    def values(self) -> dict[str, Any]:
        return {change.field_name: change.value for change in self.changes}

    def changed_fields(self) -> list[str]:
        return [change.field_name for change in self.changes]

    def without(self, *field_names: str) -> "MergePlan":
        kept = tuple(change for change in self.changes if change.field_name not in field_names)
        return MergePlan(client_id=self.client_id, changes=kept, stats=self.stats)


def incoming_values(contact: NormalizedContact) -> dict[str, Any]:
    """Map every client column the contact can speak for to its incoming value."""
    values: MutableMapping[str, Any] = {
        "email": contact.email,
        "full_name": contact.full_name,
        "phone": contact.raw_phone,
        "phone_e164": contact.phone,
        "acquisition_source": contact.attribution.acquisition_source,
        "first_campaign": contact.attribution.campaign,
        "first_seen_at": contact.arrived_at,
        "wa_opt_in": contact.opt_ins.whatsapp,
        "sms_opt_in": contact.opt_ins.sms,
        "email_opt_in": contact.opt_ins.email,
        "last_lead_at": contact.arrived_at,
        "tags": list(contact.tags),
        "customer_metadata": dict(contact.extra_metadata),
    }
    values.update(contact.attribution.utm_fields())
    for platform, column in PLATFORM_ID_COLUMNS.items():
        values[column] = contact.external_ids.get(platform) or contact.secondary_ids.get(platform)
    return dict(values)


def _resolve_field(strategy: str, existing: Any, incoming: Any) -> tuple[bool, Any]:
    if strategy == SHOULD_UPDATE:
        return should_update(existing, incoming), incoming
    if strategy in (FILL_EMPTY, FIRST_WRITE):
        return is_empty(existing) and not is_empty(incoming), incoming
    if strategy == LATEST:
        return incoming is not None and existing != incoming, incoming
    if strategy == UNION:
        merged = union_tags(existing, incoming)
        return merged != list(existing or []), merged
    if strategy == DEEP_MERGE:
        merged = deep_merge(existing, incoming)
        return merged != dict(existing or {}), merged
    raise ValueError(f"Unsupported merge strategy '{strategy}'.")


def plan_merge(
    client: Client | None,
    contact: NormalizedContact,
    profile: MergePolicyProfile = DEFAULT_PROFILE,
) -> MergePlan:
    """Decide which columns of ``client`` (or a new client) the contact changes."""
    changes: list[FieldChange] = []
    stats: Counter[str] = Counter()
    for field_name, incoming in incoming_values(contact).items():
        strategy = profile.strategy_for(field_name)
        existing = getattr(client, field_name) if client is not None else None
        changed, value = _resolve_field(strategy, existing, incoming)
        if changed:
            changes.append(FieldChange(field_name=field_name, strategy=strategy, previous=existing, value=value))
            stats["fields_changed"] += 1
        else:
            stats["fields_unchanged"] += 1
    return MergePlan(client_id=client.id if client is not None else None, changes=tuple(changes), stats=dict(stats))


def apply_merge(client: Client, plan: MergePlan) -> Client:
    for change in plan.changes:
        setattr(client, change.field_name, change.value)
    return client


def build_client(plan: MergePlan) -> Client:
    """Populate a new lead from a create plan (``plan_merge(None, ...)``)."""
    if not plan.is_create:
        raise ValueError("build_client requires a create plan.")
    client = Client(lifecycle_stage=LifecycleStage.LEAD, tags=[], customer_metadata={})
    return apply_merge(client, plan)


__all__ = [
    "FieldChange",
    "MergePlan",
    "apply_merge",
    "build_client",
    "deep_merge",
    "incoming_values",
    "is_empty",
    "plan_merge",
    "should_update",
    "union_tags",
]
