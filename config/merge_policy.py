"""
Field-level merge policy configuration for the unification engine.

The merge engine loads this module to decide how an incoming normalized
contact updates each column of an existing canonical client. Every field is
assigned one strategy:

``should_update``
    Incoming wins when it is non-empty and differs from the stored value.
``fill_empty``
    Incoming is only adopted when the stored value is empty.
``first_write``
    First-touch attribution; set once, never overwritten.
``latest``
    Incoming wins whenever it is not ``None`` (booleans included).
``union``
    Set union of list values, stored sorted.
``deep_merge``
    Recursive merge of nested maps; arrays and scalars are replaced
    wholesale unless the incoming value is empty.

Configuration is file-backed so we do not require database tables or
migrations. Operators can override the defaults by providing a JSON or YAML
file path through the ``UNIFIER_MERGE_POLICY_PATH`` environment variable.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, MutableMapping, Sequence

import yaml

# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

SHOULD_UPDATE = "should_update"
FILL_EMPTY = "fill_empty"
FIRST_WRITE = "first_write"
LATEST = "latest"
UNION = "union"
DEEP_MERGE = "deep_merge"

STRATEGIES: frozenset[str] = frozenset({SHOULD_UPDATE, FILL_EMPTY, FIRST_WRITE, LATEST, UNION, DEEP_MERGE})

LIST_FIELDS: frozenset[str] = frozenset({"tags"})
MAP_FIELDS: frozenset[str] = frozenset({"customer_metadata"})


@dataclass(frozen=True)
class FieldPolicy:
    """Merge strategy for a single client column."""

    field_name: str
    strategy: str


@dataclass(frozen=True)
class FieldGroup:
    """
    Group of related fields that share merge behavior.

    Groups keep overrides readable and let the CLI summarize the profile.
    """

    name: str
    display_name: str
    fields: Sequence[FieldPolicy]


@dataclass(frozen=True)
class MergePolicyProfile:
    """
    Container for all field policies.

    Fields without an explicit policy fall back to ``default_strategy``.
    """

    key: str
    label: str
    description: str
    field_groups: Sequence[FieldGroup]
    default_strategy: str = SHOULD_UPDATE

    def find_policy(self, field_name: str) -> FieldPolicy | None:
        for group in self.field_groups:
            for policy in group.fields:
                if policy.field_name == field_name:
                    return policy
        return None

    def strategy_for(self, field_name: str) -> str:
        policy = self.find_policy(field_name)
        return policy.strategy if policy else self.default_strategy

    def field_names(self) -> tuple[str, ...]:
        return tuple(policy.field_name for group in self.field_groups for policy in group.fields)


# ---------------------------------------------------------------------------
# Default profile
# ---------------------------------------------------------------------------

IDENTITY_FIELDS: tuple[FieldPolicy, ...] = (
    FieldPolicy("email", FILL_EMPTY),
    FieldPolicy("full_name", FILL_EMPTY),
    FieldPolicy("phone", SHOULD_UPDATE),
    FieldPolicy("phone_e164", SHOULD_UPDATE),
)

PLATFORM_ID_FIELDS: tuple[FieldPolicy, ...] = (
    FieldPolicy("ghl_contact_id", SHOULD_UPDATE),
    FieldPolicy("manychat_subscriber_id", SHOULD_UPDATE),
    FieldPolicy("stripe_customer_id", SHOULD_UPDATE),
    FieldPolicy("paypal_customer_id", SHOULD_UPDATE),
)

ATTRIBUTION_FIELDS: tuple[FieldPolicy, ...] = (
    FieldPolicy("acquisition_source", FIRST_WRITE),
    FieldPolicy("first_campaign", FIRST_WRITE),
    FieldPolicy("first_seen_at", FIRST_WRITE),
    FieldPolicy("utm_source", SHOULD_UPDATE),
    FieldPolicy("utm_medium", SHOULD_UPDATE),
    FieldPolicy("utm_campaign", SHOULD_UPDATE),
    FieldPolicy("utm_content", SHOULD_UPDATE),
    FieldPolicy("utm_term", SHOULD_UPDATE),
)

ENGAGEMENT_FIELDS: tuple[FieldPolicy, ...] = (
    FieldPolicy("wa_opt_in", LATEST),
    FieldPolicy("sms_opt_in", LATEST),
    FieldPolicy("email_opt_in", LATEST),
    FieldPolicy("last_lead_at", LATEST),
    FieldPolicy("tags", UNION),
    FieldPolicy("customer_metadata", DEEP_MERGE),
)

DEFAULT_PROFILE = MergePolicyProfile(
    key="default",
    label="Default merge policy",
    description="Identity keys fill empty slots, platform ids and UTM fields follow the latest non-empty "
    "value, first-touch attribution is written once, tags are unioned and metadata is deep-merged.",
    field_groups=(
        FieldGroup("identity", "Identity", IDENTITY_FIELDS),
        FieldGroup("platform_ids", "Platform ids", PLATFORM_ID_FIELDS),
        FieldGroup("attribution", "Attribution", ATTRIBUTION_FIELDS),
        FieldGroup("engagement", "Engagement", ENGAGEMENT_FIELDS),
    ),
    default_strategy=SHOULD_UPDATE,
)


# ---------------------------------------------------------------------------
# Loading helpers
# ---------------------------------------------------------------------------


class MergePolicyConfigError(RuntimeError):
    """Raised when a merge policy override cannot be parsed."""


def _load_override(path: Path) -> MutableMapping[str, object]:
    if not path.exists():
        raise MergePolicyConfigError(f"Merge policy override file {path} does not exist.")
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:  # pragma: no cover - filesystem failure
        raise MergePolicyConfigError(f"Unable to read merge policy override file {path}: {exc}") from exc

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as exc:
        raise MergePolicyConfigError(f"Merge policy override file {path} is not valid: {exc}") from exc

    if not isinstance(data, Mapping):
        raise MergePolicyConfigError("Merge policy override must be a JSON/YAML object.")
    return dict(data)


def _coerce_strategy(value: object, *, field_name: str) -> str:
    strategy = str(value or "").strip().lower()
    if strategy not in STRATEGIES:
        raise MergePolicyConfigError(
            f"Unknown merge strategy '{value}' for {field_name}. Expected one of {', '.join(sorted(STRATEGIES))}."
        )
    if strategy == UNION and field_name not in LIST_FIELDS:
        raise MergePolicyConfigError(f"Strategy 'union' only applies to list fields, not {field_name}.")
    if strategy == DEEP_MERGE and field_name not in MAP_FIELDS:
        raise MergePolicyConfigError(f"Strategy 'deep_merge' only applies to map fields, not {field_name}.")
    return strategy


def _coerce_field_policy(raw: Mapping[str, object]) -> FieldPolicy:
    name = str(raw.get("field_name") or "").strip()
    if not name:
        raise MergePolicyConfigError("Each field policy requires a non-empty field_name.")
    return FieldPolicy(field_name=name, strategy=_coerce_strategy(raw.get("strategy"), field_name=name))


def _coerce_field_group(raw: Mapping[str, object]) -> FieldGroup:
    name = str(raw.get("name") or "").strip()
    display_name = str(raw.get("display_name") or name or "").strip()
    if not name:
        raise MergePolicyConfigError("Each field group requires a non-empty name.")
    fields_raw = raw.get("fields") or ()
    if not isinstance(fields_raw, Iterable) or isinstance(fields_raw, (str, bytes)):
        raise MergePolicyConfigError(f"Group {name} fields must be a sequence.")
    policies = tuple(_coerce_field_policy(policy) for policy in fields_raw)  # type: ignore[arg-type]
    return FieldGroup(name=name, display_name=display_name or name.title(), fields=policies)


def _coerce_profile(raw: Mapping[str, object]) -> MergePolicyProfile:
    key = str(raw.get("key") or DEFAULT_PROFILE.key).strip() or DEFAULT_PROFILE.key
    label = str(raw.get("label") or DEFAULT_PROFILE.label).strip() or DEFAULT_PROFILE.label
    description = str(raw.get("description") or DEFAULT_PROFILE.description).strip() or DEFAULT_PROFILE.description
    raw_default = raw.get("default_strategy")
    default_strategy = (
        _coerce_strategy(raw_default, field_name="default_strategy") if raw_default else DEFAULT_PROFILE.default_strategy
    )
    if default_strategy in {UNION, DEEP_MERGE}:
        raise MergePolicyConfigError("default_strategy cannot be 'union' or 'deep_merge'.")

    raw_groups = raw.get("field_groups") or ()
    if not isinstance(raw_groups, Iterable) or isinstance(raw_groups, (str, bytes)):
        raise MergePolicyConfigError("field_groups must be a sequence.")
    groups = tuple(_coerce_field_group(group) for group in raw_groups)  # type: ignore[arg-type]
    if not groups:
        groups = DEFAULT_PROFILE.field_groups

    profile = MergePolicyProfile(
        key=key,
        label=label,
        description=description,
        field_groups=groups,
        default_strategy=default_strategy,
    )
    if profile.strategy_for("email") not in {FILL_EMPTY, FIRST_WRITE}:
        raise MergePolicyConfigError("email must use the 'fill_empty' or 'first_write' strategy.")
    return profile


def load_profile(env: Mapping[str, str] | None = None) -> MergePolicyProfile:
    """
    Load the active merge policy profile.

    If ``UNIFIER_MERGE_POLICY_PATH`` is set, its JSON/YAML content is parsed to
    override the default profile. Otherwise the built-in defaults are used.
    """

    env_map = env or {}
    override_path = env_map.get("UNIFIER_MERGE_POLICY_PATH")
    if not override_path:
        return DEFAULT_PROFILE
    raw = _load_override(Path(override_path))
    return _coerce_profile(raw)


__all__ = [
    "DEEP_MERGE",
    "DEFAULT_PROFILE",
    "FILL_EMPTY",
    "FIRST_WRITE",
    "FieldGroup",
    "FieldPolicy",
    "LATEST",
    "MergePolicyConfigError",
    "MergePolicyProfile",
    "SHOULD_UPDATE",
    "UNION",
    "load_profile",
]
