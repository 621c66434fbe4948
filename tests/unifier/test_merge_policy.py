from __future__ import annotations

import json

import pytest
import yaml

from config.merge_policy import (
    DEFAULT_PROFILE,
    FILL_EMPTY,
    LATEST,
    SHOULD_UPDATE,
    MergePolicyConfigError,
    load_profile,
)


def _write_override(tmp_path, payload, *, suffix=".json"):
    path = tmp_path / f"policy{suffix}"
    if suffix == ".json":
        path.write_text(json.dumps(payload))
    else:
        path.write_text(yaml.safe_dump(payload))
    return {"UNIFIER_MERGE_POLICY_PATH": str(path)}


def _identity_group(*fields):
    return {"field_groups": [{"name": "identity", "fields": [dict(field_name=n, strategy=s) for n, s in fields]}]}


def test_default_profile_when_no_override():
    assert load_profile({}) is DEFAULT_PROFILE
    assert load_profile(None) is DEFAULT_PROFILE
    assert DEFAULT_PROFILE.strategy_for("email") == FILL_EMPTY
    assert DEFAULT_PROFILE.strategy_for("tags") == "union"
    assert DEFAULT_PROFILE.strategy_for("customer_metadata") == "deep_merge"
    assert DEFAULT_PROFILE.strategy_for("wa_opt_in") == LATEST
    assert DEFAULT_PROFILE.strategy_for("unknown_column") == SHOULD_UPDATE


def test_json_override(tmp_path):
    env = _write_override(tmp_path, {"key": "strict", **_identity_group(("email", "first_write"), ("full_name", "latest"))})

    profile = load_profile(env)

    assert profile.key == "strict"
    assert profile.strategy_for("email") == "first_write"
    assert profile.strategy_for("full_name") == LATEST
    assert profile.strategy_for("tags") == SHOULD_UPDATE


def test_yaml_override(tmp_path):
    payload = {"default_strategy": "fill_empty", **_identity_group(("email", "fill_empty"), ("tags", "union"))}
    env = _write_override(tmp_path, payload, suffix=".yaml")

    profile = load_profile(env)

    assert profile.default_strategy == FILL_EMPTY
    assert profile.strategy_for("tags") == "union"
    assert profile.strategy_for("phone") == FILL_EMPTY


def test_missing_override_file(tmp_path):
    with pytest.raises(MergePolicyConfigError):
        load_profile({"UNIFIER_MERGE_POLICY_PATH": str(tmp_path / "missing.json")})


def test_invalid_override_content(tmp_path):
    path = tmp_path / "policy.json"
    path.write_text("{not json")
    with pytest.raises(MergePolicyConfigError):
        load_profile({"UNIFIER_MERGE_POLICY_PATH": str(path)})


@pytest.mark.parametrize(
    "payload",
    [
        _identity_group(("email", "fill_empty"), ("full_name", "sometimes")),
        _identity_group(("email", "fill_empty"), ("full_name", "union")),
        _identity_group(("email", "fill_empty"), ("tags", "deep_merge")),
        _identity_group(("email", "latest")),
        _identity_group(("", "latest")),
        {"default_strategy": "union"},
    ],
)
def test_rejected_overrides(tmp_path, payload):
    env = _write_override(tmp_path, payload)
    with pytest.raises(MergePolicyConfigError):
        load_profile(env)
