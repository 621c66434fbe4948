from __future__ import annotations

import json
from datetime import datetime, timezone

from config.merge_policy import load_profile
from unify_app.models import GhlContactRaw, LifecycleStage
from unify_app.unifier.pipeline.merge import (
    apply_merge,
    build_client,
    deep_merge,
    plan_merge,
    should_update,
    union_tags,
)
from unify_app.unifier.pipeline.normalize import normalize_ghl

FETCHED_AT = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _ghl_contact(raw_id: int = 1, external_id: str = "g-1", **payload):
    row = GhlContactRaw(id=raw_id, external_id=external_id, payload=payload, fetched_at=FETCHED_AT)
    return normalize_ghl(row)


def test_should_update():
    assert should_update(None, "a") is True
    assert should_update("", "a") is True
    assert should_update("a", "b") is True
    assert should_update("a", "a") is False
    assert should_update("a", "") is False
    assert should_update("a", None) is False
    assert should_update([], ["x"]) is True


def test_union_tags_is_sorted_and_deduplicated():
    assert union_tags(["b", "a"], ["c", "a", ""]) == ["a", "b", "c"]
    assert union_tags(None, None) == []


def test_deep_merge_recurses_and_never_erases():
    existing = {"identities": {"csv": "1"}, "marketing_context": {"tags": ["old"], "utm_source": "google"}, "note": "keep"}
    incoming = {"identities": {"ghl": "g-1"}, "marketing_context": {"tags": ["new"], "utm_source": ""}, "note": None}

    merged = deep_merge(existing, incoming)

    assert merged == {
        "identities": {"csv": "1", "ghl": "g-1"},
        "marketing_context": {"tags": ["new"], "utm_source": "google"},
        "note": "keep",
    }
    assert existing["identities"] == {"csv": "1"}


def test_plan_merge_for_new_client_builds_lead():
    contact = _ghl_contact(
        contactName="Ana",
        email="ana@example.com",
        phone="5512345678",
        tags=["b", "a"],
        utm_campaign="launch",
    )

    plan = plan_merge(None, contact)
    client = build_client(plan)

    assert plan.is_create
    assert client.lifecycle_stage == LifecycleStage.LEAD
    assert client.email == "ana@example.com"
    assert client.full_name == "Ana"
    assert client.phone == "5512345678"
    assert client.phone_e164 == "+525512345678"
    assert client.ghl_contact_id == "g-1"
    assert client.tags == ["a", "b"]
    assert client.first_campaign == "launch"
    assert client.utm_campaign == "launch"
    assert client.acquisition_source == "ghl"
    assert client.first_seen_at == FETCHED_AT
    assert client.last_lead_at == FETCHED_AT
    assert client.wa_opt_in is True
    assert client.customer_metadata["identities"] == {"ghl": "g-1"}


def test_plan_merge_respects_field_strategies(client_factory):
    client = client_factory(
        email="ana@example.com",
        full_name="Ana Original",
        first_campaign="spring",
        acquisition_source="csv",
        wa_opt_in=True,
        tags=["old"],
        customer_metadata={"identities": {"csv": "7"}},
    )
    contact = _ghl_contact(
        contactName="Ana Renamed",
        email="ana@example.com",
        utm_campaign="summer",
        dnd=True,
        tags="new",
    )

    plan = plan_merge(client, contact)
    changed = set(plan.changed_fields())

    assert plan.client_id == client.id
    assert "email" not in changed
    assert "full_name" not in changed
    assert "first_campaign" not in changed
    assert "acquisition_source" not in changed
    assert {"utm_campaign", "wa_opt_in", "tags", "customer_metadata", "ghl_contact_id"} <= changed

    apply_merge(client, plan)

    assert client.full_name == "Ana Original"
    assert client.first_campaign == "spring"
    assert client.utm_campaign == "summer"
    assert client.wa_opt_in is False
    assert client.tags == ["new", "old"]
    assert client.customer_metadata["identities"] == {"csv": "7", "ghl": "g-1"}


def test_plan_merge_is_idempotent():
    contact = _ghl_contact(contactName="Ana", email="ana@example.com", tags=["a"])
    client = build_client(plan_merge(None, contact))

    second = plan_merge(client, contact)

    assert second.changed is False


def test_plan_merge_without_drops_fields():
    contact = _ghl_contact(email="ana@example.com", contactName="Ana")

    plan = plan_merge(None, contact).without("email")

    assert "email" not in plan.changed_fields()
    assert "full_name" in plan.changed_fields()


def test_plan_merge_uses_override_profile(tmp_path):
    override = tmp_path / "policy.json"
    override.write_text(
        json.dumps(
            {
                "field_groups": [
                    {
                        "name": "identity",
                        "fields": [
                            {"field_name": "email", "strategy": "fill_empty"},
                            {"field_name": "full_name", "strategy": "should_update"},
                        ],
                    }
                ]
            }
        )
    )
    profile = load_profile({"UNIFIER_MERGE_POLICY_PATH": str(override)})
    existing = build_client(plan_merge(None, _ghl_contact(contactName="Old", email="a@example.com")))

    plan = plan_merge(existing, _ghl_contact(contactName="New", email="a@example.com"), profile)

    assert plan.values()["full_name"] == "New"
