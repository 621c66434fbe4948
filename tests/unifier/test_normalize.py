from __future__ import annotations

from datetime import datetime, timezone

import pytest

from unify_app.models import CsvImportRaw, GhlContactRaw, ManychatContactRaw
from unify_app.unifier.pipeline.normalize import (
    UnknownSourceError,
    contact_from_snapshot,
    contact_to_snapshot,
    normalize_csv,
    normalize_email,
    normalize_ghl,
    normalize_manychat,
    normalize_phone,
    normalize_record,
    parse_tags,
    sanitize_string,
)

FETCHED_AT = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("5512345678", "+525512345678"),
        ("55 1234-5678", "+525512345678"),
        ("05512345678", "+525512345678"),
        ("+1 (415) 555-0100", "+14155550100"),
        ("14155550100", "+14155550100"),
        ("+52 1 55 1234 5678", "+5215512345678"),
        ("12345", None),
        ("+12345", None),
        ("", None),
        ("{{contact.phone}}", None),
        (None, None),
    ],
)
def test_normalize_phone(raw, expected):
    assert normalize_phone(raw) == expected


def test_normalize_phone_uses_configured_country_code():
    assert normalize_phone("4155550100", default_country_code="1") == "+14155550100"
    assert normalize_phone("4155550100", default_country_code="+1") == "+14155550100"


def test_normalize_email():
    assert normalize_email("  Ana.Perez@Example.COM ") == "ana.perez@example.com"
    assert normalize_email("not-an-email") is None
    assert normalize_email("null") is None
    assert normalize_email("a" * 250 + "@example.com") is None


def test_sanitize_string_treats_placeholders_as_absent():
    assert sanitize_string("  hello ") == "hello"
    for value in ("", "   ", "null", "undefined", "None", "{{first_name}}", {"a": 1}, True):
        assert sanitize_string(value) is None


def test_parse_tags_accepts_strings_and_objects():
    assert parse_tags("vip, lead ,vip,") == ("vip", "lead")
    assert parse_tags([{"name": "webinar"}, "vip", None, {"label": "x"}]) == ("webinar", "vip")
    assert parse_tags(42) == ()


def test_normalize_ghl_extracts_identity_consent_and_attribution():
    row = GhlContactRaw(
        id=10,
        external_id="g-1",
        fetched_at=FETCHED_AT,
        payload={
            "contactName": "Ana Pérez",
            "email": "ANA@example.com",
            "phone": "55 1234 5678",
            "tags": ["webinar", "vip"],
            "dndSettings": {"sms": {"status": "active"}},
            "manychat_subscriber_id": "777",
            "attributionSource": {"utmSource": "facebook", "campaignName": "spring"},
            "customFields": {"plan": "gold"},
        },
    )

    contact = normalize_ghl(row)

    assert contact is not None
    assert contact.source == "ghl"
    assert contact.raw_id == 10
    assert contact.external_id == "g-1"
    assert contact.email == "ana@example.com"
    assert contact.phone == "+525512345678"
    assert contact.raw_phone == "55 1234 5678"
    assert contact.full_name == "Ana Pérez"
    assert dict(contact.external_ids) == {"ghl": "g-1"}
    assert dict(contact.secondary_ids) == {"manychat": "777"}
    assert contact.tags == ("webinar", "vip")
    assert contact.opt_ins.whatsapp is True
    assert contact.opt_ins.sms is False
    assert contact.opt_ins.email is True
    assert contact.attribution.acquisition_source == "ghl"
    assert contact.attribution.utm_source == "facebook"
    assert contact.attribution.campaign == "spring"
    assert contact.arrived_at == FETCHED_AT

    metadata = contact.extra_metadata
    assert metadata["identities"] == {"ghl": "g-1", "manychat": "777"}
    assert metadata["marketing_context"]["tags"] == ["vip", "webinar"]
    assert metadata["engagement"]["custom_fields"] == {"plan": "gold"}
    assert "commercial_data" not in metadata


def test_normalize_ghl_dnd_closes_every_channel_and_joins_names():
    row = GhlContactRaw(
        id=11,
        external_id="g-2",
        fetched_at=FETCHED_AT,
        payload={"firstName": "Luis", "lastName": "Gómez", "email": "luis@example.com", "dnd": True},
    )

    contact = normalize_ghl(row)

    assert contact.full_name == "Luis Gómez"
    assert (contact.opt_ins.whatsapp, contact.opt_ins.sms, contact.opt_ins.email) == (False, False, False)


def test_normalize_ghl_without_identity_returns_none():
    row = GhlContactRaw(id=12, external_id="g-3", fetched_at=FETCHED_AT, payload={"email": "nope", "phone": "123"})
    assert normalize_ghl(row) is None


def test_normalize_manychat_consent_and_placeholder_id():
    row = ManychatContactRaw(
        id=20,
        subscriber_id="0",
        fetched_at=FETCHED_AT,
        payload={
            "first_name": "Eva",
            "last_name": "Ruiz",
            "whatsapp_phone": "+52 1 55 1234 5678",
            "optin_whatsapp": True,
            "optin_sms": "yes",
            "optin_email": False,
            "ghl_contact_id": "g-9",
            "tags": [{"name": "bot"}],
        },
    )

    contact = normalize_manychat(row)

    assert contact.external_id is None
    assert dict(contact.external_ids) == {}
    assert dict(contact.secondary_ids) == {"ghl": "g-9"}
    assert contact.phone == "+5215512345678"
    assert contact.email is None
    assert contact.is_phone_only
    assert contact.full_name == "Eva Ruiz"
    assert contact.opt_ins.whatsapp is True
    assert contact.opt_ins.sms is False
    assert contact.opt_ins.email is False
    assert contact.tags == ("bot",)


def test_normalize_manychat_email_consent_defaults_to_open():
    row = ManychatContactRaw(id=21, subscriber_id="s-1", fetched_at=FETCHED_AT, payload={"email": "x@example.com"})

    contact = normalize_manychat(row)

    assert contact.external_id == "s-1"
    assert contact.opt_ins.email is True
    assert contact.opt_ins.whatsapp is False


def test_normalize_csv_reads_columns_and_raw_data():
    created = datetime(2024, 2, 1, tzinfo=timezone.utc)
    row = CsvImportRaw(
        id=5,
        email=None,
        phone="55 1234 5678",
        full_name="Eva",
        source_type="csv",
        created_at=created,
        raw_data={
            "Email": "EVA@example.com",
            "stripe_customer_id": "cus_1",
            "ghl_contact_id": "g-2",
            "manychat_subscriber_id": "0",
            "tags": "alumni, vip",
        },
    )

    contact = normalize_csv(row)

    assert contact.external_id == "5"
    assert contact.email == "eva@example.com"
    assert contact.phone == "+525512345678"
    assert dict(contact.external_ids) == {"stripe": "cus_1"}
    assert dict(contact.secondary_ids) == {"ghl": "g-2"}
    assert contact.tags == ("alumni", "vip")
    assert contact.opt_ins.whatsapp is None
    assert contact.arrived_at == created
    assert contact.extra_metadata["commercial_data"] == {"stripe_customer_id": "cus_1"}


def test_normalize_record_rejects_unknown_source():
    with pytest.raises(UnknownSourceError):
        normalize_record("hubspot", object())


def test_snapshot_keeps_fields_needed_for_review_replay():
    row = GhlContactRaw(
        id=30,
        external_id="g-30",
        fetched_at=FETCHED_AT,
        payload={"email": "snap@example.com", "tags": "a,b", "dnd": True},
    )
    contact = normalize_ghl(row)

    restored = contact_from_snapshot(contact_to_snapshot(contact))

    assert restored == contact
