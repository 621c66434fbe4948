"""
Normalization helpers for raw contact rows.

Every raw row is parsed exactly once here into a typed ``NormalizedContact``.
Downstream stages (resolver, merge engine, persistence) never look at the raw
payload again. A row that yields neither an email nor a phone normalizes to
``None`` and is skipped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Mapping

from unify_app.models import CsvImportRaw, GhlContactRaw, ManychatContactRaw

SOURCE_GHL = "ghl"
SOURCE_MANYCHAT = "manychat"
SOURCE_CSV = "csv"
SUPPORTED_SOURCES: tuple[str, ...] = (SOURCE_GHL, SOURCE_MANYCHAT, SOURCE_CSV)

PLATFORM_ID_COLUMNS: dict[str, str] = {
    "ghl": "ghl_contact_id",
    "manychat": "manychat_subscriber_id",
    "stripe": "stripe_customer_id",
    "paypal": "paypal_customer_id",
}

DEFAULT_COUNTRY_CODE = "52"
MAX_EMAIL_LENGTH = 255

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
NON_DIGIT_PATTERN = re.compile(r"\D")
_ABSENT_LITERALS = frozenset({"null", "undefined", "None"})
_GHL_DND_CHANNELS = {"whatsapp": "whatsApp", "sms": "sms", "email": "email"}
_UTM_KEYS = ("utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term")


@dataclass(frozen=True)
class OptIns:
    """Per-channel consent; ``None`` means the source did not say."""

    whatsapp: bool | None = None
    sms: bool | None = None
    email: bool | None = None


@dataclass(frozen=True)
class Attribution:
    acquisition_source: str | None = None
    campaign: str | None = None
    utm_source: str | None = None
    utm_medium: str | None = None
    utm_campaign: str | None = None
    utm_content: str | None = None
    utm_term: str | None = None

    def utm_fields(self) -> dict[str, str | None]:
        return {key: getattr(self, key) for key in _UTM_KEYS}


@dataclass(frozen=True)
class NormalizedContact:
    """Canonical identifier set derived from one raw row."""

    source: str
    raw_id: int
    external_id: str | None
    email: str | None
    phone: str | None
    raw_phone: str | None
    full_name: str | None
    external_ids: Mapping[str, str] = field(default_factory=dict)
    secondary_ids: Mapping[str, str] = field(default_factory=dict)
    tags: tuple[str, ...] = ()
    opt_ins: OptIns = field(default_factory=OptIns)
    attribution: Attribution = field(default_factory=Attribution)
    lead_status: str | None = None
    extra_metadata: Mapping[str, Any] = field(default_factory=dict)
    event_id: str | None = None
    arrived_at: datetime | None = None

    @property
    def has_identity(self) -> bool:
        return bool(self.email or self.phone)

    @property
    def is_phone_only(self) -> bool:
        return self.email is None and self.phone is not None


# ---------------------------------------------------------------------------
# Field-level helpers
# ---------------------------------------------------------------------------


def sanitize_string(value: Any) -> str | None:
    """Trim ``value`` and treat empty strings, null-ish literals and unresolved templates as absent."""
    if value is None or isinstance(value, (dict, list, tuple, set)):
        return None
    if isinstance(value, bool):
        return None
    text = str(value).strip()
    if not text or text in _ABSENT_LITERALS or text.startswith("{{"):
        return None
    return text


def normalize_email(value: Any) -> str | None:
    email = sanitize_string(value)
    if email is None:
        return None
    email = email.lower()
    if len(email) > MAX_EMAIL_LENGTH or not EMAIL_PATTERN.match(email):
        return None
    return email


def normalize_phone(value: Any, default_country_code: str = DEFAULT_COUNTRY_CODE) -> str | None:
    """
    Normalize a phone number to E.164.

    A leading ``+`` keeps the digits as they are. Otherwise leading zeros are
    dropped, a bare 10-digit number is treated as domestic and prefixed with
    ``default_country_code``, and anything of 11+ digits is assumed to already
    carry its country code. Shorter numbers are invalid.
    """
    text = sanitize_string(value)
    if text is None:
        return None
    has_plus = text.startswith("+")
    digits = NON_DIGIT_PATTERN.sub("", text)
    if not digits:
        return None
    if has_plus:
        return f"+{digits}" if len(digits) >= 10 else None

    digits = digits.lstrip("0")
    country_code = str(default_country_code or DEFAULT_COUNTRY_CODE).lstrip("+")
    if len(digits) == 10:
        return f"+{country_code}{digits}"
    if len(digits) >= 11:
        return f"+{digits}"
    return None


def parse_tags(value: Any) -> tuple[str, ...]:
    """Accept ``"a, b"`` strings or lists of strings / ``{"name": ...}`` objects."""
    if value is None:
        return ()
    if isinstance(value, str):
        candidates: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set)):
        candidates = value
    else:
        return ()

    seen: set[str] = set()
    tags: list[str] = []
    for item in candidates:
        if isinstance(item, Mapping):
            item = item.get("name")
        tag = sanitize_string(item)
        if tag is None or tag in seen:
            continue
        seen.add(tag)
        tags.append(tag)
    return tuple(tags)


def join_name(*parts: Any) -> str | None:
    cleaned = [part for part in (sanitize_string(p) for p in parts) if part]
    return " ".join(cleaned) if cleaned else None


def _first_present(data: Mapping[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = sanitize_string(data.get(key))
        if value is not None:
            return value
    return None


def _as_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _compact(data: Mapping[str, Any]) -> dict[str, Any]:
    compacted: dict[str, Any] = {}
    for key, value in data.items():
        if isinstance(value, Mapping):
            value = _compact(value)
        if value in (None, "", [], (), {}):
            continue
        compacted[key] = list(value) if isinstance(value, tuple) else value
    return compacted


def _extract_attribution(payload: Mapping[str, Any], *, default_source: str) -> Attribution:
    nested = payload.get("attributionSource")
    nested = nested if isinstance(nested, Mapping) else {}

    def pick(snake: str, camel: str) -> str | None:
        return _first_present(nested, camel, snake) or _first_present(payload, snake, camel)

    utm_campaign = pick("utm_campaign", "utmCampaign")
    campaign = utm_campaign or pick("campaign", "campaign") or _first_present(nested, "campaignName")
    return Attribution(
        acquisition_source=_first_present(payload, "source") or _first_present(nested, "sessionSource") or default_source,
        campaign=campaign,
        utm_source=pick("utm_source", "utmSource"),
        utm_medium=pick("utm_medium", "utmMedium"),
        utm_campaign=utm_campaign or campaign,
        utm_content=pick("utm_content", "utmContent"),
        utm_term=pick("utm_term", "utmTerm"),
    )


def build_metadata(
    *,
    source: str,
    external_ids: Mapping[str, str],
    payload: Mapping[str, Any],
    tags: Iterable[str],
    attribution: Attribution,
    lead_status: str | None,
) -> dict[str, Any]:
    """Assemble the nested ``customer_metadata`` tree; empty branches are dropped."""
    custom_fields = payload.get("custom_fields") or payload.get("customFields")
    tracking = {
        "fbp": _first_present(payload, "fbp"),
        "fbc": _first_present(payload, "fbc", "fbclid"),
        "gclid": _first_present(payload, "gclid"),
    }
    metadata = {
        "identities": dict(external_ids),
        "demographics": {
            "first_name": _first_present(payload, "first_name", "firstName", "nombre"),
            "last_name": _first_present(payload, "last_name", "lastName", "apellido"),
            "country": _first_present(payload, "country", "pais"),
            "city": _first_present(payload, "city", "ciudad"),
            "timezone": _first_present(payload, "timezone"),
            "gender": _first_present(payload, "gender"),
            "language": _first_present(payload, "language", "locale"),
        },
        "marketing_context": {
            "lead_status": lead_status,
            "tags": sorted(set(tags)),
            **attribution.utm_fields(),
            "tracking": tracking,
        },
        "engagement": {
            "last_source": source,
            "last_interaction": _first_present(
                payload, "last_interaction", "last_input_text", "lastActivity", "dateUpdated"
            ),
            "subscribed_at": _first_present(payload, "subscribed", "dateAdded"),
            "custom_fields": dict(custom_fields) if isinstance(custom_fields, Mapping) else None,
        },
        "commercial_data": {
            "stripe_customer_id": external_ids.get("stripe"),
            "paypal_customer_id": external_ids.get("paypal"),
            "product": _first_present(payload, "product", "producto"),
            "amount": _first_present(payload, "amount", "monto"),
        },
    }
    return _compact(metadata)


# ---------------------------------------------------------------------------
# Per-source normalizers
# ---------------------------------------------------------------------------


def _ghl_opt_ins(payload: Mapping[str, Any]) -> OptIns:
    dnd = bool(payload.get("dnd"))
    dnd_settings = payload.get("dndSettings") if isinstance(payload.get("dndSettings"), Mapping) else {}
    inbound = payload.get("inboundDndSettings") if isinstance(payload.get("inboundDndSettings"), Mapping) else {}

    def channel_open(channel_key: str) -> bool:
        for settings in (dnd_settings, inbound):
            channel = settings.get(channel_key)
            if isinstance(channel, Mapping) and channel.get("status") == "active":
                return False
        return not dnd

    return OptIns(
        whatsapp=channel_open(_GHL_DND_CHANNELS["whatsapp"]),
        sms=channel_open(_GHL_DND_CHANNELS["sms"]),
        email=channel_open(_GHL_DND_CHANNELS["email"]),
    )


def normalize_ghl(row: GhlContactRaw, *, default_country_code: str = DEFAULT_COUNTRY_CODE) -> NormalizedContact | None:
    payload: Mapping[str, Any] = row.payload or {}
    email = normalize_email(payload.get("email"))
    raw_phone = sanitize_string(payload.get("phone"))
    phone = normalize_phone(raw_phone, default_country_code)
    if not email and not phone:
        return None

    external_id = sanitize_string(row.external_id) or sanitize_string(payload.get("id"))
    external_ids = {SOURCE_GHL: external_id} if external_id else {}
    secondary_ids: dict[str, str] = {}
    manychat_id = sanitize_string(payload.get("manychat_subscriber_id"))
    if manychat_id and manychat_id != "0":
        secondary_ids[SOURCE_MANYCHAT] = manychat_id

    tags = parse_tags(payload.get("tags"))
    attribution = _extract_attribution(payload, default_source=SOURCE_GHL)
    lead_status = _first_present(payload, "lead_status", "leadStatus", "type")
    return NormalizedContact(
        source=SOURCE_GHL,
        raw_id=row.id,
        external_id=external_id,
        email=email,
        phone=phone,
        raw_phone=raw_phone,
        full_name=_first_present(payload, "contactName", "name") or join_name(payload.get("firstName"), payload.get("lastName")),
        external_ids=external_ids,
        secondary_ids=secondary_ids,
        tags=tags,
        opt_ins=_ghl_opt_ins(payload),
        attribution=attribution,
        lead_status=lead_status,
        extra_metadata=build_metadata(
            source=SOURCE_GHL,
            external_ids={**external_ids, **secondary_ids},
            payload=payload,
            tags=tags,
            attribution=attribution,
            lead_status=lead_status,
        ),
        event_id=_first_present(payload, "event_id", "eventId"),
        arrived_at=_as_aware(row.fetched_at),
    )


def normalize_manychat(
    row: ManychatContactRaw, *, default_country_code: str = DEFAULT_COUNTRY_CODE
) -> NormalizedContact | None:
    payload: Mapping[str, Any] = row.payload or {}
    email = normalize_email(payload.get("email"))
    raw_phone = _first_present(payload, "phone", "whatsapp_phone")
    phone = normalize_phone(raw_phone, default_country_code)
    if not email and not phone:
        return None

    subscriber_id = sanitize_string(row.subscriber_id) or sanitize_string(payload.get("id"))
    if subscriber_id == "0":
        subscriber_id = None
    external_ids = {SOURCE_MANYCHAT: subscriber_id} if subscriber_id else {}
    secondary_ids: dict[str, str] = {}
    ghl_id = sanitize_string(payload.get("ghl_contact_id"))
    if ghl_id:
        secondary_ids[SOURCE_GHL] = ghl_id

    tags = parse_tags(payload.get("tags"))
    attribution = _extract_attribution(payload, default_source=SOURCE_MANYCHAT)
    lead_status = _first_present(payload, "lead_status", "status")
    return NormalizedContact(
        source=SOURCE_MANYCHAT,
        raw_id=row.id,
        external_id=subscriber_id,
        email=email,
        phone=phone,
        raw_phone=raw_phone,
        full_name=join_name(payload.get("first_name"), payload.get("last_name")) or _first_present(payload, "name"),
        external_ids=external_ids,
        secondary_ids=secondary_ids,
        tags=tags,
        opt_ins=OptIns(
            whatsapp=payload.get("optin_whatsapp") is True,
            sms=payload.get("optin_sms") is True,
            email=payload.get("optin_email") is not False,
        ),
        attribution=attribution,
        lead_status=lead_status,
        extra_metadata=build_metadata(
            source=SOURCE_MANYCHAT,
            external_ids={**external_ids, **secondary_ids},
            payload=payload,
            tags=tags,
            attribution=attribution,
            lead_status=lead_status,
        ),
        event_id=_first_present(payload, "event_id", "eventId"),
        arrived_at=_as_aware(row.fetched_at),
    )


def normalize_csv(row: CsvImportRaw, *, default_country_code: str = DEFAULT_COUNTRY_CODE) -> NormalizedContact | None:
    raw_data: Mapping[str, Any] = row.raw_data or {}
    email = normalize_email(row.email) or normalize_email(_first_present(raw_data, "email", "Email", "EMAIL"))
    raw_phone = sanitize_string(row.phone) or _first_present(raw_data, "phone", "telefono", "Phone")
    phone = normalize_phone(raw_phone, default_country_code)
    if not email and not phone:
        return None

    external_ids: dict[str, str] = {}
    for platform in ("stripe", "paypal"):
        value = _first_present(raw_data, f"{platform}_customer_id")
        if value:
            external_ids[platform] = value
    secondary_ids: dict[str, str] = {}
    for platform in (SOURCE_GHL, SOURCE_MANYCHAT):
        value = _first_present(raw_data, PLATFORM_ID_COLUMNS[platform])
        if value and value != "0":
            secondary_ids[platform] = value

    tags = parse_tags(raw_data.get("tags"))
    attribution = _extract_attribution(raw_data, default_source=sanitize_string(row.source_type) or SOURCE_CSV)
    lead_status = _first_present(raw_data, "lead_status", "status")
    return NormalizedContact(
        source=SOURCE_CSV,
        raw_id=row.id,
        external_id=str(row.id),
        email=email,
        phone=phone,
        raw_phone=raw_phone,
        full_name=sanitize_string(row.full_name) or _first_present(raw_data, "name", "nombre", "full_name"),
        external_ids=external_ids,
        secondary_ids=secondary_ids,
        tags=tags,
        opt_ins=OptIns(),
        attribution=attribution,
        lead_status=lead_status,
        extra_metadata=build_metadata(
            source=SOURCE_CSV,
            external_ids={**external_ids, **secondary_ids},
            payload=raw_data,
            tags=tags,
            attribution=attribution,
            lead_status=lead_status,
        ),
        event_id=_first_present(raw_data, "event_id", "eventId"),
        arrived_at=_as_aware(row.created_at),
    )


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


def contact_to_snapshot(contact: NormalizedContact) -> dict[str, Any]:
    """Serialize ``contact`` into a JSON-safe dict (stored on review queue rows)."""
    return {
        "source": contact.source,
        "raw_id": contact.raw_id,
        "external_id": contact.external_id,
        "email": contact.email,
        "phone": contact.phone,
        "raw_phone": contact.raw_phone,
        "full_name": contact.full_name,
        "external_ids": dict(contact.external_ids),
        "secondary_ids": dict(contact.secondary_ids),
        "tags": list(contact.tags),
        "opt_ins": {"whatsapp": contact.opt_ins.whatsapp, "sms": contact.opt_ins.sms, "email": contact.opt_ins.email},
        "attribution": {
            "acquisition_source": contact.attribution.acquisition_source,
            "campaign": contact.attribution.campaign,
            **contact.attribution.utm_fields(),
        },
        "lead_status": contact.lead_status,
        "extra_metadata": dict(contact.extra_metadata),
        "event_id": contact.event_id,
        "arrived_at": contact.arrived_at.isoformat() if contact.arrived_at else None,
    }


def contact_from_snapshot(data: Mapping[str, Any]) -> NormalizedContact:
    opt_ins = data.get("opt_ins") or {}
    attribution = data.get("attribution") or {}
    arrived_at = data.get("arrived_at")
    return NormalizedContact(
        source=str(data.get("source") or ""),
        raw_id=int(data.get("raw_id") or 0),
        external_id=data.get("external_id"),
        email=data.get("email"),
        phone=data.get("phone"),
        raw_phone=data.get("raw_phone"),
        full_name=data.get("full_name"),
        external_ids=dict(data.get("external_ids") or {}),
        secondary_ids=dict(data.get("secondary_ids") or {}),
        tags=tuple(data.get("tags") or ()),
        opt_ins=OptIns(
            whatsapp=opt_ins.get("whatsapp"),
            sms=opt_ins.get("sms"),
            email=opt_ins.get("email"),
        ),
        attribution=Attribution(
            acquisition_source=attribution.get("acquisition_source"),
            campaign=attribution.get("campaign"),
            **{key: attribution.get(key) for key in _UTM_KEYS},
        ),
        lead_status=data.get("lead_status"),
        extra_metadata=dict(data.get("extra_metadata") or {}),
        event_id=data.get("event_id"),
        arrived_at=_as_aware(datetime.fromisoformat(arrived_at)) if arrived_at else None,
    )


class UnknownSourceError(ValueError):
    """Raised when a source tag has no registered fetcher or normalizer."""


_NORMALIZERS = {
    SOURCE_GHL: normalize_ghl,
    SOURCE_MANYCHAT: normalize_manychat,
    SOURCE_CSV: normalize_csv,
}


def normalize_record(source: str, row: Any, *, default_country_code: str = DEFAULT_COUNTRY_CODE) -> NormalizedContact | None:
    """Dispatch ``row`` to the normalizer registered for ``source``."""
    normalizer = _NORMALIZERS.get(source)
    if normalizer is None:
        raise UnknownSourceError(f"No normalizer registered for source '{source}'.")
    return normalizer(row, default_country_code=default_country_code)


__all__ = [
    "Attribution",
    "NormalizedContact",
    "OptIns",
    "PLATFORM_ID_COLUMNS",
    "SUPPORTED_SOURCES",
    "UnknownSourceError",
    "build_metadata",
    "contact_from_snapshot",
    "contact_to_snapshot",
    "normalize_csv",
    "normalize_email",
    "normalize_ghl",
    "normalize_manychat",
    "normalize_phone",
    "normalize_record",
    "parse_tags",
    "sanitize_string",
]
