# scripts/seed_database.py
"""
Database seeding script.
Populates the raw source tables with overlapping sample leads so a unification
run has duplicates, phone-only records and conflicts to work through.
"""

import argparse
import os
import random
import sys
from datetime import datetime, timedelta, timezone

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from faker import Faker

from app import app

fake = Faker()
from unify_app.models import (  # noqa: E402
    Client,
    ContactIdentity,
    CsvImportRaw,
    CsvProcessingStatus,
    GhlContactRaw,
    LeadEvent,
    ManychatContactRaw,
    MergeConflict,
    SyncRun,
    db,
)

# Statistics tracking
stats = {
    "ghl": 0,
    "manychat": 0,
    "csv": 0,
    "errors": [],
}

TAG_POOL = ["webinar", "vip", "promo-marzo", "whatsapp", "retargeting", "cold"]
UTM_SOURCES = ["facebook", "instagram", "google", "tiktok"]


def _commit_batch(pending_count, batch_size):
    """Commit the current SQLAlchemy session if we've reached the batch threshold."""
    if pending_count >= batch_size:
        try:
            db.session.commit()
            return 0
        except Exception as exc:  # noqa: BLE001 - surface commit issues during seeding
            db.session.rollback()
            stats["errors"].append(f"Batch commit failed: {exc}")
            print(f"  ❌ Batch commit failed: {exc}")
            return 0
    return pending_count


def clear_database():
    """Delete unifier output and raw records"""
    print("Clearing existing data...")
    for model in (LeadEvent, ContactIdentity, MergeConflict, SyncRun, CsvImportRaw, GhlContactRaw, ManychatContactRaw):
        db.session.query(model).delete()
    db.session.query(Client).delete()
    db.session.commit()
    print("  ✓ Cleared")


def _mx_phone():
    return f"55{fake.msisdn()[:8]}"


def _person():
    first = fake.first_name()
    last = fake.last_name()
    return {
        "first_name": first,
        "last_name": last,
        "email": f"{first}.{last}.{fake.random_int(1, 999)}@example.com".lower(),
        "phone": _mx_phone(),
    }


def seed_ghl(people, base_time, dry_run=False):
    print("Seeding GoHighLevel contacts...")
    pending = 0
    for index, person in enumerate(people):
        payload = {
            "id": f"ghl-{index + 1}",
            "firstName": person["first_name"],
            "lastName": person["last_name"],
            "email": person["email"],
            "phone": person["phone"],
            "tags": random.sample(TAG_POOL, k=2),
            "attributionSource": {"utmSource": random.choice(UTM_SOURCES), "campaign": "lanzamiento"},
            "dndSettings": {"WhatsApp": {"status": random.choice(["active", "inactive"])}},
        }
        if dry_run:
            stats["ghl"] += 1
            continue
        db.session.add(
            GhlContactRaw(
                external_id=payload["id"],
                payload=payload,
                fetched_at=base_time + timedelta(minutes=index),
            )
        )
        stats["ghl"] += 1
        pending = _commit_batch(pending + 1, 100)
    if not dry_run:
        db.session.commit()
    print(f"  ✓ {stats['ghl']} GoHighLevel contacts")


def seed_manychat(people, base_time, dry_run=False):
    """Phone-only subscribers overlapping the GoHighLevel contacts."""
    print("Seeding ManyChat subscribers...")
    pending = 0
    for index, person in enumerate(people):
        payload = {
            "first_name": person["first_name"],
            "last_name": person["last_name"],
            "whatsapp_phone": person["phone"],
            "optin_whatsapp": True,
            "tags": ["whatsapp"],
        }
        if index % 3 == 0:
            payload["email"] = person["email"]
        if dry_run:
            stats["manychat"] += 1
            continue
        db.session.add(
            ManychatContactRaw(
                subscriber_id=str(fake.random_number(digits=9, fix_len=True)),
                payload=payload,
                fetched_at=base_time + timedelta(minutes=index, seconds=30),
            )
        )
        stats["manychat"] += 1
        pending = _commit_batch(pending + 1, 100)
    if not dry_run:
        db.session.commit()
    print(f"  ✓ {stats['manychat']} ManyChat subscribers")


def seed_csv(people, dry_run=False):
    """Imported spreadsheet rows: re-used emails with new phones plus brand new leads."""
    print("Seeding CSV import rows...")
    rows = [
        {
            "email": person["email"].upper(),
            "phone": _mx_phone(),
            "full_name": f"{person['first_name']} {person['last_name']}",
        }
        for person in people
    ]
    rows.extend(
        {"email": fake.email(), "phone": None, "full_name": fake.name()}
        for _ in range(max(1, len(people) // 2))
    )
    pending = 0
    for row_number, row in enumerate(rows, start=1):
        if dry_run:
            stats["csv"] += 1
            continue
        db.session.add(
            CsvImportRaw(
                import_id="seed",
                row_number=row_number,
                email=row["email"],
                phone=row["phone"],
                full_name=row["full_name"],
                raw_data={"tags": "csv, seed", "utm_source": random.choice(UTM_SOURCES)},
                processing_status=CsvProcessingStatus.STAGED,
            )
        )
        stats["csv"] += 1
        pending = _commit_batch(pending + 1, 100)
    if not dry_run:
        db.session.commit()
    print(f"  ✓ {stats['csv']} CSV rows")


def seed_database(count=50, clear=False, dry_run=False, seed=None):
    with app.app_context():
        db.create_all()
        if seed is not None:
            Faker.seed(seed)
            random.seed(seed)
        if clear and not dry_run:
            clear_database()

        people = [_person() for _ in range(count)]
        base_time = datetime.now(timezone.utc) - timedelta(hours=1)
        seed_ghl(people, base_time, dry_run=dry_run)
        seed_manychat(people[: count // 2], base_time, dry_run=dry_run)
        seed_csv(people[count // 4 :], dry_run=dry_run)

        print("\nSeeding summary:")
        print(f"  GoHighLevel: {stats['ghl']}")
        print(f"  ManyChat:    {stats['manychat']}")
        print(f"  CSV:         {stats['csv']}")
        if stats["errors"]:
            print(f"\n  ⚠️  {len(stats['errors'])} errors:")
            for error in stats["errors"]:
                print(f"    - {error}")
        if dry_run:
            print("\n(dry run: nothing was written)")


def main():
    """Command-line interface"""
    parser = argparse.ArgumentParser(description="Seed the raw source tables with sample leads")
    parser.add_argument(
        "--count",
        type=int,
        default=50,
        help="Number of people to generate (default: 50)",
    )
    parser.add_argument(
        "--clear",
        action="store_true",
        help="Clear existing data before seeding",
    )
    parser.add_argument(
        "--seed",
        type=int,
        help="Random seed for reproducible data",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be created without actually creating",
    )

    args = parser.parse_args()
    seed_database(count=args.count, clear=args.clear, dry_run=args.dry_run, seed=args.seed)


if __name__ == "__main__":
    main()
