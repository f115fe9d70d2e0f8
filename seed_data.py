"""
Seed data script for FundRaise database
Creates sample users, campaigns and default platform settings for testing

Usage:
    python seed_data.py
"""
from datetime import timedelta
from decimal import Decimal

from dotenv import load_dotenv
from sqlalchemy.orm import Session

load_dotenv()

from database.db import SessionLocal, create_tables  # noqa: E402
from database.models import Campaign, PlatformSetting, User, UserRole  # noqa: E402
from services.settings_service import SETTING_SOURCES  # noqa: E402
from services.auth_service import create_access_token  # noqa: E402


SETTING_DESCRIPTIONS = {
    "platform_fee_percentage": "Platform fee on donations (%)",
    "stripe_processing_fee_percentage": "Stripe card processing fee (%)",
    "stripe_processing_fee_fixed": "Stripe fixed fee per card payment",
    "payout_fee_percentage": "Platform fee on payouts (%)",
    "manual_payout_processing_fee_percentage": "Processing fee on manual payouts (%)",
    "minimum_payout_amount": "Minimum payout amount",
    "payout_holding_period_days": "Days before donated funds can be paid out",
    "auto_payout_enabled": "Automatically pay out eligible balances",
    "default_currency": "Default campaign currency",
}


def seed_settings(db: Session):
    """Write the default fee schedule to platform_settings"""
    created = 0
    for key, (_env, default) in SETTING_SOURCES.items():
        existing = db.query(PlatformSetting).filter(PlatformSetting.key == key).first()
        if existing:
            print(f"⚠️  Setting already exists: {key} = {existing.value}")
            continue
        db.add(PlatformSetting(key=key, value=default, description=SETTING_DESCRIPTIONS.get(key)))
        created += 1
        print(f"✅ Created setting: {key} = {default}")
    db.commit()
    return created


def seed_users(db: Session):
    """Create an admin and two campaign owners"""
    users_data = [
        {"email": "admin@fundraise.local", "full_name": "Platform Admin", "role": UserRole.SUPER_ADMIN},
        {"email": "owner@fundraise.local", "full_name": "Alex Owner", "role": UserRole.CAMPAIGN_OWNER},
        {"email": "builder@fundraise.local", "full_name": "Sam Builder", "role": UserRole.CAMPAIGN_OWNER},
    ]

    created_users = []
    for user_data in users_data:
        existing = db.query(User).filter(User.email == user_data["email"]).first()

        if not existing:
            user = User(**user_data)
            db.add(user)
            db.commit()
            db.refresh(user)
            created_users.append(user)
            print(f"✅ Created User: {user.email} (ID: {user.id})")
        else:
            created_users.append(existing)
            print(f"⚠️  User already exists: {existing.email} (ID: {existing.id})")

    return created_users


def seed_campaigns(db: Session, users: list):
    """Create sample campaigns"""
    campaigns_data = [
        {
            "owner": users[1],
            "title": "Community Garden Expansion",
            "slug": "community-garden-expansion",
            "goal_amount": Decimal("15000.00"),
            "stripe_connect_account_id": "acct_test_garden",
        },
        {
            "owner": users[1],
            "title": "Library Book Drive",
            "slug": "library-book-drive",
            "goal_amount": Decimal("5000.00"),
            "stripe_connect_account_id": None,  # Manual payouts only
        },
        {
            "owner": users[2],
            "title": "Youth Robotics Team",
            "slug": "youth-robotics-team",
            "goal_amount": Decimal("25000.00"),
            "stripe_connect_account_id": "acct_test_robotics",
        },
    ]

    created_campaigns = []
    for campaign_data in campaigns_data:
        owner = campaign_data.pop("owner")
        existing = db.query(Campaign).filter(Campaign.slug == campaign_data["slug"]).first()

        if not existing:
            campaign = Campaign(user_id=owner.id, **campaign_data)
            db.add(campaign)
            db.commit()
            db.refresh(campaign)
            created_campaigns.append(campaign)
            print(f"✅ Created Campaign: {campaign.title} (ID: {campaign.id})")
        else:
            created_campaigns.append(existing)
            print(f"⚠️  Campaign already exists: {existing.title} (ID: {existing.id})")

    return created_campaigns


def main():
    """Run all seed functions"""
    print("\n🌱 Starting database seed...\n")

    create_tables()
    db = SessionLocal()
    try:
        print("📦 Seeding Platform Settings...")
        seed_settings(db)

        print("\n📦 Seeding Users...")
        users = seed_users(db)

        print("\n📦 Seeding Campaigns...")
        campaigns = seed_campaigns(db, users)

        print(f"\n✅ Seed complete!")
        print(f"   - {len(users)} Users")
        print(f"   - {len(campaigns)} Campaigns")

        print("\n🔑 Bearer tokens (valid 24h):")
        for user in users:
            token = create_access_token({"user_id": user.id, "email": user.email}, expires_delta=timedelta(hours=24))
            print(f"   {user.email}: {token}")
        print("\nYou can now test the API with real data!\n")
    finally:
        db.close()


if __name__ == "__main__":
    main()
