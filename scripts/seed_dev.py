"""
Seed script: inserts a demo tenant's queue settings and a handful of leads.
Run: python -m scripts.seed_dev
"""

import asyncio
import json
import os
import sys

import asyncpg
from dotenv import load_dotenv

load_dotenv()

TENANT_ID = "demo-tenant"

QUEUE_SETTINGS = {
    "work_days": {
        "enabled": True,
        "work_days": [0, 1, 2, 3, 4],
        "business_hours": {"start": "09:00", "end": "17:00", "timezone": "Asia/Jerusalem"},
        "exclude_holidays": True,
        "custom_holidays": [],
    },
    "processing_targets": {
        "target_leads_per_month": 400,
        "target_leads_per_work_day": 20,
        "override_daily_target": None,
        "max_daily_capacity": 30,
        "weekend_processing": {"enabled": False, "reduced_target_percentage": 50},
    },
    "automation": {"auto_queue_preparation": True, "queue_preparation_time": "18:00"},
    "advanced": {"priority_weights": {"new_leads": 3, "follow_ups": 7, "qualified_leads": 9, "hot_leads": 10}},
}

LEADS = [
    {"name": "Dana Levi", "phone": "0501234567", "email": "dana@example.com", "bant_heat": "hot", "pipeline_status": "qualified"},
    {"name": "Avi Cohen", "phone": "+972 52-765-4321", "email": "avi@example.com", "bant_heat": "warm", "pipeline_status": "contacted"},
    {"name": "Noa Mizrahi", "phone": "054-111-2233", "email": "noa@example.com", "bant_heat": "cold", "pipeline_status": "new"},
    {"name": "Yossi Peretz", "phone": None, "email": "yossi@example.com", "bant_heat": "cold", "pipeline_status": "new"},
]


async def seed():
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        print("ERROR: DATABASE_URL not set in .env")
        sys.exit(1)

    conn = await asyncpg.connect(database_url)

    try:
        existing = await conn.fetchrow("SELECT tenant_id FROM queue_settings WHERE tenant_id = $1", TENANT_ID)
        if existing:
            print(f"Tenant '{TENANT_ID}' already exists. Skipping seed.")
            return

        await conn.execute(
            """
            INSERT INTO queue_settings (tenant_id, work_days, processing_targets, automation, advanced)
            VALUES ($1, $2::jsonb, $3::jsonb, $4::jsonb, $5::jsonb)
            """,
            TENANT_ID,
            json.dumps(QUEUE_SETTINGS["work_days"]),
            json.dumps(QUEUE_SETTINGS["processing_targets"]),
            json.dumps(QUEUE_SETTINGS["automation"]),
            json.dumps(QUEUE_SETTINGS["advanced"]),
        )
        print(f"Created queue settings for {TENANT_ID}")

        for lead in LEADS:
            row = await conn.fetchrow(
                """
                INSERT INTO leads (tenant_id, name, phone, email, bant_heat, pipeline_status)
                VALUES ($1, $2, $3, $4, $5, $6)
                RETURNING id
                """,
                TENANT_ID,
                lead["name"],
                lead["phone"],
                lead["email"],
                lead["bant_heat"],
                lead["pipeline_status"],
            )
            print(f"Created lead: {lead['name']} (id={row['id']})")

        print("\nSeed complete!")
        print(f"  Tenant ID: {TENANT_ID}")

    finally:
        await conn.close()


if __name__ == "__main__":
    asyncio.run(seed())
