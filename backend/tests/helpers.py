"""
Test data builders and the fixed clock used across the unit tests
"""
from datetime import datetime

from callqueue.domain.models.call_job import ContactPayload
from callqueue.domain.models.campaign import CampaignCreate

# Monday 14:00 UTC, inside the default 09:00-17:00 UTC window
NOW = datetime(2024, 6, 3, 14, 0, 0)

TENANT = "tenant-a"
OTHER_TENANT = "tenant-b"


def make_contacts(count: int, prefix: str = "+1555000") -> list:
    return [
        ContactPayload(phone_number=f"{prefix}{i:04d}", contact_id=f"contact-{i}", name=f"Contact {i}")
        for i in range(count)
    ]


def make_campaign(contacts: int = 3, **overrides) -> CampaignCreate:
    values = {
        "name": "Renewal reminders",
        "agent_id": "agent-1",
        "next_action": "Confirm renewal",
        "timezone": "UTC",
        "contacts": make_contacts(contacts),
    }
    values.update(overrides)
    return CampaignCreate(**values)
