"""Domain models"""

# Queue models
from .call_job import (
    JobStatus,
    Lane,
    CallOutcome,
    CallJob,
    ContactPayload,
)

# Campaign models
from .calling_window import CallingWindow
from .campaign import (
    CampaignStatus,
    CampaignCreate,
    CampaignPatch,
    CampaignView,
)

# Analytics
from .analytics import CampaignAnalytics

__all__ = [
    # Queue
    "JobStatus",
    "Lane",
    "CallOutcome",
    "CallJob",
    "ContactPayload",
    # Campaigns
    "CallingWindow",
    "CampaignStatus",
    "CampaignCreate",
    "CampaignPatch",
    "CampaignView",
    # Analytics
    "CampaignAnalytics",
]
