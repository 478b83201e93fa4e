# Models package init
"""
Treatment AI Backend — ORM Models Package
==========================================

Importing this package registers every table with `Base.metadata`, which is
what Alembic's env.py relies on.
"""

from treatment_api.models.user import OtpCode, User, UserSession
from treatment_api.models.condition import ConditionMaster, UserCondition
from treatment_api.models.medication import MedicationMaster, UserMedication
from treatment_api.models.account_link import (
    AccountAccessLog,
    AccountLinkInvitation,
    LinkedAccount,
)
from treatment_api.models.health_timeline import HealthTimelineEntry
from treatment_api.models.sharing import SharedChatSession, SharingActivityLog, UserNotification
from treatment_api.models.wearable import HealthData, WearableConnection
from treatment_api.models.sdco_document import SdcoDocument
from treatment_api.models.diagnostic import DiagnosticSession, SessionSymptom

__all__ = [
    "User",
    "UserSession",
    "OtpCode",
    "ConditionMaster",
    "UserCondition",
    "MedicationMaster",
    "UserMedication",
    "AccountLinkInvitation",
    "LinkedAccount",
    "AccountAccessLog",
    "HealthTimelineEntry",
    "SharedChatSession",
    "UserNotification",
    "SharingActivityLog",
    "WearableConnection",
    "HealthData",
    "SdcoDocument",
    "DiagnosticSession",
    "SessionSymptom",
]
