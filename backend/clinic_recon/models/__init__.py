from clinic_recon.models.base import Base
from clinic_recon.models.patient import Patient
from clinic_recon.models.intake import IntakeRecord, ReviewStatus
from clinic_recon.models.reservation import Reservation, ReservationStatus
from clinic_recon.models.reorder import Order, ReorderRequest, ReorderStatus
from clinic_recon.models.reconciliation_issue import ReconciliationIssue
from clinic_recon.models.notification_log import NotificationLog
from clinic_recon.models.identity_merge_event import IdentityMergeEvent

__all__ = [
    "Base",
    "Patient",
    "IntakeRecord",
    "ReviewStatus",
    "Reservation",
    "ReservationStatus",
    "ReorderRequest",
    "ReorderStatus",
    "Order",
    "ReconciliationIssue",
    "NotificationLog",
    "IdentityMergeEvent",
]
