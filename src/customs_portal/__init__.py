"""
Customs Portal: declarative submission of customs declarations into external web portals.

Portal behaviour (pages, field mappings, dropdown translations, workflow steps)
is configuration; this package resolves declaration data against it, drives a
browser through the portal and keeps an audit trail of every attempt.
"""

__version__ = "0.1.0"

from customs_portal.core.models import DeclarationBundle, SubmissionRecord, Target
from customs_portal.core.store import TargetConfigStore
from customs_portal.service import SubmissionService, create_submission_service

__all__ = [
    "DeclarationBundle",
    "SubmissionRecord",
    "Target",
    "TargetConfigStore",
    "SubmissionService",
    "create_submission_service",
]
