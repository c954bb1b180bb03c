"""
Workflow vocabulary for radiology studies.

Holds the closed set of workflow statuses, the transition graph between them,
and the category classifier used by every list, filter, aggregation and export
path. Nothing here touches the database; the state machine that applies
transitions lives in study.services.

Data Structures:
    WorkflowStatus  - closed enum stored in Study.workflow_status
    Category        - dashboard buckets derived from a status
    TRANSITIONS     - adjacency set per status
    CATEGORY_BY_STATUS - the single status -> category lookup table

Design Principles:
    - One table per concern, no if/elif chains at call sites
    - classify() is pure and total: unknown input maps to UNKNOWN and is logged
"""

import logging

from django.db import models

from common.exceptions import InvalidStatusError

logger = logging.getLogger(__name__)


class WorkflowStatus(models.TextChoices):
    """Workflow states in order of typical progression."""

    NEW_STUDY_RECEIVED = 'new_study_received', 'New Study'
    PENDING_ASSIGNMENT = 'pending_assignment', 'Pending Assignment'
    ASSIGNED_TO_DOCTOR = 'assigned_to_doctor', 'Assigned to Doctor'
    DOCTOR_OPENED_REPORT = 'doctor_opened_report', 'Doctor Opened Report'
    REPORT_IN_PROGRESS = 'report_in_progress', 'Report In Progress'
    REPORT_FINALIZED = 'report_finalized', 'Report Finalized'
    REPORT_UPLOADED = 'report_uploaded', 'Report Uploaded'
    REPORT_DOWNLOADED_RADIOLOGIST = 'report_downloaded_radiologist', 'Downloaded by Radiologist'
    REPORT_DOWNLOADED = 'report_downloaded', 'Report Downloaded'
    FINAL_REPORT_DOWNLOADED = 'final_report_downloaded', 'Final Report Downloaded'
    ARCHIVED = 'archived', 'Archived'


class Category(models.TextChoices):
    """Coarse dashboard buckets."""

    PENDING = 'pending', 'Pending'
    INPROGRESS = 'inprogress', 'In Progress'
    COMPLETED = 'completed', 'Completed'
    ARCHIVED = 'archived', 'Archived'
    UNKNOWN = 'unknown', 'Unknown'


class AssignmentPriority(models.TextChoices):
    LOW = 'low', 'Low'
    NORMAL = 'normal', 'Normal'
    HIGH = 'high', 'High'
    URGENT = 'urgent', 'Urgent'


S = WorkflowStatus

TERMINAL_STATUSES = frozenset({S.ARCHIVED})

# Linear primary path plus two shortcuts: assigned -> in progress, and
# any non-terminal -> archived. report_finalized loops onto itself so a
# doctor can revise report content without touching finalized_at.
TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    S.NEW_STUDY_RECEIVED: frozenset({S.PENDING_ASSIGNMENT}),
    S.PENDING_ASSIGNMENT: frozenset({S.ASSIGNED_TO_DOCTOR}),
    S.ASSIGNED_TO_DOCTOR: frozenset({S.DOCTOR_OPENED_REPORT, S.REPORT_IN_PROGRESS}),
    S.DOCTOR_OPENED_REPORT: frozenset({S.REPORT_IN_PROGRESS}),
    S.REPORT_IN_PROGRESS: frozenset({S.REPORT_FINALIZED}),
    S.REPORT_FINALIZED: frozenset({S.REPORT_FINALIZED, S.REPORT_UPLOADED}),
    S.REPORT_UPLOADED: frozenset({S.REPORT_DOWNLOADED_RADIOLOGIST}),
    S.REPORT_DOWNLOADED_RADIOLOGIST: frozenset({S.REPORT_DOWNLOADED}),
    S.REPORT_DOWNLOADED: frozenset({S.FINAL_REPORT_DOWNLOADED}),
    S.FINAL_REPORT_DOWNLOADED: frozenset(),
    S.ARCHIVED: frozenset(),
}
for _status in S:
    if _status not in TERMINAL_STATUSES:
        TRANSITIONS[_status] = TRANSITIONS[_status] | {S.ARCHIVED}

# Statuses from which a study can be (re)assigned
ASSIGNABLE_STATUSES = frozenset({
    S.PENDING_ASSIGNMENT,
    S.ASSIGNED_TO_DOCTOR,
    S.DOCTOR_OPENED_REPORT,
    S.REPORT_IN_PROGRESS,
})

CATEGORY_BY_STATUS: dict[str, Category] = {
    S.NEW_STUDY_RECEIVED.value: Category.PENDING,
    S.PENDING_ASSIGNMENT.value: Category.PENDING,
    S.ASSIGNED_TO_DOCTOR.value: Category.PENDING,
    S.DOCTOR_OPENED_REPORT.value: Category.INPROGRESS,
    S.REPORT_IN_PROGRESS.value: Category.INPROGRESS,
    S.REPORT_FINALIZED.value: Category.COMPLETED,
    S.REPORT_UPLOADED.value: Category.COMPLETED,
    S.REPORT_DOWNLOADED_RADIOLOGIST.value: Category.COMPLETED,
    S.REPORT_DOWNLOADED.value: Category.COMPLETED,
    S.FINAL_REPORT_DOWNLOADED.value: Category.COMPLETED,
    S.ARCHIVED.value: Category.ARCHIVED,
}


def parse_status(value) -> WorkflowStatus:
    """Convert a raw value into a WorkflowStatus, rejecting unknown variants."""
    try:
        return WorkflowStatus(value)
    except ValueError:
        raise InvalidStatusError(value) from None


def classify(status) -> Category:
    """Map a workflow status to its dashboard category.

    Accepts enum members or raw strings (rows read from the database).
    Values outside the enum map to Category.UNKNOWN and are logged so the
    bad record can be investigated.

    Example:
        >>> classify('report_in_progress')
        <Category.INPROGRESS: 'inprogress'>
    """
    key = status.value if isinstance(status, WorkflowStatus) else status
    category = CATEGORY_BY_STATUS.get(key)
    if category is None:
        logger.warning(f"Unclassifiable workflow status: {status!r}")
        return Category.UNKNOWN
    return category


def statuses_for(category) -> list[str]:
    """All statuses that classify into the given category, in enum order."""
    category = Category(category)
    return [status.value for status in S if CATEGORY_BY_STATUS[status.value] == category]


def is_transition_allowed(current, target) -> bool:
    return WorkflowStatus(target) in TRANSITIONS.get(WorkflowStatus(current), frozenset())


def status_catalogue() -> list[dict[str, str]]:
    """Every status with its label and category, for filter dropdowns."""
    return [
        {'value': status.value, 'label': status.label, 'category': classify(status).value}
        for status in S
    ]
