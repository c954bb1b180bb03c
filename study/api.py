"""
Django Ninja API endpoints for the study workflow.

Architecture:
    - router: Mounted at /api/v1/studies
    - POST /                    Ingest a study (idempotent)
    - GET  /{uid}               Study detail with status history and TAT
    - POST /{uid}/transition    Workflow transition
    - POST /{uid}/assign        Assign or reassign to a doctor
    - POST /{uid}/start         Doctor starts the report
    - POST /{uid}/finalize      Doctor finalizes the report
    - GET  /{uid}/tat           TAT minutes, formatted units and tiers

Error Handling:
    Endpoints do not catch domain exceptions. The NinjaAPI exception handler
    in config.urls maps each WorkflowServiceError to its HTTP status
    (404 NotFound, 409 InvalidTransition/ConcurrentModification,
    403 NotAssignedToCaller, 422 invalid input) with a to_error_dict() body.

Actor:
    The identity written to the status ledger is the authenticated user when
    there is one, otherwise the X-Actor-Id header. Identity issuance is
    handled outside this service.

See Also:
    - Schemas: study.schemas
    - Services: study.services.StudyService, study.services.AssignmentService
"""

import logging

from ninja import Router

from study.schemas import (
    AssignRequest,
    FinalizeReportRequest,
    StartReportRequest,
    StudyDetail,
    StudyIngestRequest,
    StudyOut,
    StudyTATResponse,
    TransitionRequest,
)
from study.services import AssignmentService, StudyService

logger = logging.getLogger(__name__)

# ========== ROUTER SETUP ==========
# Endpoints will be mounted at /api/v1/studies/ prefix
router = Router()


def get_actor(request) -> str | None:
    """Identity for ledger attribution."""
    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return user.get_username()
    return request.headers.get('X-Actor-Id') or None


@router.post('/', response={200: StudyOut, 201: StudyOut})
def ingest_study(request, payload: StudyIngestRequest):
    """
    Ingest a study.

    Returns 201 with the new study, or 200 with the existing one when the
    study_instance_uid was already ingested.
    """
    study, created = StudyService.ingest_study(actor=get_actor(request), **payload.dict())
    return (201 if created else 200), study.to_dict()


@router.get('/{study_uid}', response=StudyDetail)
def get_study_detail(request, study_uid: str):
    """
    Get complete study information including the status ledger.

    HTTP Status Codes:
        - 200 OK: Study found
        - 404 Not Found: No study with this UID
    """
    return StudyService.get_study_detail(study_uid)


@router.post('/{study_uid}/transition', response=StudyOut)
def transition_study(request, study_uid: str, payload: TransitionRequest):
    """
    Move a study to another workflow status.

    HTTP Status Codes:
        - 200 OK: Transition applied
        - 404 Not Found: No study with this UID
        - 409 Conflict: Target not reachable, or study changed concurrently
        - 422 Unprocessable Entity: Unknown status value
    """
    study = StudyService.transition(
        study_uid,
        payload.target_status,
        actor=get_actor(request),
        note=payload.note,
    )
    return study.to_dict()


@router.post('/{study_uid}/assign', response=StudyOut)
def assign_study(request, study_uid: str, payload: AssignRequest):
    study = AssignmentService.assign(
        study_uid,
        payload.doctor_id,
        priority=payload.priority,
        actor=get_actor(request),
    )
    return study.to_dict()


@router.post('/{study_uid}/start', response=StudyOut)
def start_report(request, study_uid: str, payload: StartReportRequest):
    """403 when the study is assigned to another doctor."""
    study = AssignmentService.start_report(study_uid, payload.doctor_id, actor=get_actor(request))
    return study.to_dict()


@router.post('/{study_uid}/finalize', response=StudyOut)
def finalize_report(request, study_uid: str, payload: FinalizeReportRequest):
    """403 when the study is assigned to another doctor."""
    study = AssignmentService.finalize_report(
        study_uid,
        payload.doctor_id,
        payload.content,
        actor=get_actor(request),
    )
    return study.to_dict()


@router.get('/{study_uid}/tat', response=StudyTATResponse)
def get_study_tat(request, study_uid: str):
    return StudyService.get_study_tat(study_uid)
