"""
Business logic layer for the study workflow.

This module implements the state machine and the assignment protocol. It is
the only code that writes Study.workflow_status, the assignment fields, the
report timestamps and the status ledger.

PRAGMATIC DESIGN:
    - Direct function calls with no Django signals or managers
    - Every write is a conditional UPDATE (compare-and-swap) keyed on the
      fields the caller read: workflow_status and, for doctor actions, the
      current assignee. Zero rows updated means someone else got there first.
    - One transaction per study write; no cross-study transactions
    - Failed writes raise domain exceptions and are never retried here

Architecture:
    StudyService
    ├── Ingestion: ingest_study()
    ├── Read Operations: get_study(), get_study_detail(), get_study_tat()
    ├── State Machine: transition()
    └── Write Core: _write(), _append_history(), _refresh_timing(), _verify_ledger()

    AssignmentService
    ├── assign()
    ├── start_report()
    └── finalize_report()

See Also:
    - Models: study.models
    - Vocabulary and transition graph: study.workflow
    - TAT engine: study.tat
    - Exceptions: common.exceptions
"""

import logging
from datetime import datetime
from typing import Any

from django.db import IntegrityError, models, transaction
from django.db.models import F, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from common.config import ServiceConfig
from common.exceptions import (
    ConcurrentModificationError,
    DoctorNotFoundError,
    InactiveDoctorError,
    InvalidSearchParameterError,
    InvalidTransitionError,
    LabNotFoundError,
    LedgerInconsistencyError,
    NotAssignedToCallerError,
    StudyNotFoundError,
)
from study.models import Doctor, Lab, Patient, Study, StudyStatusHistory
from study.tat import TIMING_FIELDS, compute_tat, parse_study_date
from study.workflow import (
    ASSIGNABLE_STATUSES,
    AssignmentPriority,
    WorkflowStatus,
    is_transition_allowed,
    parse_status,
)

logger = logging.getLogger(__name__)


# Statuses that only make sense with a doctor bound to the study
REQUIRES_ASSIGNMENT = frozenset({
    WorkflowStatus.ASSIGNED_TO_DOCTOR,
    WorkflowStatus.DOCTOR_OPENED_REPORT,
    WorkflowStatus.REPORT_IN_PROGRESS,
    WorkflowStatus.REPORT_FINALIZED,
})

# Set-once timestamp written when a study first enters the status
FIRST_ENTRY_TIMESTAMPS = {
    WorkflowStatus.REPORT_IN_PROGRESS: 'report_started_at',
    WorkflowStatus.REPORT_FINALIZED: 'report_finalized_at',
    WorkflowStatus.ARCHIVED: 'archived_at',
}


def _set_once(field_name: str, now: datetime) -> Coalesce:
    return Coalesce(F(field_name), Value(now, output_field=models.DateTimeField()))


class StudyService:
    """
    Service layer for study state.

    Design Principles:
        1. Read a snapshot, validate against it, then write conditioned on it
        2. The ledger is appended in the same transaction as the status write
        3. After every write the ledger tail must equal workflow_status
        4. Timing cache is recomputed inside the write transaction

    Methods:
        - ingest_study(): Create a study (idempotent on study_instance_uid)
        - get_study(): Fetch one study with its references
        - get_study_detail(): Study plus full status history and TAT
        - get_study_tat(): TAT minutes, formatted units and tiers
        - transition(): Validate and apply a workflow transition
    """

    @staticmethod
    def ingest_study(
        study_instance_uid: str,
        accession_number: str = '',
        patient_id: str | None = None,
        patient_name: str = '',
        gender: str = '',
        lab_id: int | None = None,
        modalities: list[str] | None = None,
        series_count: int = 0,
        instance_count: int = 0,
        study_date: str = '',
        exam_description: str = '',
        referring_physician: str = '',
        actor: str | None = None,
    ) -> tuple[Study, bool]:
        """
        Create a study in new_study_received with its seeded ledger entry.

        Ingestion is idempotent: a second call with the same
        study_instance_uid returns the existing study untouched.

        Args:
            study_instance_uid: DICOM StudyInstanceUID
            lab_id: Source facility, must exist when given
            study_date: YYYYMMDD, empty when unknown
            actor: Identity recorded on the first ledger entry

        Returns:
            (study, created) tuple

        Raises:
            LabNotFoundError: lab_id does not resolve
            InvalidSearchParameterError: study_date is not YYYYMMDD
                or a count is negative
        """
        existing = Study.objects.filter(pk=study_instance_uid).first()
        if existing is not None:
            logger.info(f"Study {study_instance_uid} already ingested, returning existing record")
            return existing, False

        if study_date and parse_study_date(study_date) is None:
            raise InvalidSearchParameterError('study_date', study_date, 'expected YYYYMMDD')
        for name, value in (('series_count', series_count), ('instance_count', instance_count)):
            if value < 0:
                raise InvalidSearchParameterError(name, value, 'must not be negative')

        lab = None
        if lab_id is not None:
            lab = Lab.objects.filter(pk=lab_id).first()
            if lab is None:
                raise LabNotFoundError(lab_id)

        try:
            with transaction.atomic():
                patient = None
                if patient_id:
                    patient, _ = Patient.objects.get_or_create(
                        patient_id=patient_id,
                        defaults={'patient_name': patient_name, 'gender': gender},
                    )

                now = timezone.now()
                study = Study.objects.create(
                    study_instance_uid=study_instance_uid,
                    accession_number=accession_number,
                    patient=patient,
                    lab=lab,
                    modalities=list(modalities or []),
                    series_count=series_count,
                    instance_count=instance_count,
                    study_date=study_date,
                    exam_description=exam_description,
                    referring_physician=referring_physician,
                    workflow_status=WorkflowStatus.NEW_STUDY_RECEIVED,
                    created_at=now,
                    updated_at=now,
                )
                StudyStatusHistory.objects.create(
                    study=study,
                    sequence=1,
                    status=WorkflowStatus.NEW_STUDY_RECEIVED,
                    changed_at=now,
                    changed_by=actor or '',
                    note='Study received',
                )
        except IntegrityError:
            # Lost an ingest race on the primary key
            study = Study.objects.filter(pk=study_instance_uid).first()
            if study is None:
                raise
            return study, False

        logger.info(f"Ingested study {study_instance_uid} (lab={lab_id}, modalities={study.modalities})")
        return study, True

    @staticmethod
    def get_study(study_uid: str) -> Study:
        """Fetch a study with patient, lab and doctor rows joined."""
        try:
            return Study.objects.select_related(
                'patient', 'lab', 'assigned_doctor', 'finalized_by'
            ).get(pk=study_uid)
        except Study.DoesNotExist:
            raise StudyNotFoundError(study_uid) from None

    @staticmethod
    def get_study_detail(study_uid: str) -> dict[str, Any]:
        """
        Get complete study information including the status ledger.

        Returns:
            Study.to_dict() plus 'status_history' (oldest first) and 'tat'

        Raises:
            StudyNotFoundError: No study with this UID
        """
        study = StudyService.get_study(study_uid)
        result = study.to_dict()
        result['status_history'] = [entry.to_dict() for entry in study.status_history.order_by('sequence')]
        result['tat'] = StudyService._tat_payload(study)
        return result

    @staticmethod
    def get_study_tat(study_uid: str) -> dict[str, Any]:
        study = StudyService.get_study(study_uid)
        return {'study_instance_uid': study.study_instance_uid, **StudyService._tat_payload(study)}

    @staticmethod
    def _tat_payload(study: Study) -> dict[str, Any]:
        result = compute_tat(study)
        return {
            'minutes': result.as_dict(),
            'formatted': result.formatted(),
            'tiers': result.tiers(),
            'anomalies': result.anomalies,
        }

    @staticmethod
    def transition(
        study_uid: str,
        target_status: str,
        actor: str | None = None,
        note: str = '',
    ) -> Study:
        """
        Validate and apply a workflow transition.

        The target must be in the adjacency set of the current status.
        Archiving requires a note. report_finalized is only reachable through
        AssignmentService.finalize_report, which records the author and the
        doctor's completion. The other assignment-stage statuses require a
        bound doctor.

        Args:
            study_uid: Study to move
            target_status: WorkflowStatus value
            actor: Identity recorded in the ledger
            note: Free text recorded in the ledger

        Returns:
            The study as stored after the write

        Raises:
            StudyNotFoundError: No study with this UID
            InvalidStatusError: target_status is not a workflow status
            InvalidTransitionError: target not reachable from current status
            ConcurrentModificationError: status changed since it was read

        Example:
            >>> StudyService.transition(uid, 'pending_assignment', actor='admin')
        """
        target = parse_status(target_status)
        study = StudyService.get_study(study_uid)
        current = WorkflowStatus(study.workflow_status)

        StudyService._check_transition(study, current, target)
        if target == WorkflowStatus.REPORT_FINALIZED:
            logger.warning(f"Rejected generic finalize of {study_uid}; finalize_report is required")
            raise InvalidTransitionError(
                study_uid, current.value, target.value, reason='reports are finalized through finalize_report',
            )
        if target == WorkflowStatus.ARCHIVED and not note.strip():
            logger.warning(f"Rejected archive of {study_uid} without a note")
            raise InvalidTransitionError(study_uid, current.value, target.value, reason='archiving requires a note')
        if target in REQUIRES_ASSIGNMENT and study.assigned_doctor_id is None:
            logger.warning(f"Rejected {current} -> {target} for unassigned study {study_uid}")
            raise InvalidTransitionError(study_uid, current.value, target.value, reason='study has no assigned doctor')

        return StudyService._write(
            study,
            target,
            operation='transition',
            actor=actor,
            note=note,
        )

    # ========== WRITE CORE ==========

    @staticmethod
    def _check_transition(study: Study, current: WorkflowStatus, target: WorkflowStatus) -> None:
        if not is_transition_allowed(current, target):
            logger.warning(f"Rejected transition for {study.pk}: {current} -> {target}")
            raise InvalidTransitionError(study.pk, current.value, target.value)

    @staticmethod
    def _write(
        study: Study,
        target: WorkflowStatus,
        operation: str,
        actor: str | None = None,
        note: str = '',
        guard: dict[str, Any] | None = None,
        updates: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Study:
        """
        Apply one conditional write to a study and append its ledger entry.

        The UPDATE is filtered on the snapshot's workflow_status plus any
        extra guard fields. If no row matches, the snapshot is stale and
        ConcurrentModificationError is raised with nothing written.
        """
        now = now or timezone.now()
        expected = {'workflow_status': study.workflow_status, **(guard or {})}

        values: dict[str, Any] = {'workflow_status': target, 'updated_at': now, **(updates or {})}
        first_entry_field = FIRST_ENTRY_TIMESTAMPS.get(target)
        if first_entry_field:
            values[first_entry_field] = _set_once(first_entry_field, now)

        with transaction.atomic():
            updated = Study.objects.filter(pk=study.pk, **expected).update(**values)
            if updated == 0:
                logger.warning(f"CAS failed for {study.pk} during {operation}; expected {expected}")
                raise ConcurrentModificationError(study.pk, operation, expected)

            StudyService._append_history(study.pk, target, actor, note, now)
            StudyService._refresh_timing(study.pk)
            StudyService._verify_ledger(study.pk)

        if target != study.workflow_status:
            logger.info(f"Study {study.pk}: {study.workflow_status} -> {target} by {actor or 'system'}")
        else:
            logger.info(f"Study {study.pk}: {operation} in {target} by {actor or 'system'}")
        return StudyService.get_study(study.pk)

    @staticmethod
    def _append_history(
        study_uid: str,
        status: WorkflowStatus,
        actor: str | None,
        note: str,
        now: datetime,
    ) -> StudyStatusHistory:
        # Runs after the guarded UPDATE, so the study row is already locked
        tail = StudyStatusHistory.objects.filter(study_id=study_uid).order_by('-sequence').first()
        sequence = tail.sequence + 1 if tail else 1
        changed_at = max(now, tail.changed_at) if tail else now
        return StudyStatusHistory.objects.create(
            study_id=study_uid,
            sequence=sequence,
            status=status,
            changed_at=changed_at,
            changed_by=actor or '',
            note=(note or '')[:ServiceConfig.LEDGER_NOTE_MAX_LENGTH],
        )

    @staticmethod
    def _refresh_timing(study_uid: str) -> None:
        """Recompute the cached TAT minutes from the stored timestamps."""
        study = Study.objects.get(pk=study_uid)
        result = compute_tat(study).as_dict()
        Study.objects.filter(pk=study_uid).update(
            **{column: result[name] for name, column in TIMING_FIELDS.items()}
        )

    @staticmethod
    def _verify_ledger(study_uid: str) -> None:
        status = Study.objects.values_list('workflow_status', flat=True).get(pk=study_uid)
        tail = StudyStatusHistory.objects.filter(study_id=study_uid).order_by('-sequence').first()
        tail_status = tail.status if tail else None
        if tail_status != status:
            logger.error(f"Ledger tail {tail_status!r} != workflow status {status!r} for {study_uid}")
            raise LedgerInconsistencyError(study_uid, status, tail_status)


class AssignmentService:
    """
    Binds studies to doctors and runs the doctor-side report actions.

    A study holds at most one assignment, stored on the Study row.
    Which studies a doctor holds is always Study.objects.filter(assigned_doctor=...).
    Doctor counters updated here are a display cache.
    """

    @staticmethod
    def _get_active_doctor(doctor_id: int) -> Doctor:
        doctor = Doctor.objects.filter(pk=doctor_id).first()
        if doctor is None:
            raise DoctorNotFoundError(doctor_id)
        if not doctor.is_active:
            raise InactiveDoctorError(doctor_id)
        return doctor

    @staticmethod
    def _check_caller(study: Study, doctor_id: int) -> None:
        if study.assigned_doctor_id != doctor_id:
            logger.warning(
                f"Doctor {doctor_id} acted on {study.pk} assigned to {study.assigned_doctor_id}"
            )
            raise NotAssignedToCallerError(study.pk, doctor_id, study.assigned_doctor_id)

    @staticmethod
    def assign(
        study_uid: str,
        doctor_id: int,
        priority: str = AssignmentPriority.NORMAL,
        actor: str | None = None,
    ) -> Study:
        """
        Assign or reassign a study to a doctor.

        From pending_assignment the study moves to assigned_to_doctor. From
        any later assignable status the assignment is replaced and the status
        kept; report_started_at is left as is. Reassigning to the current
        doctor only updates the priority.

        The write is guarded on the status and assignee that were read.

        Raises:
            StudyNotFoundError, DoctorNotFoundError, InactiveDoctorError
            InvalidSearchParameterError: unknown priority
            InvalidTransitionError: study is not in an assignable status
            ConcurrentModificationError: status or assignee changed since read
        """
        try:
            priority = AssignmentPriority(priority)
        except ValueError:
            raise InvalidSearchParameterError(
                'priority', priority, f'must be one of {AssignmentPriority.values}'
            ) from None

        doctor = AssignmentService._get_active_doctor(doctor_id)
        study = StudyService.get_study(study_uid)
        current = WorkflowStatus(study.workflow_status)

        if current not in ASSIGNABLE_STATUSES:
            logger.warning(f"Rejected assignment of {study_uid} in status {current}")
            raise InvalidTransitionError(
                study_uid, current.value, WorkflowStatus.ASSIGNED_TO_DOCTOR.value,
                reason='study is not in an assignable status',
            )

        guard = {'assigned_doctor_id': study.assigned_doctor_id}

        if study.assigned_doctor_id == doctor.pk:
            updated = Study.objects.filter(
                pk=study_uid, workflow_status=current, **guard
            ).update(priority=priority, updated_at=timezone.now())
            if updated == 0:
                raise ConcurrentModificationError(study_uid, 'assign', {'workflow_status': current, **guard})
            logger.info(f"Study {study_uid}: priority set to {priority} for doctor {doctor.pk}")
            return StudyService.get_study(study_uid)

        now = timezone.now()
        updates = {
            'assigned_doctor_id': doctor.pk,
            'assigned_at': now,
            'assigned_by': actor or '',
            'priority': priority,
        }

        if current == WorkflowStatus.PENDING_ASSIGNMENT:
            target = WorkflowStatus.ASSIGNED_TO_DOCTOR
            note = f'Assigned to doctor {doctor.pk}'
        else:
            target = current
            note = f'Reassigned from doctor {study.assigned_doctor_id} to doctor {doctor.pk}'

        with transaction.atomic():
            study = StudyService._write(
                study,
                target,
                operation='assign',
                actor=actor,
                note=note,
                guard=guard,
                updates=updates,
                now=now,
            )
            Doctor.objects.filter(pk=doctor.pk).update(
                total_assigned=F('total_assigned') + 1,
                last_assignment_at=now,
            )
        return study

    @staticmethod
    def start_report(study_uid: str, doctor_id: int, actor: str | None = None) -> Study:
        """
        Move the caller's study to report_in_progress.

        The write only applies if the study is still assigned to the caller
        and still in the status that was read. report_started_at is set on
        the first start only.

        Raises:
            StudyNotFoundError: No study with this UID
            NotAssignedToCallerError: Study is assigned to someone else
            InvalidTransitionError: Current status cannot move to report_in_progress
            ConcurrentModificationError: Assignment or status changed since read
        """
        study = StudyService.get_study(study_uid)
        AssignmentService._check_caller(study, doctor_id)

        current = WorkflowStatus(study.workflow_status)
        target = WorkflowStatus.REPORT_IN_PROGRESS
        StudyService._check_transition(study, current, target)

        return StudyService._write(
            study,
            target,
            operation='start_report',
            actor=actor or f'doctor:{doctor_id}',
            guard={'assigned_doctor_id': doctor_id},
        )

    @staticmethod
    def finalize_report(
        study_uid: str,
        doctor_id: int,
        content: str,
        actor: str | None = None,
    ) -> Study:
        """
        Store report content and move the study to report_finalized.

        Re-finalizing overwrites the content but keeps the first
        report_finalized_at. Doctor completion counters move on the first
        finalization only.

        Raises:
            StudyNotFoundError: No study with this UID
            NotAssignedToCallerError: Study is assigned to someone else
            InvalidTransitionError: Current status cannot move to report_finalized
            ConcurrentModificationError: Assignment or status changed since read
        """
        study = StudyService.get_study(study_uid)
        AssignmentService._check_caller(study, doctor_id)

        current = WorkflowStatus(study.workflow_status)
        target = WorkflowStatus.REPORT_FINALIZED
        StudyService._check_transition(study, current, target)

        first_finalization = study.report_finalized_at is None
        with transaction.atomic():
            study = StudyService._write(
                study,
                target,
                operation='finalize_report',
                actor=actor or f'doctor:{doctor_id}',
                note='Report revised' if not first_finalization else '',
                guard={'assigned_doctor_id': doctor_id},
                updates={'report_content': content, 'finalized_by_id': doctor_id},
            )
            if first_finalization:
                AssignmentService._record_completion(doctor_id, study)
        return study

    @staticmethod
    def _record_completion(doctor_id: int, study: Study) -> None:
        doctor = Doctor.objects.select_for_update().get(pk=doctor_id)
        minutes = study.assign_to_report_minutes
        if minutes is not None and minutes >= 0:
            completed_with_time = doctor.total_completed
            previous = doctor.average_report_minutes
            if previous is None or completed_with_time == 0:
                doctor.average_report_minutes = float(minutes)
            else:
                doctor.average_report_minutes = (
                    previous * completed_with_time + minutes
                ) / (completed_with_time + 1)
        doctor.total_completed += 1
        doctor.last_completion_at = study.report_finalized_at
        doctor.save(update_fields=['total_completed', 'average_report_minutes', 'last_completion_at'])
