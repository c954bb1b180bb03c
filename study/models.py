"""
Study Models - Radiology study workflow records.

This module provides the data model for radiology studies moving from
ingestion through report finalization, plus the read-only references the
workflow needs (Lab, Patient, Doctor) and the append-only status ledger.

Design Principles:
    - Study is the unit of mutation; every workflow write touches one row
    - workflow_status is mutated only by study.services (state machine and
      assignment), always through a conditional UPDATE
    - Exactly one current assignment, stored inline on the Study row
    - StudyStatusHistory rows are write-once
    - Doctor counters are a display cache; the Study table is authoritative
    - Clinical metadata is set at ingestion and never rewritten
"""

from django.db import models
from django.utils import timezone

from common.exceptions import LedgerImmutableError
from study.workflow import AssignmentPriority, WorkflowStatus, classify


class Lab(models.Model):
    """Source facility. Used for grouping and filtering only."""

    name = models.CharField(max_length=200, help_text='Facility display name')
    identifier = models.CharField(
        max_length=50,
        unique=True,
        help_text='Short facility code',
    )
    is_active = models.BooleanField(default=True, db_index=True)

    class Meta:
        db_table = 'labs'
        ordering = ['name']

    def __str__(self) -> str:
        return f'{self.name} ({self.identifier})'


class Patient(models.Model):
    """Patient demographics referenced by studies (read-only here)."""

    patient_id = models.CharField(
        max_length=100,
        unique=True,
        help_text='Patient identifier from the source system',
    )
    patient_name = models.CharField(max_length=200, db_index=True)
    gender = models.CharField(
        max_length=10,
        blank=True,
        default='',
        choices=[('M', 'Male'), ('F', 'Female'), ('O', 'Other'), ('U', 'Unknown')],
    )
    birth_date = models.CharField(max_length=20, blank=True, default='')

    class Meta:
        db_table = 'patients'

    def __str__(self) -> str:
        return f'{self.patient_id}: {self.patient_name}'


class Doctor(models.Model):
    """
    Reporting radiologist.

    The counters below are a denormalized cache for dashboards. Which studies
    a doctor holds is always answered from Study.assigned_doctor.
    """

    full_name = models.CharField(max_length=200)
    specialization = models.CharField(max_length=200)
    license_number = models.CharField(max_length=100, unique=True, null=True, blank=True)
    department = models.CharField(max_length=200, blank=True, default='')
    is_active = models.BooleanField(default=True)

    # ========== DASHBOARD CACHE ==========
    total_assigned = models.PositiveIntegerField(default=0)
    total_completed = models.PositiveIntegerField(default=0)
    average_report_minutes = models.FloatField(
        null=True,
        blank=True,
        help_text='Running mean of assignment-to-finalization minutes',
    )
    last_assignment_at = models.DateTimeField(null=True, blank=True)
    last_completion_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'doctors'
        ordering = ['full_name']

    def __str__(self) -> str:
        return f'Dr. {self.full_name} ({self.specialization})'

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'full_name': self.full_name,
            'specialization': self.specialization,
            'is_active': self.is_active,
            'assignment_stats': {
                'total_assigned': self.total_assigned,
                'total_completed': self.total_completed,
                'average_report_minutes': self.average_report_minutes,
                'last_assignment_at': self.last_assignment_at.isoformat() if self.last_assignment_at else None,
                'last_completion_at': self.last_completion_at.isoformat() if self.last_completion_at else None,
            },
        }


class Study(models.Model):
    """
    Radiology study record.

    Data Organization:
        1. Identity (study_instance_uid, accession_number)
        2. References (patient, lab)
        3. Clinical metadata, set once at ingestion
        4. Workflow state (workflow_status)
        5. Current assignment (assigned_doctor, assigned_at, priority)
        6. Report info (report_started_at, report_finalized_at, content)
        7. Cached timing info (minutes per TAT baseline pair)

    Timestamps:
        created_at is the upload/ingestion time and one of the TAT baselines.
        All datetimes are timezone-aware (USE_TZ=True).

    See Also:
        - State machine and assignment: study.services
        - TAT engine: study.tat
        - Ledger: StudyStatusHistory
    """

    # ========== IDENTITY ==========

    study_instance_uid = models.CharField(
        max_length=128,
        primary_key=True,
        help_text='DICOM StudyInstanceUID, globally unique and immutable',
    )
    accession_number = models.CharField(max_length=100, blank=True, default='', db_index=True)

    # ========== REFERENCES ==========

    patient = models.ForeignKey(
        Patient,
        on_delete=models.PROTECT,
        related_name='studies',
        null=True,
        blank=True,
    )
    lab = models.ForeignKey(
        Lab,
        on_delete=models.PROTECT,
        related_name='studies',
        null=True,
        blank=True,
    )

    # ========== CLINICAL METADATA (read-only after ingestion) ==========

    modalities = models.JSONField(default=list, help_text='Modalities in study, e.g. ["CT"]')
    series_count = models.PositiveIntegerField(default=0)
    instance_count = models.PositiveIntegerField(default=0)
    study_date = models.CharField(
        max_length=8,
        blank=True,
        default='',
        db_index=True,
        help_text='DICOM study date (YYYYMMDD)',
    )
    exam_description = models.TextField(blank=True, default='')
    referring_physician = models.CharField(max_length=200, blank=True, default='')

    # ========== WORKFLOW ==========

    workflow_status = models.CharField(
        max_length=40,
        choices=WorkflowStatus.choices,
        default=WorkflowStatus.NEW_STUDY_RECEIVED,
        db_index=True,
    )

    # ========== ASSIGNMENT ==========
    # One current assignment per study; reassignment overwrites these fields

    assigned_doctor = models.ForeignKey(
        Doctor,
        on_delete=models.PROTECT,
        related_name='assigned_studies',
        null=True,
        blank=True,
    )
    assigned_at = models.DateTimeField(null=True, blank=True, db_index=True)
    assigned_by = models.CharField(max_length=150, blank=True, default='')
    priority = models.CharField(
        max_length=10,
        choices=AssignmentPriority.choices,
        default=AssignmentPriority.NORMAL,
        db_index=True,
    )

    # ========== REPORT INFO ==========

    report_started_at = models.DateTimeField(null=True, blank=True)
    report_finalized_at = models.DateTimeField(null=True, blank=True, db_index=True)
    report_content = models.TextField(blank=True, default='')
    finalized_by = models.ForeignKey(
        Doctor,
        on_delete=models.PROTECT,
        related_name='finalized_studies',
        null=True,
        blank=True,
    )
    archived_at = models.DateTimeField(null=True, blank=True)

    # ========== TIMING INFO (derived cache) ==========
    # Recomputed whenever report_finalized_at or assigned_at changes

    study_to_report_minutes = models.IntegerField(null=True, blank=True)
    upload_to_report_minutes = models.IntegerField(null=True, blank=True)
    assign_to_report_minutes = models.IntegerField(null=True, blank=True)

    created_at = models.DateTimeField(
        default=timezone.now,
        db_index=True,
        help_text='Upload/ingestion time',
    )
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'studies'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['workflow_status', '-created_at'], name='idx_study_status_created'),
            models.Index(fields=['assigned_doctor', 'workflow_status'], name='idx_study_doctor_status'),
            models.Index(fields=['lab', 'workflow_status', '-created_at'], name='idx_study_lab_status'),
            models.Index(fields=['priority', 'workflow_status'], name='idx_study_priority_status'),
        ]

    def __str__(self) -> str:
        return f'{self.study_instance_uid} [{self.workflow_status}]'

    @property
    def category(self) -> str:
        return classify(self.workflow_status).value

    @property
    def assignment(self) -> dict | None:
        """Current assignment as a structure, or None when unassigned."""
        if self.assigned_doctor_id is None:
            return None
        return {
            'assigned_to': self.assigned_doctor_id,
            'assigned_at': self.assigned_at.isoformat() if self.assigned_at else None,
            'assigned_by': self.assigned_by or None,
            'priority': self.priority,
        }

    def to_dict(self) -> dict:
        """Serialize the study and its nested workflow structures for API responses."""
        return {
            'study_instance_uid': self.study_instance_uid,
            'accession_number': self.accession_number,
            'patient_id': self.patient.patient_id if self.patient_id else None,
            'patient_name': self.patient.patient_name if self.patient_id else None,
            'lab_id': self.lab_id,
            'lab_name': self.lab.name if self.lab_id else None,
            'modalities': list(self.modalities or []),
            'series_count': self.series_count,
            'instance_count': self.instance_count,
            'study_date': self.study_date or None,
            'exam_description': self.exam_description,
            'workflow_status': self.workflow_status,
            'category': self.category,
            'assignment': self.assignment,
            'report_info': {
                'started_at': self.report_started_at.isoformat() if self.report_started_at else None,
                'finalized_at': self.report_finalized_at.isoformat() if self.report_finalized_at else None,
                'finalized_by': self.finalized_by_id,
                'content': self.report_content,
            },
            'timing_info': {
                'study_to_report_minutes': self.study_to_report_minutes,
                'upload_to_report_minutes': self.upload_to_report_minutes,
                'assign_to_report_minutes': self.assign_to_report_minutes,
            },
            'archived_at': self.archived_at.isoformat() if self.archived_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class StudyStatusHistory(models.Model):
    """
    Append-only ledger entry for one workflow event on a study.

    Entries are ordered by sequence within a study. changed_at never goes
    backwards along that order, and the entry with the highest sequence
    always carries the study's current workflow_status.

    Saving an existing entry or deleting any entry raises LedgerImmutableError.
    """

    study = models.ForeignKey(
        Study,
        on_delete=models.PROTECT,
        related_name='status_history',
    )
    sequence = models.PositiveIntegerField()
    status = models.CharField(max_length=40, choices=WorkflowStatus.choices)
    changed_at = models.DateTimeField()
    changed_by = models.CharField(max_length=150, blank=True, default='')
    note = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'study_status_history'
        ordering = ['study', 'sequence']
        constraints = [
            models.UniqueConstraint(fields=['study', 'sequence'], name='uniq_history_study_sequence'),
        ]

    def __str__(self) -> str:
        return f'{self.study_id}#{self.sequence} {self.status}'

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise LedgerImmutableError(self.pk)
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise LedgerImmutableError(self.pk)

    def to_dict(self) -> dict:
        return {
            'sequence': self.sequence,
            'status': self.status,
            'changed_at': self.changed_at.isoformat(),
            'changed_by': self.changed_by or None,
            'note': self.note or None,
        }
