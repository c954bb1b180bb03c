"""
Test cases for StudyService: ingestion, transitions and the status ledger.

Test Coverage:
    - Idempotent ingestion with a seeded ledger entry
    - Transition validation (adjacency, archive note, assignment required)
    - Ledger invariants: tail equals status, sequences contiguous,
      changed_at non-decreasing
    - First-entry timestamps are set once
    - Detail and TAT payloads
"""

from datetime import timedelta

from django.test import TestCase
from django.utils import timezone

from common.exceptions import (
    InvalidSearchParameterError,
    InvalidStatusError,
    InvalidTransitionError,
    LabNotFoundError,
    StudyNotFoundError,
)
from study.models import Patient, Study, StudyStatusHistory
from study.services import AssignmentService, StudyService
from study.tat import compute_tat
from study.workflow import WorkflowStatus
from tests.fixtures.test_data import DoctorFactory, LabFactory, StudyFactory

S = WorkflowStatus


class IngestStudyTests(TestCase):

    def test_ingest_creates_study_in_new_status(self):
        """A fresh study starts in new_study_received with one ledger entry."""
        # Arrange
        lab = LabFactory.create()

        # Act
        study, created = StudyService.ingest_study(
            '1.2.3.4', accession_number='ACC-9', patient_id='P-9', lab_id=lab.id,
            modalities=['CT', 'MR'], study_date='20240105', actor='pacs',
        )

        # Assert
        self.assertTrue(created)
        self.assertEqual(study.workflow_status, S.NEW_STUDY_RECEIVED)
        self.assertEqual(study.modalities, ['CT', 'MR'])
        history = list(study.status_history.all())
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].sequence, 1)
        self.assertEqual(history[0].status, S.NEW_STUDY_RECEIVED)
        self.assertEqual(history[0].changed_by, 'pacs')

    def test_ingest_is_idempotent(self):
        """A second ingest with the same UID returns the existing row untouched."""
        first, created_first = StudyService.ingest_study('1.2.3.5', accession_number='A')
        second, created_second = StudyService.ingest_study('1.2.3.5', accession_number='B')

        self.assertTrue(created_first)
        self.assertFalse(created_second)
        self.assertEqual(second.pk, first.pk)
        self.assertEqual(second.accession_number, 'A')
        self.assertEqual(StudyStatusHistory.objects.filter(study_id='1.2.3.5').count(), 1)

    def test_ingest_reuses_patient(self):
        StudyService.ingest_study('1.1', patient_id='P-1', patient_name='Jane')
        StudyService.ingest_study('1.2', patient_id='P-1', patient_name='Jane')

        self.assertEqual(Patient.objects.filter(patient_id='P-1').count(), 1)

    def test_ingest_rejects_unknown_lab(self):
        with self.assertRaises(LabNotFoundError):
            StudyService.ingest_study('1.9', lab_id=999)
        self.assertFalse(Study.objects.filter(pk='1.9').exists())

    def test_ingest_rejects_malformed_study_date(self):
        with self.assertRaises(InvalidSearchParameterError):
            StudyService.ingest_study('1.8', study_date='2024-01-05')

    def test_ingest_rejects_negative_counts(self):
        """Negative series or instance counts are a typed validation error."""
        with self.assertRaises(InvalidSearchParameterError) as ctx:
            StudyService.ingest_study('1.7', series_count=-1)
        self.assertEqual(ctx.exception.param, 'series_count')

        with self.assertRaises(InvalidSearchParameterError) as ctx:
            StudyService.ingest_study('1.7', instance_count=-5)
        self.assertEqual(ctx.exception.param, 'instance_count')

        self.assertFalse(Study.objects.filter(pk='1.7').exists())


class TransitionTests(TestCase):

    def setUp(self):
        self.study = StudyFactory.ingest()
        self.uid = self.study.study_instance_uid

    def test_allowed_transition_updates_status_and_ledger(self):
        # Act
        study = StudyService.transition(self.uid, 'pending_assignment', actor='admin', note='triaged')

        # Assert
        self.assertEqual(study.workflow_status, S.PENDING_ASSIGNMENT)
        tail = study.status_history.order_by('-sequence').first()
        self.assertEqual(tail.sequence, 2)
        self.assertEqual(tail.status, S.PENDING_ASSIGNMENT)
        self.assertEqual(tail.changed_by, 'admin')
        self.assertEqual(tail.note, 'triaged')

    def test_skipping_ahead_is_rejected(self):
        """new_study_received -> report_finalized is not in the graph."""
        with self.assertRaises(InvalidTransitionError) as ctx:
            StudyService.transition(self.uid, 'report_finalized', actor='admin')

        self.assertEqual(ctx.exception.current_status, 'new_study_received')
        self.assertEqual(ctx.exception.target_status, 'report_finalized')
        self.assertEqual(StudyService.get_study(self.uid).workflow_status, S.NEW_STUDY_RECEIVED)
        self.assertEqual(StudyStatusHistory.objects.filter(study_id=self.uid).count(), 1)

    def test_unknown_status_is_rejected(self):
        with self.assertRaises(InvalidStatusError):
            StudyService.transition(self.uid, 'reported')

    def test_missing_study(self):
        with self.assertRaises(StudyNotFoundError):
            StudyService.transition('does-not-exist', 'pending_assignment')

    def test_archive_requires_note(self):
        with self.assertRaises(InvalidTransitionError) as ctx:
            StudyService.transition(self.uid, 'archived', actor='admin', note='   ')

        self.assertIn('note', ctx.exception.reason)

    def test_archive_sets_archived_at(self):
        study = StudyService.transition(self.uid, 'archived', actor='admin', note='duplicate upload')

        self.assertEqual(study.workflow_status, S.ARCHIVED)
        self.assertIsNotNone(study.archived_at)

    def test_archived_is_terminal(self):
        StudyService.transition(self.uid, 'archived', actor='admin', note='duplicate')

        with self.assertRaises(InvalidTransitionError):
            StudyService.transition(self.uid, 'pending_assignment', actor='admin')

    def test_assignment_statuses_require_a_doctor(self):
        StudyService.transition(self.uid, 'pending_assignment')

        with self.assertRaises(InvalidTransitionError) as ctx:
            StudyService.transition(self.uid, 'assigned_to_doctor')

        self.assertIn('assigned doctor', ctx.exception.reason)

    def test_long_note_is_truncated(self):
        study = StudyService.transition(self.uid, 'pending_assignment', note='x' * 5000)

        tail = study.status_history.order_by('-sequence').first()
        self.assertEqual(len(tail.note), 1000)

    def test_generic_finalize_is_rejected(self):
        """report_finalized is reached through finalize_report so the author is recorded."""
        # Arrange
        doctor = DoctorFactory.create()
        study = StudyFactory.in_status(S.REPORT_IN_PROGRESS, doctor=doctor)

        # Act
        with self.assertRaises(InvalidTransitionError) as ctx:
            StudyService.transition(study.pk, 'report_finalized', actor='admin')
        finalized = AssignmentService.finalize_report(study.pk, doctor.id, 'Findings')

        # Assert
        self.assertIn('finalize_report', ctx.exception.reason)
        self.assertEqual(finalized.finalized_by_id, doctor.id)
        doctor.refresh_from_db()
        self.assertEqual(doctor.total_completed, 1)


class LedgerInvariantTests(TestCase):
    """After any sequence of operations the ledger agrees with the study row."""

    def test_full_lifecycle_ledger(self):
        # Arrange
        doctor = DoctorFactory.create()
        other = DoctorFactory.create(full_name='Dr. Other')

        # Act
        study = StudyFactory.in_status(S.REPORT_IN_PROGRESS, doctor=doctor)
        uid = study.study_instance_uid
        AssignmentService.assign(uid, other.id, actor='coordinator')
        AssignmentService.finalize_report(uid, other.id, 'Normal study.')
        for step in ('report_uploaded', 'report_downloaded_radiologist', 'report_downloaded',
                     'final_report_downloaded'):
            StudyService.transition(uid, step, actor='system')

        # Assert
        study = StudyService.get_study(uid)
        history = list(study.status_history.order_by('sequence'))
        self.assertEqual(history[-1].status, study.workflow_status)
        self.assertEqual([entry.sequence for entry in history], list(range(1, len(history) + 1)))
        for earlier, later in zip(history, history[1:]):
            self.assertLessEqual(earlier.changed_at, later.changed_at)
        self.assertEqual(study.workflow_status, S.FINAL_REPORT_DOWNLOADED)

    def test_changed_at_never_goes_backwards(self):
        """An entry appended after a future-dated tail reuses the tail's time."""
        # Arrange
        study = StudyFactory.ingest()
        future = timezone.now() + timedelta(hours=1)
        StudyStatusHistory.objects.create(
            study=study, sequence=2, status=S.NEW_STUDY_RECEIVED, changed_at=future, note='clock skew',
        )

        # Act
        StudyService.transition(study.pk, 'pending_assignment', actor='admin')

        # Assert
        tail = StudyStatusHistory.objects.filter(study=study).order_by('-sequence').first()
        self.assertEqual(tail.sequence, 3)
        self.assertEqual(tail.status, S.PENDING_ASSIGNMENT)
        self.assertEqual(tail.changed_at, future)

    def test_report_started_at_is_set_once(self):
        doctor = DoctorFactory.create()
        study = StudyFactory.in_status(S.REPORT_IN_PROGRESS, doctor=doctor)
        started = study.report_started_at

        AssignmentService.finalize_report(study.pk, doctor.id, 'Findings')
        study = StudyService.get_study(study.pk)

        self.assertIsNotNone(started)
        self.assertEqual(study.report_started_at, started)


class StudyDetailTests(TestCase):

    def test_detail_includes_history_and_tat(self):
        doctor = DoctorFactory.create()
        study = StudyFactory.in_status(S.REPORT_FINALIZED, doctor=doctor)

        detail = StudyService.get_study_detail(study.pk)

        self.assertEqual(detail['study_instance_uid'], study.pk)
        self.assertEqual(detail['category'], 'completed')
        self.assertEqual(detail['status_history'][0]['status'], 'new_study_received')
        self.assertEqual(detail['status_history'][-1]['status'], 'report_finalized')
        self.assertIn('upload_to_report', detail['tat']['minutes'])
        self.assertIsNotNone(detail['tat']['minutes']['upload_to_report'])

    def test_tat_for_unreported_study_is_empty(self):
        study = StudyFactory.ingest()

        payload = StudyService.get_study_tat(study.pk)

        self.assertEqual(payload['minutes'], {
            'study_to_report': None, 'upload_to_report': None, 'assign_to_report': None,
        })
        self.assertEqual(payload['anomalies'], [])

    def test_timing_cache_refreshed_on_finalize(self):
        """upload_to_report_minutes mirrors the stored timestamps."""
        doctor = DoctorFactory.create()
        study = StudyFactory.in_status(S.REPORT_IN_PROGRESS, doctor=doctor)
        StudyFactory.set_times(study, created_at=timezone.now() - timedelta(minutes=270))

        study = AssignmentService.finalize_report(study.pk, doctor.id, 'Findings')

        self.assertEqual(study.upload_to_report_minutes, 270)
        self.assertEqual(study.upload_to_report_minutes, compute_tat(study).upload_to_report)
