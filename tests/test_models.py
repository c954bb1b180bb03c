"""
Test cases for the study models.

Test coverage:
- Study.to_dict() nested structures and NULL handling
- Category derived from workflow_status
- Ledger entries cannot be edited or deleted
- Study rows with history cannot be deleted
"""

from django.db import IntegrityError, transaction
from django.db.models import ProtectedError
from django.test import TestCase

from common.exceptions import LedgerImmutableError
from study.models import Study, StudyStatusHistory
from study.workflow import WorkflowStatus
from tests.fixtures.test_data import DoctorFactory, LabFactory, StudyFactory


class StudySerializationTests(TestCase):

    def test_to_dict_for_new_study(self):
        """Unassigned, unreported study serializes with empty nested blocks."""
        # Arrange
        lab = LabFactory.create(name='North Clinic')
        study = StudyFactory.ingest(lab=lab, modalities=['CT', 'PT'])

        # Act
        data = study.to_dict()

        # Assert
        self.assertEqual(data['workflow_status'], 'new_study_received')
        self.assertEqual(data['category'], 'pending')
        self.assertIsNone(data['assignment'])
        self.assertEqual(data['lab_name'], 'North Clinic')
        self.assertEqual(data['modalities'], ['CT', 'PT'])
        self.assertEqual(data['study_date'], '20240101')
        self.assertIsNone(data['report_info']['finalized_at'])
        self.assertIsNone(data['timing_info']['upload_to_report_minutes'])
        self.assertIsNone(data['archived_at'])

    def test_to_dict_with_assignment(self):
        doctor = DoctorFactory.create()
        study = StudyFactory.in_status(WorkflowStatus.ASSIGNED_TO_DOCTOR, doctor=doctor, priority='urgent')

        assignment = study.to_dict()['assignment']

        self.assertEqual(assignment['assigned_to'], doctor.id)
        self.assertEqual(assignment['priority'], 'urgent')
        self.assertEqual(assignment['assigned_by'], 'coordinator')
        self.assertIsNotNone(assignment['assigned_at'])

    def test_empty_study_date_serializes_as_none(self):
        study = StudyFactory.ingest(study_date='')

        self.assertIsNone(study.to_dict()['study_date'])

    def test_unknown_stored_status_has_unknown_category(self):
        study = StudyFactory.ingest()
        Study.objects.filter(pk=study.pk).update(workflow_status='legacy_verified')

        with self.assertLogs('study.workflow', level='WARNING'):
            self.assertEqual(Study.objects.get(pk=study.pk).category, 'unknown')


class LedgerImmutabilityTests(TestCase):

    def setUp(self):
        self.study = StudyFactory.ingest()
        self.entry = StudyStatusHistory.objects.get(study=self.study, sequence=1)

    def test_existing_entry_cannot_be_saved(self):
        self.entry.note = 'rewritten'

        with self.assertRaises(LedgerImmutableError):
            self.entry.save()

        self.entry.refresh_from_db()
        self.assertEqual(self.entry.note, 'Study received')

    def test_entry_cannot_be_deleted(self):
        with self.assertRaises(LedgerImmutableError):
            self.entry.delete()

        self.assertTrue(StudyStatusHistory.objects.filter(pk=self.entry.pk).exists())

    def test_duplicate_sequence_is_rejected(self):
        with self.assertRaises(IntegrityError), transaction.atomic():
            StudyStatusHistory.objects.create(
                study=self.study, sequence=1, status='pending_assignment',
                changed_at=self.entry.changed_at,
            )

    def test_study_with_history_cannot_be_deleted(self):
        with self.assertRaises(ProtectedError):
            Study.objects.filter(pk=self.study.pk).delete()

    def test_entry_to_dict(self):
        data = self.entry.to_dict()

        self.assertEqual(data['sequence'], 1)
        self.assertEqual(data['status'], 'new_study_received')
        self.assertEqual(data['note'], 'Study received')
