"""
Test cases for ReportingService queries and aggregates.

Test Coverage:
    - Filters: lab, status, category, priority, free text, date baselines
    - Summaries zero-filled and computed over the whole filtered set
    - Pagination clamping
    - Filter validation errors
    - Export rows
    - Doctor worklist and stats read from Study.assigned_doctor
"""

from django.test import TestCase, override_settings

from common.config import ServiceConfig
from common.exceptions import (
    DoctorNotFoundError,
    InvalidSearchParameterError,
    InvalidStatusError,
)
from reporting.filters import StudyFilters
from reporting.services import ReportingService
from study.models import Study
from study.services import AssignmentService
from study.workflow import WorkflowStatus
from tests.fixtures.test_data import DateTimeHelper, DoctorFactory, LabFactory, StudyFactory

S = WorkflowStatus


class EmptySetTests(TestCase):

    def test_summaries_over_empty_set(self):
        """Every status and category is present with zero counts."""
        # Act
        result = ReportingService.query_studies()

        # Assert
        self.assertEqual(result['items'], [])
        self.assertEqual(result['total_count'], 0)
        self.assertEqual(set(result['summary_by_status']), set(S.values))
        self.assertTrue(all(count == 0 for count in result['summary_by_status'].values()))
        self.assertEqual(result['summary_by_category'], {
            'pending': 0, 'inprogress': 0, 'completed': 0, 'archived': 0, 'unknown': 0,
        })
        self.assertEqual(result['summary']['completion_rate'], 0.0)
        self.assertIsNone(result['summary']['average_tat']['upload_to_report']['minutes'])


class QueryStudiesTests(TestCase):

    def setUp(self):
        self.lab = LabFactory.create(identifier='LAB1', name='Central')
        self.other_lab = LabFactory.create(identifier='LAB2', name='North')
        self.doctor = DoctorFactory.create(full_name='Dr. A')
        self.new = StudyFactory.ingest(lab=self.lab, patient_id='P-100', patient_name='Alice Smith')
        self.pending = StudyFactory.in_status(S.PENDING_ASSIGNMENT, lab=self.lab)
        self.in_progress = StudyFactory.in_status(
            S.REPORT_IN_PROGRESS, doctor=self.doctor, lab=self.lab, priority='urgent',
        )
        self.finalized = StudyFactory.in_status(S.REPORT_FINALIZED, doctor=self.doctor, lab=self.other_lab)
        self.archived = StudyFactory.in_status(S.ARCHIVED, lab=self.other_lab)

    def uids(self, result):
        return {item['study_instance_uid'] for item in result['items']}

    def test_lab_filter(self):
        result = ReportingService.query_studies(StudyFilters(lab_id=self.lab.id))

        self.assertEqual(self.uids(result), {self.new.pk, self.pending.pk, self.in_progress.pk})

    def test_status_filter(self):
        result = ReportingService.query_studies(
            StudyFilters(statuses=['report_finalized', 'archived'])
        )

        self.assertEqual(self.uids(result), {self.finalized.pk, self.archived.pk})

    def test_unknown_status_filter_is_rejected(self):
        with self.assertRaises(InvalidStatusError):
            ReportingService.query_studies(StudyFilters(statuses=['done']))

    def test_category_filter(self):
        """Category 'pending' covers new, pending and assigned studies."""
        result = ReportingService.query_studies(StudyFilters(category='pending'))

        self.assertEqual(self.uids(result), {self.new.pk, self.pending.pk})

    def test_unknown_category_filter_finds_unclassified_rows(self):
        Study.objects.filter(pk=self.new.pk).update(workflow_status='legacy_verified')

        with self.assertLogs('study.workflow', level='WARNING'):
            result = ReportingService.query_studies(StudyFilters(category='unknown'))

        self.assertEqual(self.uids(result), {self.new.pk})
        self.assertEqual(result['summary_by_category']['unknown'], 1)
        self.assertEqual(result['summary_by_status']['legacy_verified'], 1)

    def test_priority_filter(self):
        result = ReportingService.query_studies(StudyFilters(priority='urgent'))

        self.assertEqual(self.uids(result), {self.in_progress.pk})

    def test_free_text_search(self):
        result = ReportingService.query_studies(StudyFilters(q='alice'))

        self.assertEqual(self.uids(result), {self.new.pk})

    def test_summaries_cover_whole_set_not_page(self):
        """Summaries count every matching row even when the page is smaller."""
        result = ReportingService.query_studies(page=1, page_size=2)

        self.assertEqual(len(result['items']), 2)
        self.assertEqual(result['total_count'], 5)

    def test_assigned_sort_puts_unassigned_studies_last(self):
        result = ReportingService.query_studies(StudyFilters(sort='assigned_desc'))

        order = [item['study_instance_uid'] for item in result['items']]
        self.assertEqual(set(order[:2]), {self.in_progress.pk, self.finalized.pk})
        self.assertEqual(set(order[2:]), {self.new.pk, self.pending.pk, self.archived.pk})

    def test_report_sort_puts_unreported_studies_last(self):
        result = ReportingService.query_studies(StudyFilters(sort='report_desc'))

        self.assertEqual(result['items'][0]['study_instance_uid'], self.finalized.pk)
        self.assertEqual(len(result['items']), 5)
        self.assertEqual(sum(result['summary_by_category'].values()), 5)
        self.assertEqual(result['summary_by_category']['pending'], 2)
        self.assertEqual(result['summary_by_category']['inprogress'], 1)
        self.assertEqual(result['summary_by_category']['completed'], 1)
        self.assertEqual(result['summary_by_category']['archived'], 1)
        self.assertEqual(result['summary']['completed'], 1)
        self.assertEqual(result['summary']['completion_rate'], 0.2)

    def test_pages_do_not_overlap(self):
        first = ReportingService.query_studies(page=1, page_size=3, filters=StudyFilters(sort='created_asc'))
        second = ReportingService.query_studies(page=2, page_size=3, filters=StudyFilters(sort='created_asc'))

        self.assertEqual(len(first['items']), 3)
        self.assertEqual(len(second['items']), 2)
        self.assertFalse(self.uids(first) & self.uids(second))

    def test_page_size_is_clamped(self):
        large = ReportingService.query_studies(page_size=10_000)
        small = ReportingService.query_studies(page_size=0)
        negative_page = ReportingService.query_studies(page=-3)

        self.assertEqual(large['page_size'], ServiceConfig.MAX_PAGE_SIZE)
        self.assertEqual(small['page_size'], ServiceConfig.DEFAULT_PAGE_SIZE)
        self.assertEqual(negative_page['page'], 1)

    def test_item_carries_category_and_tat(self):
        result = ReportingService.query_studies(StudyFilters(statuses=['report_finalized']))

        item = result['items'][0]
        self.assertEqual(item['category'], 'completed')
        self.assertEqual(item['assigned_doctor_name'], 'Dr. A')
        self.assertIsNotNone(item['tat']['upload_to_report']['minutes'])
        self.assertIsNotNone(item['tat']['upload_to_report']['tier'])

    def test_average_tat_excludes_missing_values(self):
        Study.objects.filter(pk=self.finalized.pk).update(upload_to_report_minutes=120)
        Study.objects.filter(pk=self.in_progress.pk).update(upload_to_report_minutes=None)

        summary = ReportingService.query_studies()['summary']

        self.assertEqual(summary['average_tat']['upload_to_report']['minutes'], 120)
        self.assertEqual(summary['average_tat']['upload_to_report']['formatted'], '2h 0m')
        self.assertEqual(summary['average_tat']['upload_to_report']['tier'], 'good')

    def test_recent_sort_puts_latest_activity_first(self):
        result = ReportingService.query_studies(StudyFilters(sort='recent'))

        self.assertEqual(result['items'][0]['study_instance_uid'], self.archived.pk)

    def test_unknown_sort_falls_back(self):
        with self.assertLogs('reporting.filters', level='WARNING'):
            result = ReportingService.query_studies(StudyFilters(sort='bogus'))

        self.assertEqual(result['total_count'], 5)


@override_settings(TIME_ZONE='UTC')
class DateBaselineTests(TestCase):
    """start_date/end_date apply to the column chosen by date_baseline."""

    def setUp(self):
        self.doctor = DoctorFactory.create()
        self.early = StudyFactory.in_status(S.ASSIGNED_TO_DOCTOR, doctor=self.doctor, study_date='20240110')
        self.late = StudyFactory.in_status(S.ASSIGNED_TO_DOCTOR, doctor=self.doctor, study_date='20240220')
        self.unassigned = StudyFactory.ingest(study_date='')
        StudyFactory.set_times(self.early, assigned_at=DateTimeHelper.utc(2024, 3, 1, 23, 59),
                               created_at=DateTimeHelper.utc(2024, 3, 1, 8))
        StudyFactory.set_times(self.late, assigned_at=DateTimeHelper.utc(2024, 3, 2, 0, 0),
                               created_at=DateTimeHelper.utc(2024, 3, 2, 8))
        StudyFactory.set_times(self.unassigned, created_at=DateTimeHelper.utc(2024, 3, 1, 9))

    def uids(self, filters):
        return {item['study_instance_uid'] for item in ReportingService.query_studies(filters)['items']}

    def test_assigned_date_range_is_inclusive_of_end_day(self):
        filters = StudyFilters(date_baseline='assigned_date', start_date='2024-03-01', end_date='2024-03-01')

        self.assertEqual(self.uids(filters), {self.early.pk})

    def test_assigned_date_excludes_unassigned(self):
        filters = StudyFilters(date_baseline='assigned_date', start_date='2024-01-01', end_date='2024-12-31')

        self.assertEqual(self.uids(filters), {self.early.pk, self.late.pk})

    def test_upload_date_baseline(self):
        filters = StudyFilters(date_baseline='upload_date', start_date='2024-03-01', end_date='2024-03-01')

        self.assertEqual(self.uids(filters), {self.early.pk, self.unassigned.pk})

    def test_study_date_baseline_skips_blank_dates(self):
        filters = StudyFilters(date_baseline='study_date', start_date='2024-01-01')

        self.assertEqual(self.uids(filters), {self.early.pk, self.late.pk})

    def test_study_date_end_bound(self):
        filters = StudyFilters(date_baseline='study_date', end_date='2024-01-31')

        self.assertEqual(self.uids(filters), {self.early.pk})


class FilterValidationTests(TestCase):

    def test_invalid_baseline(self):
        with self.assertRaises(InvalidSearchParameterError) as ctx:
            ReportingService.query_studies(StudyFilters(date_baseline='billing_date'))
        self.assertEqual(ctx.exception.param, 'date_baseline')

    def test_malformed_date(self):
        with self.assertRaises(InvalidSearchParameterError) as ctx:
            ReportingService.query_studies(StudyFilters(start_date='01/02/2024'))
        self.assertEqual(ctx.exception.param, 'start_date')

    def test_impossible_date(self):
        with self.assertRaises(InvalidSearchParameterError):
            ReportingService.query_studies(StudyFilters(end_date='2024-02-30'))

    def test_reversed_range(self):
        with self.assertRaises(InvalidSearchParameterError) as ctx:
            ReportingService.query_studies(StudyFilters(start_date='2024-03-02', end_date='2024-03-01'))
        self.assertEqual(ctx.exception.param, 'end_date')

    def test_unknown_category(self):
        with self.assertRaises(InvalidSearchParameterError):
            ReportingService.query_studies(StudyFilters(category='done'))

    def test_unknown_priority(self):
        with self.assertRaises(InvalidSearchParameterError):
            ReportingService.query_studies(StudyFilters(priority='asap'))

    def test_search_too_long(self):
        with self.assertRaises(InvalidSearchParameterError):
            ReportingService.query_studies(StudyFilters(q='x' * 500))


class ExportRowTests(TestCase):

    def test_stream_export_rows(self):
        # Arrange
        lab = LabFactory.create(name='Central')
        doctor = DoctorFactory.create(full_name='Dr. Report')
        study = StudyFactory.in_status(S.REPORT_FINALIZED, doctor=doctor, lab=lab, modalities=['CT', 'MR'])
        StudyFactory.ingest()

        # Act
        rows = list(ReportingService.stream_export(StudyFilters(statuses=['report_finalized'])))

        # Assert
        self.assertEqual(len(rows), 1)
        row = rows[0]
        self.assertEqual(row['accession_number'], study.accession_number)
        self.assertEqual(row['study_status'], 'Report Finalized')
        self.assertEqual(row['category'], 'completed')
        self.assertEqual(row['modality'], 'CT, MR')
        self.assertEqual(row['series_images'], '3/120')
        self.assertEqual(row['institution_name'], 'Central')
        self.assertEqual(row['billed_on_study_date'], '2024-01-01')
        self.assertEqual(row['reported_by'], 'Dr. Report')
        self.assertNotEqual(row['upload_to_report'], '-')

    def test_unreported_row_uses_placeholder(self):
        StudyFactory.ingest()

        row = next(iter(ReportingService.stream_export()))

        self.assertEqual(row['upload_to_report'], '-')
        self.assertEqual(row['report_date'], '')
        self.assertEqual(row['reported_by'], '')

    def test_invalid_filters_raise_before_iteration(self):
        with self.assertRaises(InvalidSearchParameterError):
            ReportingService.stream_export(StudyFilters(date_baseline='nope'))


class DoctorViewTests(TestCase):

    def setUp(self):
        self.doctor = DoctorFactory.create(full_name='Dr. A')
        self.other = DoctorFactory.create(full_name='Dr. B')
        self.mine_open = StudyFactory.in_status(S.REPORT_IN_PROGRESS, doctor=self.doctor, priority='urgent')
        self.mine_done = StudyFactory.in_status(S.REPORT_FINALIZED, doctor=self.doctor)
        self.theirs = StudyFactory.in_status(S.ASSIGNED_TO_DOCTOR, doctor=self.other)

    def test_worklist_only_holds_current_assignments(self):
        result = ReportingService.doctor_studies(self.doctor.id)

        uids = {item['study_instance_uid'] for item in result['items']}
        self.assertEqual(uids, {self.mine_open.pk, self.mine_done.pk})

    def test_reassigned_study_leaves_worklist(self):
        AssignmentService.assign(self.mine_open.pk, self.other.id)

        mine = ReportingService.doctor_studies(self.doctor.id)
        theirs = ReportingService.doctor_studies(self.other.id)
        self.assertEqual(mine['total_count'], 1)
        self.assertEqual(theirs['total_count'], 2)

    def test_stats(self):
        stats = ReportingService.doctor_stats(self.doctor.id)

        self.assertEqual(stats['total_assigned'], 2)
        self.assertEqual(stats['by_category']['inprogress'], 1)
        self.assertEqual(stats['by_category']['completed'], 1)
        self.assertEqual(stats['urgent_open'], 1)
        self.assertIsNotNone(stats['average_assign_to_report']['minutes'])
        self.assertEqual(stats['cached']['total_completed'], 1)

    def test_unknown_doctor(self):
        with self.assertRaises(DoctorNotFoundError):
            ReportingService.doctor_stats(9999)
        with self.assertRaises(DoctorNotFoundError):
            ReportingService.doctor_studies(9999)


class CatalogueTests(TestCase):

    def test_list_statuses(self):
        catalogue = ReportingService.list_statuses()

        self.assertEqual(len(catalogue['statuses']), len(S))
        self.assertIn({'value': 'unknown', 'label': 'Unknown'}, catalogue['categories'])
