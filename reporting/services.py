"""
Reporting and aggregation service.

Answers "which studies match these filters, how are they distributed, and
how fast were they reported". Everything here reads the live Study table;
the workflow core never reads from anything in this module.

Architecture:
    ReportingService
    ├── Query: build_queryset(), query_studies(), paginate()
    ├── Views: study_view(), export_row()
    ├── Aggregates: summarize_by_status(), summarize_by_category(), summarize()
    ├── Export: stream_export()
    ├── Cached lookups: tat_analytics(), list_locations()
    ├── Catalogue: list_statuses()
    └── Doctor views: doctor_studies(), doctor_stats()

Caching:
    Only tat_analytics() and list_locations() use the Django cache, each with
    a bounded TTL from CacheConfig. Cached values are display data and are
    never consulted by assignment or transition logic.
"""

import logging
from datetime import timedelta
from typing import Any, Iterator

from django.core.cache import cache
from django.db import DatabaseError
from django.db.models import Avg, Count, Q, QuerySet
from django.utils import timezone

from common.config import CacheConfig, ExportConfig, ServiceConfig, TATConfig
from common.exceptions import (
    DatabaseQueryError,
    DoctorNotFoundError,
    InvalidSearchParameterError,
    LabNotFoundError,
)
from reporting.filters import StudyFilters, apply_filters
from study.models import Doctor, Lab, Study
from study.tat import (
    TAT_PAIRS,
    TIMING_FIELDS,
    bucket_tat,
    completion_rate,
    compute_tat,
    format_duration,
)
from study.workflow import (
    AssignmentPriority,
    Category,
    WorkflowStatus,
    classify,
    status_catalogue,
    statuses_for,
)

logger = logging.getLogger(__name__)

OPEN_CATEGORIES = (Category.PENDING, Category.INPROGRESS)


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _local(value) -> str:
    if value is None:
        return ''
    return timezone.localtime(value).strftime('%Y-%m-%d %H:%M:%S')


def _metric(minutes: int | float | None) -> dict[str, Any]:
    rounded = round(minutes) if minutes is not None else None
    return {
        'minutes': minutes,
        'formatted': format_duration(rounded),
        'tier': bucket_tat(minutes),
    }


class ReportingService:
    """Filtered study listings, summaries, exports and dashboard aggregates."""

    @staticmethod
    def build_queryset(filters: StudyFilters) -> QuerySet:
        """Validated, filtered and ordered Study queryset with display joins."""
        filters.validate()
        queryset = Study.objects.select_related('patient', 'lab', 'assigned_doctor', 'finalized_by')
        return apply_filters(queryset, filters)

    # ========== VIEWS ==========

    @staticmethod
    def study_view(study: Study) -> dict[str, Any]:
        """List row: display fields joined from patient/doctor/lab plus category and TAT."""
        tat = compute_tat(study)
        minutes = tat.as_dict()
        doctor = study.assigned_doctor
        return {
            'study_instance_uid': study.study_instance_uid,
            'accession_number': study.accession_number,
            'patient_id': study.patient.patient_id if study.patient_id else None,
            'patient_name': study.patient.patient_name if study.patient_id else None,
            'gender': study.patient.gender if study.patient_id else None,
            'lab_id': study.lab_id,
            'lab_name': study.lab.name if study.lab_id else None,
            'modalities': list(study.modalities or []),
            'study_date': study.study_date or None,
            'exam_description': study.exam_description,
            'workflow_status': study.workflow_status,
            'category': classify(study.workflow_status).value,
            'priority': study.priority,
            'assigned_doctor_id': study.assigned_doctor_id,
            'assigned_doctor_name': doctor.full_name if doctor else None,
            'assigned_at': _iso(study.assigned_at),
            'report_started_at': _iso(study.report_started_at),
            'report_finalized_at': _iso(study.report_finalized_at),
            'created_at': _iso(study.created_at),
            'tat': {name: _metric(value) for name, value in minutes.items()},
        }

    @staticmethod
    def export_row(study: Study) -> dict[str, Any]:
        """Flat row keyed by ExportConfig.COLUMNS keys, TAT in formatted units."""
        formatted = compute_tat(study).formatted()
        patient = study.patient
        status = study.workflow_status
        try:
            status_label = WorkflowStatus(status).label
        except ValueError:
            status_label = status
        study_date = study.study_date or ''
        return {
            'study_status': status_label,
            'category': classify(status).value,
            'patient_id': patient.patient_id if patient else '',
            'patient_name': patient.patient_name if patient else '',
            'gender': patient.gender if patient else '',
            'referred_by': study.referring_physician,
            'accession_number': study.accession_number,
            'study_description': study.exam_description,
            'modality': ', '.join(study.modalities or []),
            'series_images': f'{study.series_count}/{study.instance_count}',
            'institution_name': study.lab.name if study.lab_id else '',
            'billed_on_study_date': (
                f'{study_date[:4]}-{study_date[4:6]}-{study_date[6:]}' if len(study_date) == 8 else ''
            ),
            'upload_date': _local(study.created_at),
            'assigned_date': _local(study.assigned_at),
            'report_date': _local(study.report_finalized_at),
            'study_to_report': formatted['study_to_report'] or '-',
            'upload_to_report': formatted['upload_to_report'] or '-',
            'assign_to_report': formatted['assign_to_report'] or '-',
            'reported_by': study.finalized_by.full_name if study.finalized_by_id else '',
        }

    # ========== AGGREGATES ==========

    @staticmethod
    def summarize_by_status(queryset: QuerySet) -> dict[str, int]:
        """Count per workflow status over the whole queryset (zero-filled)."""
        summary = {status: 0 for status in WorkflowStatus.values}
        rows = queryset.order_by().values('workflow_status').annotate(count=Count('pk'))
        for row in rows:
            summary[row['workflow_status']] = row['count']
        return summary

    @staticmethod
    def summarize_by_category(status_summary: dict[str, int]) -> dict[str, int]:
        """Fold a status summary into categories using the shared classifier."""
        summary = {category: 0 for category in Category.values}
        for status, count in status_summary.items():
            summary[classify(status).value] += count
        return summary

    @staticmethod
    def summarize(queryset: QuerySet) -> dict[str, Any]:
        """
        Completion rate and average TAT per baseline over a filtered set.

        Averages only include studies with a value for that baseline.
        completion_rate is a 0..1 ratio and 0.0 for an empty set.
        """
        base = queryset.order_by()
        aggregates = base.aggregate(
            total=Count('pk'),
            completed=Count('pk', filter=Q(workflow_status__in=statuses_for(Category.COMPLETED))),
            **{f'avg_{name}': Avg(column) for name, column in TIMING_FIELDS.items()},
        )
        total = aggregates['total'] or 0
        completed = aggregates['completed'] or 0
        return {
            'total': total,
            'completed': completed,
            'completion_rate': completion_rate(completed, total),
            'average_tat': {name: _metric(aggregates[f'avg_{name}']) for name in TAT_PAIRS},
        }

    # ========== QUERY ==========

    @staticmethod
    def paginate(queryset: QuerySet, page: int, page_size: int) -> dict[str, Any]:
        """
        One page of study views plus summaries over the entire queryset.

        Out-of-range page sizes are clamped to [MIN_PAGE_SIZE, MAX_PAGE_SIZE];
        pages below 1 become 1.
        """
        page = max(page, 1)
        if page_size < ServiceConfig.MIN_PAGE_SIZE:
            page_size = ServiceConfig.DEFAULT_PAGE_SIZE
        page_size = min(page_size, ServiceConfig.MAX_PAGE_SIZE)

        try:
            by_status = ReportingService.summarize_by_status(queryset)
            total_count = sum(by_status.values())
            offset = (page - 1) * page_size
            items = [ReportingService.study_view(study) for study in queryset[offset:offset + page_size]]
            summary = ReportingService.summarize(queryset)
        except DatabaseError as e:
            raise DatabaseQueryError('Query studies', e) from e

        return {
            'items': items,
            'total_count': total_count,
            'page': page,
            'page_size': page_size,
            'summary_by_status': by_status,
            'summary_by_category': ReportingService.summarize_by_category(by_status),
            'summary': summary,
        }

    @staticmethod
    def query_studies(
        filters: StudyFilters | None = None,
        page: int = 1,
        page_size: int = ServiceConfig.DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        """
        Paginated filtered study list with status and category summaries.

        Args:
            filters: StudyFilters, all studies when None
            page: 1-based page number
            page_size: Rows per page

        Returns:
            {'items', 'total_count', 'page', 'page_size', 'summary_by_status',
             'summary_by_category', 'summary'}

        Raises:
            InvalidSearchParameterError: malformed filters
            InvalidStatusError: unknown status in filters.statuses
            DatabaseQueryError: query execution failed
        """
        queryset = ReportingService.build_queryset(filters or StudyFilters())
        return ReportingService.paginate(queryset, page, page_size)

    # ========== EXPORT ==========

    @staticmethod
    def stream_export(filters: StudyFilters | None = None) -> Iterator[dict[str, Any]]:
        """
        Lazily yield export rows for every study matching the filters.

        Rows are fetched in chunks of ExportConfig.EXPORT_BATCH_SIZE through a
        server-side iterator, so memory stays bounded regardless of result size.
        Restart by calling again with the same filters.
        """
        queryset = ReportingService.build_queryset(filters or StudyFilters())
        return ReportingService._iter_rows(queryset)

    @staticmethod
    def _iter_rows(queryset: QuerySet) -> Iterator[dict[str, Any]]:
        exported = 0
        for study in queryset.iterator(chunk_size=ExportConfig.EXPORT_BATCH_SIZE):
            exported += 1
            yield ReportingService.export_row(study)
        logger.info(f"Export stream finished: {exported} rows")

    # ========== CACHED LOOKUPS ==========

    @staticmethod
    def tat_analytics(lab_id: int | None = None, period: str = TATConfig.DEFAULT_ANALYTICS_PERIOD) -> dict[str, Any]:
        """
        Turnaround summary for a lab over a trailing window of upload dates.

        Cached for CacheConfig.ANALYTICS_TTL seconds per (lab, period).

        Returns:
            total, completed, completion_rate (percent, one decimal),
            average upload->report and assign->report, urgent open count

        Raises:
            InvalidSearchParameterError: unknown period
            LabNotFoundError: lab_id does not resolve
        """
        if period not in TATConfig.ANALYTICS_PERIODS:
            raise InvalidSearchParameterError(
                'period', period, f'must be one of {list(TATConfig.ANALYTICS_PERIODS)}'
            )
        if lab_id is not None and not Lab.objects.filter(pk=lab_id).exists():
            raise LabNotFoundError(lab_id)

        cache_key = f"{CacheConfig.KEY_PREFIX}:analytics:{lab_id or 'all'}:{period}"
        cached = cache.get(cache_key)
        if cached is not None:
            logger.debug(f"Analytics cache hit: {cache_key}")
            return cached

        since = timezone.now() - timedelta(days=TATConfig.ANALYTICS_PERIODS[period])
        queryset = Study.objects.filter(created_at__gte=since)
        if lab_id is not None:
            queryset = queryset.filter(lab_id=lab_id)

        try:
            summary = ReportingService.summarize(queryset)
            urgent = queryset.filter(
                priority=AssignmentPriority.URGENT,
                workflow_status__in=[s for c in OPEN_CATEGORIES for s in statuses_for(c)],
            ).count()
        except DatabaseError as e:
            raise DatabaseQueryError('TAT analytics', e) from e

        result = {
            'lab_id': lab_id,
            'period': period,
            'since': since.isoformat(),
            'total': summary['total'],
            'completed': summary['completed'],
            'completion_rate': round(summary['completion_rate'] * 100, 1),
            'average_upload_to_report': summary['average_tat']['upload_to_report'],
            'average_assign_to_report': summary['average_tat']['assign_to_report'],
            'urgent_open': urgent,
            'generated_at': timezone.now().isoformat(),
        }
        cache.set(cache_key, result, CacheConfig.ANALYTICS_TTL)
        logger.info(f"Analytics computed for lab={lab_id} period={period}: {summary['total']} studies")
        return result

    @staticmethod
    def list_locations() -> list[dict[str, Any]]:
        """Active labs as dropdown options, cached for CacheConfig.LOCATIONS_TTL seconds."""
        cache_key = f'{CacheConfig.KEY_PREFIX}:locations'
        cached = cache.get(cache_key)
        if cached is not None:
            return cached

        locations = [
            {'value': lab.id, 'label': lab.name, 'code': lab.identifier}
            for lab in Lab.objects.filter(is_active=True).order_by('name')
        ]
        cache.set(cache_key, locations, CacheConfig.LOCATIONS_TTL)
        return locations

    @staticmethod
    def list_statuses() -> dict[str, Any]:
        return {
            'statuses': status_catalogue(),
            'categories': [{'value': c.value, 'label': c.label} for c in Category],
        }

    # ========== DOCTOR VIEWS ==========

    @staticmethod
    def _get_doctor(doctor_id: int) -> Doctor:
        doctor = Doctor.objects.filter(pk=doctor_id).first()
        if doctor is None:
            raise DoctorNotFoundError(doctor_id)
        return doctor

    @staticmethod
    def doctor_queryset(doctor_id: int, filters: StudyFilters | None = None) -> QuerySet:
        """Studies currently assigned to the doctor, read from Study.assigned_doctor."""
        ReportingService._get_doctor(doctor_id)
        filters = filters or StudyFilters()
        filters.doctor_id = doctor_id
        return ReportingService.build_queryset(filters)

    @staticmethod
    def doctor_studies(
        doctor_id: int,
        filters: StudyFilters | None = None,
        page: int = 1,
        page_size: int = ServiceConfig.DEFAULT_PAGE_SIZE,
    ) -> dict[str, Any]:
        queryset = ReportingService.doctor_queryset(doctor_id, filters)
        return ReportingService.paginate(queryset, page, page_size)

    @staticmethod
    def doctor_stats(doctor_id: int) -> dict[str, Any]:
        """
        Dashboard counts for one doctor.

        Counts come from the Study table. The doctor's cached counters are
        returned alongside under 'cached' for display only.
        """
        doctor = ReportingService._get_doctor(doctor_id)
        queryset = Study.objects.filter(assigned_doctor_id=doctor_id)

        by_status = ReportingService.summarize_by_status(queryset)
        by_category = ReportingService.summarize_by_category(by_status)
        urgent_open = queryset.filter(
            priority=AssignmentPriority.URGENT,
            workflow_status__in=[s for c in OPEN_CATEGORIES for s in statuses_for(c)],
        ).count()
        average = queryset.aggregate(avg=Avg('assign_to_report_minutes'))['avg']

        return {
            'doctor_id': doctor.id,
            'full_name': doctor.full_name,
            'total_assigned': sum(by_status.values()),
            'by_category': by_category,
            'urgent_open': urgent_open,
            'average_assign_to_report': _metric(average),
            'cached': doctor.to_dict()['assignment_stats'],
        }
