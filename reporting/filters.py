"""
Filter parameters for reporting queries.

StudyFilters is the single description of "which studies" shared by the
paginated list, the summaries, the export stream and the doctor worklist.
Date ranges are applied to the column named by study.tat.BASELINE_FIELDS, the
same table the TAT engine reads, so filtering by a baseline and measuring
from it always agree.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta

from django.db.models import F, Q, QuerySet
from django.db.models.functions import Coalesce
from django.utils import timezone

from common.config import ValidationConfig
from common.exceptions import InvalidSearchParameterError
from study.tat import BASELINE_FIELDS, DEFAULT_BASELINE
from study.workflow import AssignmentPriority, Category, WorkflowStatus, parse_status, statuses_for

logger = logging.getLogger(__name__)


# Sort key -> ORDER BY fields; 'last_activity' is annotated in apply_filters.
# Nullable timestamps sort last on every backend.
SORT_MAPPING = {
    'recent': ('-last_activity', '-created_at', 'study_instance_uid'),
    'created_desc': ('-created_at', 'study_instance_uid'),
    'created_asc': ('created_at', 'study_instance_uid'),
    'assigned_desc': (F('assigned_at').desc(nulls_last=True), '-created_at', 'study_instance_uid'),
    'report_desc': (F('report_finalized_at').desc(nulls_last=True), '-created_at', 'study_instance_uid'),
}
DEFAULT_SORT_KEY = 'recent'

SEARCH_FIELDS = (
    'study_instance_uid__icontains',
    'accession_number__icontains',
    'patient__patient_id__icontains',
    'patient__patient_name__icontains',
    'exam_description__icontains',
    'referring_physician__icontains',
)


@dataclass
class StudyFilters:
    """
    Reporting filter set.

    Attributes:
        lab_id: Restrict to one facility
        date_baseline: Which timestamp start_date/end_date apply to
            (study_date, upload_date, assigned_date, report_date)
        start_date, end_date: Inclusive YYYY-MM-DD bounds
        statuses: Workflow status values to include
        category: Dashboard category to include
        q: Free-text search
        doctor_id: Restrict to studies currently assigned to this doctor
        priority: Restrict to one assignment priority
        sort: Key into SORT_MAPPING
    """

    lab_id: int | None = None
    date_baseline: str = DEFAULT_BASELINE
    start_date: str | None = None
    end_date: str | None = None
    statuses: list[str] = field(default_factory=list)
    category: str | None = None
    q: str | None = None
    doctor_id: int | None = None
    priority: str | None = None
    sort: str = DEFAULT_SORT_KEY

    def validate(self) -> 'StudyFilters':
        """Reject malformed values. Returns self for chaining."""
        if self.date_baseline not in BASELINE_FIELDS:
            raise InvalidSearchParameterError(
                'date_baseline', self.date_baseline,
                f'must be one of {sorted(BASELINE_FIELDS)}',
            )

        for name in ('start_date', 'end_date'):
            value = getattr(self, name)
            if value and not re.match(ValidationConfig.DATE_FORMAT_REGEX, value):
                raise InvalidSearchParameterError(
                    name, value, f'expected YYYY-MM-DD, e.g. {ValidationConfig.DATE_FORMAT_EXAMPLE}'
                )
            if value:
                try:
                    datetime.strptime(value, '%Y-%m-%d')
                except ValueError:
                    raise InvalidSearchParameterError(name, value, 'not a calendar date') from None

        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise InvalidSearchParameterError('end_date', self.end_date, 'must not be before start_date')

        # Unknown variants are rejected at the boundary
        self.statuses = [parse_status(value).value for value in self.statuses]

        if self.category is not None:
            try:
                self.category = Category(self.category).value
            except ValueError:
                raise InvalidSearchParameterError(
                    'category', self.category, f'must be one of {Category.values}'
                ) from None

        if self.priority is not None and self.priority not in AssignmentPriority.values:
            raise InvalidSearchParameterError(
                'priority', self.priority, f'must be one of {AssignmentPriority.values}'
            )

        if self.q and len(self.q) > ValidationConfig.MAX_SEARCH_QUERY_LENGTH:
            raise InvalidSearchParameterError(
                'q', self.q[:20] + '...',
                f'longer than {ValidationConfig.MAX_SEARCH_QUERY_LENGTH} characters',
            )

        if self.sort not in SORT_MAPPING:
            logger.warning(f"Unsupported sort '{self.sort}', falling back to '{DEFAULT_SORT_KEY}'")
            self.sort = DEFAULT_SORT_KEY

        return self


def _date_range_q(baseline: str, start_date: str | None, end_date: str | None) -> Q:
    column = BASELINE_FIELDS[baseline]
    condition = Q()

    if baseline == 'study_date':
        # YYYYMMDD strings order the same way as the dates they encode
        if start_date:
            condition &= Q(**{f'{column}__gte': start_date.replace('-', '')})
        if end_date:
            condition &= Q(**{f'{column}__lte': end_date.replace('-', '')})
        return condition & ~Q(**{column: ''})

    tz = timezone.get_default_timezone()
    if start_date:
        start = timezone.make_aware(datetime.combine(datetime.strptime(start_date, '%Y-%m-%d'), time.min), tz)
        condition &= Q(**{f'{column}__gte': start})
    if end_date:
        end_day = datetime.strptime(end_date, '%Y-%m-%d') + timedelta(days=1)
        end = timezone.make_aware(datetime.combine(end_day, time.min), tz)
        condition &= Q(**{f'{column}__lt': end})
    return condition


def apply_filters(queryset: QuerySet, filters: StudyFilters) -> QuerySet:
    """Apply a validated StudyFilters to a Study queryset and order it."""
    conditions = Q()

    if filters.lab_id is not None:
        conditions &= Q(lab_id=filters.lab_id)
    if filters.doctor_id is not None:
        conditions &= Q(assigned_doctor_id=filters.doctor_id)
    if filters.priority:
        conditions &= Q(priority=filters.priority)
    if filters.statuses:
        conditions &= Q(workflow_status__in=filters.statuses)

    if filters.category == Category.UNKNOWN:
        conditions &= ~Q(workflow_status__in=WorkflowStatus.values)
    elif filters.category:
        conditions &= Q(workflow_status__in=statuses_for(filters.category))

    if filters.start_date or filters.end_date:
        conditions &= _date_range_q(filters.date_baseline, filters.start_date, filters.end_date)

    if filters.q:
        term = filters.q.strip()
        search = Q()
        for lookup in SEARCH_FIELDS:
            search |= Q(**{lookup: term})
        conditions &= search

    return (
        queryset.filter(conditions)
        .annotate(last_activity=Coalesce('assigned_at', 'created_at'))
        .order_by(*SORT_MAPPING[filters.sort])
    )
