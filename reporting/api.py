"""
Django Ninja API endpoints for reporting.

Architecture:
    - router: Mounted at /api/v1/reporting
    - GET /studies                  Paginated filtered list with summaries
    - GET /export                   CSV (streamed) or XLSX export of the same set
    - GET /analytics                Trailing-window TAT summary (cached)
    - GET /locations                Active labs (cached)
    - GET /statuses                 Workflow status catalogue with categories
    - GET /doctors/{id}/studies     Doctor worklist
    - GET /doctors/{id}/stats       Doctor dashboard counts

Filter Parameters (studies, export, doctor worklist):
    lab_id, date_baseline (study_date|upload_date|assigned_date|report_date),
    start_date, end_date (YYYY-MM-DD, inclusive), status (repeatable, also
    accepted as status[]), category, q, priority, sort

Error Handling:
    Invalid filters raise InvalidSearchParameterError or InvalidStatusError,
    mapped to 422 by the API exception handler in config.urls.

See Also:
    - Service: reporting.services.ReportingService
    - Filters: reporting.filters.StudyFilters
"""

import logging

from django.http import HttpResponse, StreamingHttpResponse
from ninja import Query, Router
from ninja.pagination import paginate

from common.config import ExportConfig, TATConfig
from common.exceptions import InvalidSearchParameterError
from common.export_service import ExportService
from common.pagination import StudyPagination
from reporting.filters import DEFAULT_SORT_KEY, StudyFilters
from reporting.schemas import (
    DoctorStats,
    LocationOption,
    StatusCatalogue,
    StudyView,
    TATAnalytics,
)
from reporting.services import ReportingService
from study.tat import DEFAULT_BASELINE

logger = logging.getLogger(__name__)

router = Router()


def get_array_param(request, param_name: str) -> list[str]:
    """
    Extract array parameter supporting both formats:
    - status[]=pending_assignment (frontend format)
    - status=pending_assignment&status=archived (Django Ninja format)
    """
    bracket_values = request.GET.getlist(f"{param_name}[]")
    if bracket_values:
        return [v for v in bracket_values if v]
    return [v for v in request.GET.getlist(param_name) if v]


def build_filters(
    request,
    lab_id: int | None,
    date_baseline: str,
    start_date: str | None,
    end_date: str | None,
    category: str | None,
    q: str | None,
    priority: str | None,
    sort: str,
) -> StudyFilters:
    return StudyFilters(
        lab_id=lab_id,
        date_baseline=date_baseline,
        start_date=start_date or None,
        end_date=end_date or None,
        statuses=get_array_param(request, 'status'),
        category=category or None,
        q=q or None,
        priority=priority or None,
        sort=sort,
    )


@router.get('/studies', response=list[StudyView])
@paginate(StudyPagination)
def query_studies(
    request,
    lab_id: int | None = Query(None),
    date_baseline: str = Query(DEFAULT_BASELINE),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    category: str | None = Query(None),
    q: str | None = Query(None),
    priority: str | None = Query(None),
    sort: str = Query(DEFAULT_SORT_KEY),
):
    """
    Paginated study list.

    Response:
        items, total_count, page, page_size, plus summary_by_status,
        summary_by_category and summary (completion rate, average TAT)
        computed over every matching study, not just the page.
    """
    filters = build_filters(request, lab_id, date_baseline, start_date, end_date, category, q, priority, sort)
    return ReportingService.build_queryset(filters)


@router.get('/export')
def export_studies(
    request,
    format: str = Query(ExportConfig.DEFAULT_EXPORT_FORMAT, description='Export format: csv or xlsx'),
    lab_id: int | None = Query(None),
    date_baseline: str = Query(DEFAULT_BASELINE),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    category: str | None = Query(None),
    q: str | None = Query(None),
    priority: str | None = Query(None),
    sort: str = Query(DEFAULT_SORT_KEY),
):
    """
    Export the filtered set as a file.

    CSV is streamed chunk by chunk. XLSX is written through a write-only
    workbook and returned when complete.
    """
    if format not in ExportConfig.ALLOWED_EXPORT_FORMATS:
        raise InvalidSearchParameterError(
            'format', format, f'must be one of {ExportConfig.ALLOWED_EXPORT_FORMATS}'
        )

    filters = build_filters(request, lab_id, date_baseline, start_date, end_date, category, q, priority, sort)
    rows = ReportingService.stream_export(filters)
    filename = ExportService.generate_export_filename(format)

    if format == 'xlsx':
        content = ExportService.export_to_excel(rows)
        response = HttpResponse(content, content_type=ExportService.get_content_type('xlsx'))
        logger.info(f"Export generated: {filename} ({len(content)} bytes)")
    else:
        response = StreamingHttpResponse(
            ExportService.stream_csv(rows),
            content_type=ExportService.get_content_type('csv'),
        )
        logger.info(f"Export streaming: {filename}")

    response['Content-Disposition'] = f'attachment; filename="{filename}"'
    response['Access-Control-Expose-Headers'] = 'Content-Disposition'
    return response


@router.get('/analytics', response=TATAnalytics)
def tat_analytics(
    request,
    lab_id: int | None = Query(None),
    period: str = Query(TATConfig.DEFAULT_ANALYTICS_PERIOD, description='7d, 30d or 90d'),
):
    return ReportingService.tat_analytics(lab_id=lab_id, period=period)


@router.get('/locations', response=list[LocationOption])
def list_locations(request):
    return ReportingService.list_locations()


@router.get('/statuses', response=StatusCatalogue)
def list_statuses(request):
    return ReportingService.list_statuses()


@router.get('/doctors/{doctor_id}/studies', response=list[StudyView])
@paginate(StudyPagination)
def doctor_studies(
    request,
    doctor_id: int,
    date_baseline: str = Query(DEFAULT_BASELINE),
    start_date: str | None = Query(None),
    end_date: str | None = Query(None),
    category: str | None = Query(None),
    q: str | None = Query(None),
    priority: str | None = Query(None),
    sort: str = Query(DEFAULT_SORT_KEY),
):
    """Studies currently assigned to the doctor, with the same filters as /studies."""
    filters = build_filters(request, None, date_baseline, start_date, end_date, category, q, priority, sort)
    return ReportingService.doctor_queryset(doctor_id, filters)


@router.get('/doctors/{doctor_id}/stats', response=DoctorStats)
def doctor_stats(request, doctor_id: int):
    return ReportingService.doctor_stats(doctor_id)
