"""
Custom pagination for Django Ninja reporting endpoints.

Implements Django Ninja's PaginationBase to provide page-based pagination
with status and category summaries computed over the whole filtered set.

Reference: https://django-ninja.dev/guides/response/pagination/
"""

from typing import Any

from django.db.models import QuerySet
from ninja import Schema
from ninja.pagination import PaginationBase

from common.config import ServiceConfig
from reporting.services import ReportingService


class StudyPaginationInput(Schema):
    """Input parameters for study pagination.

    Follows Page-based pagination pattern:
    - page: Page number (1-based, default 1)
    - page_size: Items per page (default 20, max 100)
    """

    page: int = 1
    page_size: int = ServiceConfig.DEFAULT_PAGE_SIZE


class StudyPaginationOutput(Schema):
    """Output format for paginated study responses.

    Extends standard pagination with summaries over the entire filtered set,
    independent of which page is returned.
    """

    items: list[Any]
    total_count: int
    page: int
    page_size: int
    summary_by_status: dict[str, int]
    summary_by_category: dict[str, int]
    summary: dict[str, Any]


class StudyPagination(PaginationBase):
    """
    Custom pagination class for study listings.

    Usage in API:
        @router.get('/studies', response=list[StudyView])
        @paginate(StudyPagination)
        def query_studies(request, ...):
            return ReportingService.build_queryset(filters)

    The decorated view returns the filtered queryset; this class slices it,
    converts rows to study views and attaches the summaries.
    """

    class Input(StudyPaginationInput):
        """Input parameters for pagination."""

        pass

    class Output(StudyPaginationOutput):
        """Output format for paginated responses."""

        pass

    def paginate_queryset(
        self, queryset: QuerySet, pagination: Input, **params: Any
    ) -> dict[str, Any]:
        """
        Paginate the queryset and return formatted output.

        Args:
            queryset: Filtered, ordered Study queryset
            pagination: Input parameters (page, page_size)
            **params: Additional parameters from the request

        Returns:
            Dictionary with paginated items, total count and summaries
        """
        return ReportingService.paginate(queryset, pagination.page, pagination.page_size)
