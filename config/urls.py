"""
URL configuration for Django Ninja API.
All endpoints under /api/v1/ prefix.
"""

import logging

from django.conf import settings
from django.contrib import admin
from django.http import JsonResponse
from django.urls import path
from ninja import NinjaAPI

from common.exceptions import WorkflowServiceError, get_http_status, to_error_dict
from reporting.api import router as reporting_router
from study.api import router as studies_router

logger = logging.getLogger(__name__)

# Create Ninja API
api = NinjaAPI(
    title='Radiology Study Workflow API',
    version=settings.APP_VERSION,
    description='Study workflow, assignment and turnaround-time reporting',
)

# Include routers with prefixes
api.add_router('/studies', studies_router, tags=['studies'])
api.add_router('/reporting', reporting_router, tags=['reporting'])


@api.exception_handler(WorkflowServiceError)
def workflow_error(request, exc: WorkflowServiceError):
    """Map domain exceptions to HTTP status codes with a standard error body."""
    status = get_http_status(exc)
    if status >= 500:
        logger.error(f"{type(exc).__name__}: {exc}")
    return api.create_response(
        request,
        to_error_dict(exc, request_id=getattr(request, 'request_id', None)),
        status=status,
    )


# Health check endpoint
@api.get('/health')
def health_check(request):
    """Health check endpoint"""
    return {'status': 'ok', 'version': settings.APP_VERSION}


# URL patterns
urlpatterns = [
    # Admin interface
    path('admin/', admin.site.urls),

    # API endpoints
    path('api/v1/', api.urls),

    # Root endpoint with API info
    path('', lambda request: JsonResponse({
        'app': settings.APP_NAME,
        'version': settings.APP_VERSION,
        'docs': '/api/v1/docs',
    })),
]
