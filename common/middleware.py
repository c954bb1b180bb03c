"""
Custom middleware for request timing and logging.
Logs every API request with response time and a request id for tracing.
"""

import time
import logging
import uuid

from common.config import ServiceConfig

logger = logging.getLogger('request_timing')


class RequestTimingMiddleware:
    """
    Middleware to measure and log request processing time.

    Logs format:
    "GET /api/v1/reporting/studies?page=1 HTTP/1.1" 200 15053 [125ms] id=3f2a...

    The request id is taken from an incoming X-Request-ID header when present,
    otherwise generated, and echoed back on the response. Requests slower than
    ServiceConfig.SLOW_REQUEST_MS are logged at WARNING.
    """

    def __init__(self, get_response):
        self.get_response = get_response

    def __call__(self, request):
        start_time = time.time()

        request_id = request.META.get('HTTP_X_REQUEST_ID') or uuid.uuid4().hex
        request.request_id = request_id

        response = self.get_response(request)

        duration_ms = (time.time() - start_time) * 1000

        # Streaming responses have no content to measure
        content_length = len(response.content) if hasattr(response, 'content') else 0

        response['X-Request-ID'] = request_id

        message = (
            f'"{request.method} {request.get_full_path()} '
            f'{request.META.get("SERVER_PROTOCOL", "HTTP/1.1")}" '
            f'{response.status_code} {content_length} '
            f'[{duration_ms:.0f}ms] id={request_id}'
        )
        if duration_ms > ServiceConfig.SLOW_REQUEST_MS:
            logger.warning(f'SLOW {message}')
        else:
            logger.info(message)

        return response
