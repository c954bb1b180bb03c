"""
Configuration constants for the radiology workflow backend.

This module centralizes the magic numbers and strings used by the workflow,
turnaround-time and reporting layers, so tuning happens in one place.

Design Principle:
    "Don't Repeat Yourself" - All configuration in one place
    "Self-Documenting Code" - Constants with clear names and documentation

Usage:
    >>> from common.config import TATConfig
    >>> TATConfig.TIER_THRESHOLDS[0]
    (60, 'excellent')
"""


class ServiceConfig:
    """Service layer configuration constants.

    These values control paging, ledger and request logging behavior.
    """

    # ========== Pagination Configuration ==========

    DEFAULT_PAGE_SIZE: int = 20
    """Default number of items per page when page_size not specified."""

    MAX_PAGE_SIZE: int = 100
    """Maximum allowed page size.

    Requests above this are clamped. Keeps list responses small enough for
    the worklist UI.
    """

    MIN_PAGE_SIZE: int = 1
    """Minimum allowed page size. Smaller values fall back to the default."""

    # ========== Ledger Configuration ==========

    LEDGER_NOTE_MAX_LENGTH: int = 1000
    """Maximum stored length of a status history note."""

    # ========== Request Logging ==========

    SLOW_REQUEST_MS: int = 2000
    """Requests slower than this are logged at WARNING level."""


class TATConfig:
    """Turnaround-time engine constants."""

    TIER_THRESHOLDS: list[tuple[int, str]] = [
        (60, 'excellent'),
        (240, 'good'),
        (480, 'fair'),
        (1440, 'delayed'),
    ]
    """Upper bounds (inclusive, minutes) for each performance tier.

    Anything above the last bound is CRITICAL_TIER.
    """

    CRITICAL_TIER: str = 'critical'
    ANOMALY_TIER: str = 'anomaly'
    """Tier used for negative durations (clock skew or bad source data)."""

    MINUTES_PER_HOUR: int = 60
    MINUTES_PER_DAY: int = 60 * 24
    MINUTES_PER_WEEK: int = 60 * 24 * 7

    STUDY_DATE_FORMAT: str = '%Y%m%d'
    """DICOM study date format (YYYYMMDD)."""

    ANALYTICS_PERIODS: dict[str, int] = {
        '7d': 7,
        '30d': 30,
        '90d': 90,
    }
    """Trailing analytics windows in days."""

    DEFAULT_ANALYTICS_PERIOD: str = '30d'


class CacheConfig:
    """Cache behavior configuration for the reporting boundary.

    The workflow core never reads from the cache. Only display-oriented
    reporting endpoints do, and every entry has a bounded TTL.
    """

    KEY_PREFIX: str = 'tat'

    ANALYTICS_TTL: int = 15 * 60
    """Seconds a cached analytics summary may be served."""

    LOCATIONS_TTL: int = 60 * 60
    """Seconds the active lab list may be served from cache."""


class ExportConfig:
    """Export-specific configuration constants."""

    EXPORT_BATCH_SIZE: int = 100
    """Rows fetched from the database per iterator chunk and rendered per CSV chunk."""

    CSV_ENCODING: str = 'utf-8-sig'
    """UTF-8 with BOM for Excel compatibility."""

    EXCEL_SHEET_NAME: str = 'TAT Report'

    COLUMNS: list[tuple[str, str]] = [
        ('study_status', 'StudyStatus'),
        ('category', 'Category'),
        ('patient_id', 'PatientId'),
        ('patient_name', 'PatientName'),
        ('gender', 'Gender'),
        ('referred_by', 'ReferredBy'),
        ('accession_number', 'AccessionNumber'),
        ('study_description', 'StudyDescription'),
        ('modality', 'Modality'),
        ('series_images', 'Series_Images'),
        ('institution_name', 'InstitutionName'),
        ('billed_on_study_date', 'BilledOnStudyDate'),
        ('upload_date', 'UploadDate'),
        ('assigned_date', 'AssignedDate'),
        ('report_date', 'ReportDate'),
        ('study_to_report', 'DiffStudyandReportTAT'),
        ('upload_to_report', 'DiffUploadandReportTAT'),
        ('assign_to_report', 'DiffAssignandReportTAT'),
        ('reported_by', 'ReportedBy'),
    ]
    """(row key, header) pairs in sheet order."""

    DEFAULT_EXPORT_FORMAT: str = 'csv'
    ALLOWED_EXPORT_FORMATS: list[str] = ['csv', 'xlsx']


class ValidationConfig:
    """Input validation configuration."""

    DATE_FORMAT_REGEX: str = r'^\d{4}-\d{2}-\d{2}$'
    """Regex pattern for date range parameters (YYYY-MM-DD)."""

    DATE_FORMAT_EXAMPLE: str = '2025-11-10'

    MAX_SEARCH_QUERY_LENGTH: int = 200
    """Maximum length for the free-text search (q parameter)."""


def get_all_config() -> dict:
    """Get all configuration as dictionary for debugging/logging."""
    return {
        'service': {
            'default_page_size': ServiceConfig.DEFAULT_PAGE_SIZE,
            'max_page_size': ServiceConfig.MAX_PAGE_SIZE,
            'slow_request_ms': ServiceConfig.SLOW_REQUEST_MS,
        },
        'tat': {
            'tiers': TATConfig.TIER_THRESHOLDS,
            'periods': TATConfig.ANALYTICS_PERIODS,
        },
        'cache': {
            'analytics_ttl': CacheConfig.ANALYTICS_TTL,
            'locations_ttl': CacheConfig.LOCATIONS_TTL,
        },
        'export': {
            'batch_size': ExportConfig.EXPORT_BATCH_SIZE,
            'formats': ExportConfig.ALLOWED_EXPORT_FORMATS,
        },
    }
