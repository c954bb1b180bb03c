"""
Custom exception hierarchy for the study workflow backend.

This module defines domain-specific exceptions for clear error semantics.
Every failed mutation raises one of these with enough context (study UID,
attempted move, current state) to diagnose the failure without re-querying.

Exception Hierarchy:
    WorkflowServiceError (base)
    ├── StudyNotFoundError
    ├── DoctorNotFoundError
    ├── LabNotFoundError
    ├── InvalidTransitionError
    ├── NotAssignedToCallerError
    ├── ConcurrentModificationError
    ├── InactiveDoctorError
    ├── InvalidStatusError
    ├── InvalidSearchParameterError
    ├── LedgerImmutableError
    ├── LedgerInconsistencyError
    └── DatabaseQueryError

Usage Examples:
    >>> raise StudyNotFoundError('1.2.840.1')
    StudyNotFoundError: Study not found: 1.2.840.1

    >>> raise InvalidTransitionError('1.2.840.1', 'new_study_received', 'report_finalized')
    InvalidTransitionError: Study 1.2.840.1: cannot move from new_study_received to report_finalized
"""

from typing import Any, Dict, Optional


class WorkflowServiceError(Exception):
    """Base exception for all workflow and reporting operations.

    Example:
        try:
            study = AssignmentService.start_report(uid, doctor_id)
        except WorkflowServiceError as e:
            return to_error_dict(e)
    """
    pass


class StudyNotFoundError(WorkflowServiceError):
    """Raised when no study matches the given studyInstanceUID.

    Attributes:
        study_uid: The UID that was not found
    """

    def __init__(self, study_uid: str):
        self.study_uid = study_uid
        super().__init__(f"Study not found: {study_uid}")


class DoctorNotFoundError(WorkflowServiceError):
    """Raised when a doctor reference cannot be resolved."""

    def __init__(self, doctor_id: Any):
        self.doctor_id = doctor_id
        super().__init__(f"Doctor not found: {doctor_id}")


class LabNotFoundError(WorkflowServiceError):
    """Raised when a lab (location) reference cannot be resolved."""

    def __init__(self, lab_id: Any):
        self.lab_id = lab_id
        super().__init__(f"Lab not found: {lab_id}")


class InvalidTransitionError(WorkflowServiceError):
    """Raised when the requested status is not reachable from the current one.

    Attributes:
        study_uid: Study the transition was attempted on
        current_status: Status at the time of the attempt
        target_status: Status the caller asked for
        reason: Optional extra explanation (e.g. missing archive note)
    """

    def __init__(
        self,
        study_uid: str,
        current_status: str,
        target_status: str,
        reason: str | None = None,
    ):
        self.study_uid = study_uid
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        message = f"Study {study_uid}: cannot move from {current_status} to {target_status}"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class NotAssignedToCallerError(WorkflowServiceError):
    """Raised when a doctor acts on a study assigned to someone else.

    This is an authorization failure, not a workflow one. It is never retried.
    """

    def __init__(self, study_uid: str, caller_id: Any, assigned_to: Any):
        self.study_uid = study_uid
        self.caller_id = caller_id
        self.assigned_to = assigned_to
        super().__init__(
            f"Study {study_uid} is assigned to doctor {assigned_to}, not {caller_id}"
        )


class ConcurrentModificationError(WorkflowServiceError):
    """Raised when a conditional update finds the guarded fields changed.

    The caller should re-fetch the study and decide again. The core never
    retries on its own.

    Attributes:
        study_uid: Study that was being written
        operation: Name of the write (assign, start_report, ...)
        expected: Guard values the write was conditioned on
    """

    def __init__(self, study_uid: str, operation: str, expected: Dict[str, Any]):
        self.study_uid = study_uid
        self.operation = operation
        self.expected = expected
        super().__init__(
            f"Study {study_uid} changed during {operation}; expected {expected}. "
            f"Re-fetch and retry."
        )


class InactiveDoctorError(WorkflowServiceError):
    """Raised when assigning a study to a doctor whose profile is inactive."""

    def __init__(self, doctor_id: Any):
        self.doctor_id = doctor_id
        super().__init__(f"Cannot assign study to inactive doctor {doctor_id}")


class InvalidStatusError(WorkflowServiceError):
    """Raised when a status string is not a member of the workflow enum."""

    def __init__(self, value: Any):
        self.value = value
        super().__init__(f"Invalid workflow status: {value}")


class InvalidSearchParameterError(WorkflowServiceError):
    """Raised when search or filter parameters are invalid or malformed.

    Attributes:
        param: The parameter name that is invalid
        value: The invalid value that was provided
        reason: Explanation of why the value is invalid
    """

    def __init__(self, param: str, value: Any, reason: str):
        self.param = param
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {param}={value}: {reason}")


class LedgerImmutableError(WorkflowServiceError):
    """Raised on any attempt to edit or delete a status history entry."""

    def __init__(self, entry_id: Any):
        self.entry_id = entry_id
        super().__init__(f"Status history entry {entry_id} is append-only")


class LedgerInconsistencyError(WorkflowServiceError):
    """Raised when the ledger tail does not match the study's status after a write."""

    def __init__(self, study_uid: str, workflow_status: str, tail_status: str | None):
        self.study_uid = study_uid
        self.workflow_status = workflow_status
        self.tail_status = tail_status
        super().__init__(
            f"Study {study_uid}: ledger tail {tail_status!r} does not match "
            f"workflow status {workflow_status!r}"
        )


class DatabaseQueryError(WorkflowServiceError):
    """Raised when database queries fail due to connection or execution errors.

    Attributes:
        query_description: Human-readable description of the query
        original_error: The original database exception
    """

    def __init__(self, query_description: str, original_error: Exception):
        self.query_description = query_description
        self.original_error = original_error
        super().__init__(
            f"Database query failed: {query_description}. "
            f"Error: {type(original_error).__name__}: {str(original_error)}"
        )


# Error code mapping for API responses
ERROR_CODES = {
    StudyNotFoundError: 'STUDY_NOT_FOUND',
    DoctorNotFoundError: 'DOCTOR_NOT_FOUND',
    LabNotFoundError: 'LAB_NOT_FOUND',
    InvalidTransitionError: 'INVALID_TRANSITION',
    NotAssignedToCallerError: 'NOT_ASSIGNED_TO_CALLER',
    ConcurrentModificationError: 'CONCURRENT_MODIFICATION',
    InactiveDoctorError: 'INACTIVE_DOCTOR',
    InvalidStatusError: 'INVALID_STATUS',
    InvalidSearchParameterError: 'INVALID_SEARCH_PARAMETER',
    LedgerImmutableError: 'LEDGER_IMMUTABLE',
    LedgerInconsistencyError: 'LEDGER_INCONSISTENT',
    DatabaseQueryError: 'DATABASE_QUERY_ERROR',
}

# HTTP status per exception, used by the API exception handler
HTTP_STATUS_CODES = {
    StudyNotFoundError: 404,
    DoctorNotFoundError: 404,
    LabNotFoundError: 404,
    InvalidTransitionError: 409,
    NotAssignedToCallerError: 403,
    ConcurrentModificationError: 409,
    InactiveDoctorError: 422,
    InvalidStatusError: 422,
    InvalidSearchParameterError: 422,
    LedgerImmutableError: 409,
    LedgerInconsistencyError: 500,
    DatabaseQueryError: 500,
}


def get_error_code(exception: WorkflowServiceError) -> str:
    """Get standardized error code for an exception.

    Example:
        >>> get_error_code(StudyNotFoundError('1.2.3'))
        'STUDY_NOT_FOUND'
    """
    return ERROR_CODES.get(type(exception), 'WORKFLOW_SERVICE_ERROR')


def get_http_status(exception: WorkflowServiceError) -> int:
    """HTTP status for an exception, 500 for anything unmapped."""
    return HTTP_STATUS_CODES.get(type(exception), 500)


def to_error_dict(exception: WorkflowServiceError, request_id: Optional[str] = None) -> Dict:
    """Convert exception to standardized error dictionary for API responses.

    Example:
        >>> exc = InvalidTransitionError('1.2.3', 'new_study_received', 'report_finalized')
        >>> to_error_dict(exc)['error']['details']
        {'study_uid': '1.2.3', 'current_status': 'new_study_received', 'target_status': 'report_finalized'}
    """
    error_dict: Dict[str, Any] = {
        'error': {
            'code': get_error_code(exception),
            'message': str(exception),
        }
    }

    details: Dict[str, Any] | None = None
    if isinstance(exception, InvalidTransitionError):
        details = {
            'study_uid': exception.study_uid,
            'current_status': exception.current_status,
            'target_status': exception.target_status,
        }
        if exception.reason:
            details['reason'] = exception.reason
    elif isinstance(exception, NotAssignedToCallerError):
        details = {
            'study_uid': exception.study_uid,
            'caller_id': str(exception.caller_id),
            'assigned_to': str(exception.assigned_to) if exception.assigned_to is not None else None,
        }
    elif isinstance(exception, ConcurrentModificationError):
        details = {
            'study_uid': exception.study_uid,
            'operation': exception.operation,
            'expected': {key: str(value) for key, value in exception.expected.items()},
        }
    elif isinstance(exception, StudyNotFoundError):
        details = {'study_uid': exception.study_uid}
    elif isinstance(exception, (DoctorNotFoundError, InactiveDoctorError)):
        details = {'doctor_id': str(exception.doctor_id)}
    elif isinstance(exception, LabNotFoundError):
        details = {'lab_id': str(exception.lab_id)}
    elif isinstance(exception, InvalidSearchParameterError):
        details = {
            'param': exception.param,
            'value': str(exception.value),
            'reason': exception.reason,
        }
    elif isinstance(exception, InvalidStatusError):
        details = {'value': str(exception.value)}

    if details is not None:
        error_dict['error']['details'] = details

    if request_id:
        error_dict['error']['request_id'] = request_id

    return error_dict
