from ninja import Field, Schema

from study.workflow import AssignmentPriority


class StudyIngestRequest(Schema):
    """Body for POST /api/v1/studies/ (idempotent on study_instance_uid)."""
    study_instance_uid: str = Field(..., min_length=1, max_length=128)
    accession_number: str = ''
    patient_id: str | None = None
    patient_name: str = ''
    gender: str = ''
    lab_id: int | None = None
    modalities: list[str] = Field(default_factory=list)
    series_count: int = Field(0, ge=0)
    instance_count: int = Field(0, ge=0)
    study_date: str = Field('', description='YYYYMMDD')
    exam_description: str = ''
    referring_physician: str = ''


class TransitionRequest(Schema):
    target_status: str
    note: str = ''


class AssignRequest(Schema):
    doctor_id: int
    priority: str = AssignmentPriority.NORMAL.value


class StartReportRequest(Schema):
    doctor_id: int


class FinalizeReportRequest(Schema):
    doctor_id: int
    content: str = Field(..., min_length=1)


class AssignmentOut(Schema):
    assigned_to: int
    assigned_at: str | None = None
    assigned_by: str | None = None
    priority: str


class ReportInfoOut(Schema):
    started_at: str | None = None
    finalized_at: str | None = None
    finalized_by: int | None = None
    content: str = ''


class TimingInfoOut(Schema):
    study_to_report_minutes: int | None = None
    upload_to_report_minutes: int | None = None
    assign_to_report_minutes: int | None = None


class StatusHistoryEntry(Schema):
    sequence: int
    status: str
    changed_at: str
    changed_by: str | None = None
    note: str | None = None


class TATOut(Schema):
    """TAT per baseline pair: raw minutes, compact units and tier."""
    minutes: dict[str, int | None]
    formatted: dict[str, str | None]
    tiers: dict[str, str | None]
    anomalies: list[str] = []


class StudyOut(Schema):
    """Study record returned by workflow endpoints."""
    study_instance_uid: str
    accession_number: str = ''
    patient_id: str | None = None
    patient_name: str | None = None
    lab_id: int | None = None
    lab_name: str | None = None
    modalities: list[str] = []
    series_count: int = 0
    instance_count: int = 0
    study_date: str | None = None
    exam_description: str = ''
    workflow_status: str
    category: str
    assignment: AssignmentOut | None = None
    report_info: ReportInfoOut
    timing_info: TimingInfoOut
    archived_at: str | None = None
    created_at: str | None = None


class StudyDetail(StudyOut):
    """Complete study record with the status ledger and computed TAT."""
    status_history: list[StatusHistoryEntry]
    tat: TATOut


class StudyTATResponse(TATOut):
    study_instance_uid: str
