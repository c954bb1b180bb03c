from ninja import Schema


class TATMetric(Schema):
    minutes: float | None = None
    formatted: str | None = None
    tier: str | None = None


class StudyTAT(Schema):
    study_to_report: TATMetric
    upload_to_report: TATMetric
    assign_to_report: TATMetric


class StudyView(Schema):
    """Study row in reporting listings.

    Display fields are joined from patient, lab and the assigned doctor.
    """
    study_instance_uid: str
    accession_number: str = ''
    patient_id: str | None = None
    patient_name: str | None = None
    gender: str | None = None
    lab_id: int | None = None
    lab_name: str | None = None
    modalities: list[str] = []
    study_date: str | None = None
    exam_description: str = ''
    workflow_status: str
    category: str
    priority: str
    assigned_doctor_id: int | None = None
    assigned_doctor_name: str | None = None
    assigned_at: str | None = None
    report_started_at: str | None = None
    report_finalized_at: str | None = None
    created_at: str | None = None
    tat: StudyTAT


class TATAnalytics(Schema):
    """Trailing-window turnaround summary for one lab (or all labs)."""
    lab_id: int | None = None
    period: str
    since: str
    total: int
    completed: int
    completion_rate: float
    average_upload_to_report: TATMetric
    average_assign_to_report: TATMetric
    urgent_open: int
    generated_at: str


class LocationOption(Schema):
    value: int
    label: str
    code: str


class StatusOption(Schema):
    value: str
    label: str
    category: str


class CategoryOption(Schema):
    value: str
    label: str


class StatusCatalogue(Schema):
    statuses: list[StatusOption]
    categories: list[CategoryOption]


class DoctorStats(Schema):
    doctor_id: int
    full_name: str
    total_assigned: int
    by_category: dict[str, int]
    urgent_open: int
    average_assign_to_report: TATMetric
    cached: dict
