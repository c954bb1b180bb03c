from django.contrib import admin

from study.models import Doctor, Lab, Patient, Study, StudyStatusHistory


@admin.register(Study)
class StudyAdmin(admin.ModelAdmin):
    list_display = ('study_instance_uid', 'workflow_status', 'assigned_doctor', 'priority', 'created_at')
    list_filter = ('workflow_status', 'priority', 'lab')
    search_fields = ('study_instance_uid', 'accession_number', 'patient__patient_name')
    # Workflow fields change only through the service layer
    readonly_fields = (
        'workflow_status', 'assigned_doctor', 'assigned_at', 'report_started_at',
        'report_finalized_at', 'archived_at',
    )


@admin.register(StudyStatusHistory)
class StudyStatusHistoryAdmin(admin.ModelAdmin):
    list_display = ('study', 'sequence', 'status', 'changed_at', 'changed_by')

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


admin.site.register(Doctor)
admin.site.register(Lab)
admin.site.register(Patient)
