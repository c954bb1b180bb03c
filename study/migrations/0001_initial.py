# Generated manually for study module

import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


WORKFLOW_STATUS_CHOICES = [
    ("new_study_received", "New Study"),
    ("pending_assignment", "Pending Assignment"),
    ("assigned_to_doctor", "Assigned to Doctor"),
    ("doctor_opened_report", "Doctor Opened Report"),
    ("report_in_progress", "Report In Progress"),
    ("report_finalized", "Report Finalized"),
    ("report_uploaded", "Report Uploaded"),
    ("report_downloaded_radiologist", "Downloaded by Radiologist"),
    ("report_downloaded", "Report Downloaded"),
    ("final_report_downloaded", "Final Report Downloaded"),
    ("archived", "Archived"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Lab",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(help_text="Facility display name", max_length=200)),
                ("identifier", models.CharField(help_text="Short facility code", max_length=50, unique=True)),
                ("is_active", models.BooleanField(db_index=True, default=True)),
            ],
            options={
                "db_table": "labs",
                "ordering": ["name"],
            },
        ),
        migrations.CreateModel(
            name="Patient",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "patient_id",
                    models.CharField(
                        help_text="Patient identifier from the source system",
                        max_length=100,
                        unique=True,
                    ),
                ),
                ("patient_name", models.CharField(db_index=True, max_length=200)),
                (
                    "gender",
                    models.CharField(
                        blank=True,
                        choices=[("M", "Male"), ("F", "Female"), ("O", "Other"), ("U", "Unknown")],
                        default="",
                        max_length=10,
                    ),
                ),
                ("birth_date", models.CharField(blank=True, default="", max_length=20)),
            ],
            options={
                "db_table": "patients",
            },
        ),
        migrations.CreateModel(
            name="Doctor",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("full_name", models.CharField(max_length=200)),
                ("specialization", models.CharField(max_length=200)),
                ("license_number", models.CharField(blank=True, max_length=100, null=True, unique=True)),
                ("department", models.CharField(blank=True, default="", max_length=200)),
                ("is_active", models.BooleanField(default=True)),
                ("total_assigned", models.PositiveIntegerField(default=0)),
                ("total_completed", models.PositiveIntegerField(default=0)),
                (
                    "average_report_minutes",
                    models.FloatField(
                        blank=True,
                        help_text="Running mean of assignment-to-finalization minutes",
                        null=True,
                    ),
                ),
                ("last_assignment_at", models.DateTimeField(blank=True, null=True)),
                ("last_completion_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
            ],
            options={
                "db_table": "doctors",
                "ordering": ["full_name"],
            },
        ),
        migrations.CreateModel(
            name="Study",
            fields=[
                (
                    "study_instance_uid",
                    models.CharField(
                        help_text="DICOM StudyInstanceUID, globally unique and immutable",
                        max_length=128,
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                ("accession_number", models.CharField(blank=True, db_index=True, default="", max_length=100)),
                ("modalities", models.JSONField(default=list, help_text='Modalities in study, e.g. ["CT"]')),
                ("series_count", models.PositiveIntegerField(default=0)),
                ("instance_count", models.PositiveIntegerField(default=0)),
                (
                    "study_date",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        default="",
                        help_text="DICOM study date (YYYYMMDD)",
                        max_length=8,
                    ),
                ),
                ("exam_description", models.TextField(blank=True, default="")),
                ("referring_physician", models.CharField(blank=True, default="", max_length=200)),
                (
                    "workflow_status",
                    models.CharField(
                        choices=WORKFLOW_STATUS_CHOICES,
                        db_index=True,
                        default="new_study_received",
                        max_length=40,
                    ),
                ),
                ("assigned_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("assigned_by", models.CharField(blank=True, default="", max_length=150)),
                (
                    "priority",
                    models.CharField(
                        choices=[("low", "Low"), ("normal", "Normal"), ("high", "High"), ("urgent", "Urgent")],
                        db_index=True,
                        default="normal",
                        max_length=10,
                    ),
                ),
                ("report_started_at", models.DateTimeField(blank=True, null=True)),
                ("report_finalized_at", models.DateTimeField(blank=True, db_index=True, null=True)),
                ("report_content", models.TextField(blank=True, default="")),
                ("archived_at", models.DateTimeField(blank=True, null=True)),
                ("study_to_report_minutes", models.IntegerField(blank=True, null=True)),
                ("upload_to_report_minutes", models.IntegerField(blank=True, null=True)),
                ("assign_to_report_minutes", models.IntegerField(blank=True, null=True)),
                (
                    "created_at",
                    models.DateTimeField(
                        db_index=True,
                        default=django.utils.timezone.now,
                        help_text="Upload/ingestion time",
                    ),
                ),
                ("updated_at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "assigned_doctor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="assigned_studies",
                        to="study.doctor",
                    ),
                ),
                (
                    "finalized_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="finalized_studies",
                        to="study.doctor",
                    ),
                ),
                (
                    "lab",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="studies",
                        to="study.lab",
                    ),
                ),
                (
                    "patient",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="studies",
                        to="study.patient",
                    ),
                ),
            ],
            options={
                "db_table": "studies",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["workflow_status", "-created_at"], name="idx_study_status_created"),
                    models.Index(fields=["assigned_doctor", "workflow_status"], name="idx_study_doctor_status"),
                    models.Index(fields=["lab", "workflow_status", "-created_at"], name="idx_study_lab_status"),
                    models.Index(fields=["priority", "workflow_status"], name="idx_study_priority_status"),
                ],
            },
        ),
        migrations.CreateModel(
            name="StudyStatusHistory",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("sequence", models.PositiveIntegerField()),
                ("status", models.CharField(choices=WORKFLOW_STATUS_CHOICES, max_length=40)),
                ("changed_at", models.DateTimeField()),
                ("changed_by", models.CharField(blank=True, default="", max_length=150)),
                ("note", models.TextField(blank=True, default="")),
                (
                    "study",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="status_history",
                        to="study.study",
                    ),
                ),
            ],
            options={
                "db_table": "study_status_history",
                "ordering": ["study", "sequence"],
                "constraints": [
                    models.UniqueConstraint(fields=("study", "sequence"), name="uniq_history_study_sequence"),
                ],
            },
        ),
    ]
