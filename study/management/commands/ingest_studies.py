"""
Django management command to ingest studies from a CSV manifest.

Each row becomes one StudyService.ingest_study() call, so re-running the same
file is safe: already ingested study_instance_uids are skipped.

Expected columns (extra columns are ignored):
    study_instance_uid (required), accession_number, patient_id,
    patient_name, gender, lab_code, modalities (e.g. "CT|MR"),
    series_count, instance_count, study_date (YYYYMMDD), exam_description,
    referring_physician

Usage:
    django-admin ingest_studies manifest.csv
    django-admin ingest_studies manifest.csv --chunk-size 500 --verbose
"""

import pandas as pd
from django.core.management.base import BaseCommand, CommandError

from common.exceptions import WorkflowServiceError
from study.models import Lab
from study.services import StudyService


def _text(row, column: str) -> str:
    value = row.get(column)
    if value is None or pd.isna(value):
        return ''
    return str(value).strip()


def _count(row, column: str) -> int:
    text = _text(row, column)
    return int(float(text)) if text else 0


class Command(BaseCommand):
    help = 'Ingest studies from a CSV manifest (idempotent per study_instance_uid)'

    def add_arguments(self, parser):
        parser.add_argument('path', type=str, help='Path to the CSV manifest')
        parser.add_argument(
            '--chunk-size',
            type=int,
            default=1000,
            help='Rows read per chunk (default: 1000)',
        )
        parser.add_argument(
            '--actor',
            type=str,
            default='ingest_studies',
            help='Identity recorded on the first ledger entry',
        )
        parser.add_argument('--verbose', action='store_true', help='Print every rejected row')

    def handle(self, *args, **options):
        path = options['path']
        self.stdout.write(self.style.SUCCESS('=== Ingesting Studies ==='))
        self.stdout.write(f'Manifest: {path}')

        labs = dict(Lab.objects.values_list('identifier', 'id'))
        stats = {'rows': 0, 'created': 0, 'existing': 0, 'rejected': 0}

        try:
            reader = pd.read_csv(path, dtype=str, chunksize=options['chunk_size'])
        except FileNotFoundError as e:
            raise CommandError(f'Manifest not found: {path}') from e

        for chunk in reader:
            if 'study_instance_uid' not in chunk.columns:
                raise CommandError('Manifest has no study_instance_uid column')

            for row in chunk.to_dict(orient='records'):
                stats['rows'] += 1
                uid = _text(row, 'study_instance_uid')
                lab_code = _text(row, 'lab_code')
                if not uid or (lab_code and lab_code not in labs):
                    stats['rejected'] += 1
                    if options['verbose']:
                        self.stdout.write(self.style.WARNING(f'Row {stats["rows"]}: missing uid or unknown lab {lab_code!r}'))
                    continue

                try:
                    _, created = StudyService.ingest_study(
                        study_instance_uid=uid,
                        accession_number=_text(row, 'accession_number'),
                        patient_id=_text(row, 'patient_id') or None,
                        patient_name=_text(row, 'patient_name'),
                        gender=_text(row, 'gender'),
                        lab_id=labs.get(lab_code),
                        modalities=[m for m in _text(row, 'modalities').split('|') if m],
                        series_count=_count(row, 'series_count'),
                        instance_count=_count(row, 'instance_count'),
                        study_date=_text(row, 'study_date'),
                        exam_description=_text(row, 'exam_description'),
                        referring_physician=_text(row, 'referring_physician'),
                        actor=options['actor'],
                    )
                except (WorkflowServiceError, ValueError) as e:
                    stats['rejected'] += 1
                    if options['verbose']:
                        self.stdout.write(self.style.WARNING(f'Row {stats["rows"]}: {e}'))
                    continue

                stats['created' if created else 'existing'] += 1

        self.stdout.write('')
        self.stdout.write(f'Rows read:  {stats["rows"]:,}')
        self.stdout.write(self.style.SUCCESS(f'Created:    {stats["created"]:,}'))
        self.stdout.write(f'Existing:   {stats["existing"]:,}')
        if stats['rejected']:
            self.stdout.write(self.style.WARNING(f'Rejected:   {stats["rejected"]:,}'))
