from django.core.management.base import BaseCommand, CommandError

from apps.core.fees.services import find_receipt_number_conflicts
from apps.core.schools.models import School


class Command(BaseCommand):
    help = 'Reports receipt numbers shared across students and numbers issued by the fallback generator.'

    def add_arguments(self, parser):
        parser.add_argument('--school', dest='school_code', help='Only check the school with this code.')
        parser.add_argument(
            '--fail-on-conflict',
            action='store_true',
            help='Exit with an error when duplicates are found.',
        )

    def handle(self, *args, **options):
        schools = School.objects.filter(is_active=True)
        if options['school_code']:
            schools = School.objects.filter(code=options['school_code'])
            if not schools.exists():
                raise CommandError(f"School '{options['school_code']}' does not exist.")

        duplicate_total = 0
        for school in schools:
            report = find_receipt_number_conflicts(school=school)
            duplicates = report['duplicates']
            provisional = report['provisional']
            duplicate_total += len(duplicates)

            if not duplicates and not provisional:
                self.stdout.write(self.style.SUCCESS(f'{school.code}: no receipt number conflicts'))
                continue

            for number, student_refs in duplicates.items():
                self.stdout.write(
                    self.style.ERROR(f"{school.code}: {number} is shared by {', '.join(student_refs)}")
                )
            for kind, pk, number in provisional:
                self.stdout.write(self.style.WARNING(f'{school.code}: provisional {kind} #{pk} receipt {number}'))

        if duplicate_total and options['fail_on_conflict']:
            raise CommandError(f'{duplicate_total} duplicated receipt number(s) found.')
