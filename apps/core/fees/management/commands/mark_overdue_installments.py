from datetime import date

from django.core.management.base import BaseCommand, CommandError

from apps.core.fees.services import mark_overdue_installments
from apps.core.schools.models import School


class Command(BaseCommand):
    help = 'Flags unpaid installments past their due date as overdue.'

    def add_arguments(self, parser):
        parser.add_argument('--as-of', dest='as_of', help='Reference date (YYYY-MM-DD). Defaults to today.')

    def handle(self, *args, **options):
        as_of_date = None
        if options['as_of']:
            try:
                as_of_date = date.fromisoformat(options['as_of'])
            except ValueError as exc:
                raise CommandError(f"Invalid --as-of date '{options['as_of']}'.") from exc

        for school in School.objects.filter(is_active=True):
            result = mark_overdue_installments(school=school, as_of_date=as_of_date)
            self.stdout.write(
                self.style.SUCCESS(
                    f"{school.code}: {result['marked_overdue']} overdue, {result['reset_upcoming']} reset"
                )
            )
