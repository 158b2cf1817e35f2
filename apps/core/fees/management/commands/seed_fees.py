import random
from datetime import timedelta
from decimal import Decimal

from django.core.management.base import BaseCommand
from django.db import transaction
from django.utils import timezone
from faker import Faker

from apps.core.fees.models import Fee, Installment
from apps.core.numbering.formatting import DOMAIN_FEE, DOMAIN_INSTALLMENT, FORMAT_CUSTOM, FORMAT_YEAR
from apps.core.numbering.services import configure_numbering
from apps.core.schools.models import School
from apps.core.schools.services import ensure_numbering_settings


class Command(BaseCommand):
    help = 'Seeds a school with students, fees and installment schedules.'

    def add_arguments(self, parser):
        parser.add_argument('--students', type=int, default=10)
        parser.add_argument('--installments', type=int, default=3)
        parser.add_argument('--seed', type=int, default=None)

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding fees...')

        fake = Faker()
        if options['seed'] is not None:
            Faker.seed(options['seed'])
            random.seed(options['seed'])

        school, created = School.objects.get_or_create(
            name=fake.company() + ' School',
            defaults={
                'address': fake.address(),
                'phone': fake.phone_number()[:20],
                'email': fake.email(),
            },
        )
        if created:
            self.stdout.write(self.style.SUCCESS(f'Successfully created school: {school.name}'))

        ensure_numbering_settings(school=school)
        configure_numbering(school=school, domain=DOMAIN_FEE, fmt=FORMAT_YEAR)
        configure_numbering(school=school, domain=DOMAIN_INSTALLMENT, fmt=FORMAT_CUSTOM, prefix='INS-')

        today = timezone.localdate()
        installment_count = max(options['installments'], 0)
        fees_created = 0

        for index in range(options['students']):
            student_ref = f'STU-{index + 1:04d}'
            student_name = fake.name()

            for fee_type in (Fee.TYPE_TUITION, Fee.TYPE_TRANSPORTATION, Fee.TYPE_ACTIVITIES):
                amount = Decimal(random.randrange(300, 3000, 50))
                discount = Decimal(random.choice([0, 0, 0, 50, 100]))
                fee = Fee.objects.create(
                    school=school,
                    student_ref=student_ref,
                    student_name=student_name,
                    fee_type=fee_type,
                    description=f'{fee_type.title()} {today.year}',
                    amount=amount,
                    discount=discount,
                )
                fees_created += 1

                if fee_type == Fee.TYPE_ACTIVITIES or not installment_count:
                    continue

                net_amount = fee.net_amount
                share = (net_amount / installment_count).quantize(Decimal('0.01'))
                for number in range(installment_count):
                    # Last installment absorbs the rounding difference.
                    installment_amount = share if number < installment_count - 1 else net_amount - share * number
                    Installment.objects.create(
                        school=school,
                        fee=fee,
                        amount=installment_amount,
                        due_date=today + timedelta(days=30 * (number - 1)),
                    )

        self.stdout.write(self.style.SUCCESS(f'Successfully created {fees_created} fees for {school.name}'))
        self.stdout.write(self.style.SUCCESS('Fee seeding complete!'))
