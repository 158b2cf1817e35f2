from django.db import models


class SchoolQuerySet(models.QuerySet):
    def for_school(self, school):
        return self.filter(school_id=getattr(school, 'pk', school))

    def with_receipt_number(self):
        return self.exclude(receipt_number='')

    def provisional_receipts(self):
        return self.with_receipt_number().filter(receipt_number_provisional=True)


class SchoolManager(models.Manager.from_queryset(SchoolQuerySet)):
    pass
