from django.core.exceptions import ObjectDoesNotExist


class AllocationTargetNotFound(ObjectDoesNotExist):
    def __init__(self, model_name, object_id, school_id=None):
        self.model_name = model_name
        self.object_id = object_id
        self.school_id = school_id
        super().__init__(f"{model_name} {object_id} was not found for school {school_id}.")


class AllocationRetryable(Exception):
    """The fee could not be locked or saved in time; nothing was committed."""

    retryable = True

    def __init__(self, fee_id, cause=None):
        self.fee_id = fee_id
        self.cause = cause
        super().__init__(f"Payment on fee {fee_id} could not be committed, retry: {cause}")


class OverAllocation(Exception):
    """Payment exceeded everything outstanding.

    Normally returned as a warning on the allocation result; raised only
    when the caller asks for overpayments to be rejected.
    """

    retryable = False

    def __init__(self, fee_id, unapplied_amount):
        self.fee_id = fee_id
        self.unapplied_amount = unapplied_amount
        super().__init__(f"Payment on fee {fee_id} left {unapplied_amount} unapplied.")
