class NumberingError(Exception):
    retryable = False


class SettingsUnavailable(NumberingError):
    """No numbering settings exist for the school.

    Callers apply defaults (``ensure_numbering_settings``) and retry.
    """

    def __init__(self, school_id):
        self.school_id = school_id
        super().__init__(f"No numbering settings found for school {school_id}.")


class ReservationFailed(NumberingError):
    retryable = True

    def __init__(self, school_id, domain, attempts, cause=None):
        self.school_id = school_id
        self.domain = domain
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            f"Could not reserve {domain} receipt numbers for school {school_id} "
            f"after {attempts} attempt(s): {cause}"
        )
