class HunterError(Exception):
    """Base for errors surfaced to the initiating user or admin."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(HunterError):
    status_code = 400


class TierTableError(ValidationError):
    pass


class MissingResultsError(ValidationError):
    def __init__(self, count: int):
        super().__init__(
            f"{count} finished fixture(s) are missing results; set a result or mark them void/postponed"
        )
        self.count = count


class NotFoundError(HunterError):
    status_code = 404


class InvalidTransitionError(HunterError):
    status_code = 409
