# medreminder/errors.py

class MedReminderError(Exception):
    pass

class ValidationError(MedReminderError, ValueError):
    """Bad medication fields. Raised before any state is touched."""

class NotFoundError(MedReminderError, KeyError):
    def __init__(self, med_id: str):
        super().__init__(med_id)
        self.med_id = med_id

    def __str__(self):
        return f"medication not found: {self.med_id}"

class PersistenceError(MedReminderError):
    """Store unreachable or write failed."""

class CorruptBlobError(PersistenceError):
    """Stored blob exists but cannot be decrypted or parsed."""

class SchedulerError(MedReminderError):
    """Permission denied or platform scheduling failure."""
