# medreminder: dose scheduling and reminder sync for interval medications

from .errors import (
    MedReminderError, ValidationError, NotFoundError,
    PersistenceError, CorruptBlobError, SchedulerError,
)
from .models import Medication, serialize_medications, deserialize_medications
from .doses import (
    compute_occurrences, compute_next_dose, compute_remaining_doses,
    is_currently_active, window_end, days_until_end,
)
from .store import MemoryStore, EncryptedFileStore
from .scheduler import PendingReminder, LocalScheduler, AndroidAlarmScheduler
from .reminders import ReminderSynchronizer, reminder_id, payload_tag
from .registry import MedicationRegistry, UpcomingDose, RegistryStatistics

__version__ = "0.3.0"
