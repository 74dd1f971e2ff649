# medreminder/reminders.py
import hashlib
import logging
from typing import Iterable

from .doses import compute_occurrences
from .errors import SchedulerError
from .models import Medication
from .scheduler import PendingReminder, ReminderScheduler

logger = logging.getLogger("medreminder")

DEFAULT_TITLE = "Medicine Reminder"

def reminder_id(stable_id: str, index: int) -> int:
    """
    Deterministic reminder id for occurrence `index` of a medication.

    SHA-256 of the UTF-8 text "<stable_id>|<index>", first 4 bytes read
    big-endian and masked to 31 bits. The result is stable across processes
    and always fits a positive Java int (AlarmManager request code).
    """
    key = f"{stable_id}|{int(index)}"
    h = hashlib.sha256(key.encode("utf-8")).digest()
    return int.from_bytes(h[:4], "big") & 0x7FFFFFFF

def payload_tag(med: Medication) -> str:
    return f"medication:{med.id}"

def legacy_payload_tag(med: Medication) -> str:
    # reminders written by the name-keyed app version
    return f"medicine:{med.name}"

def reminder_body(med: Medication) -> str:
    return f"{med.name} • {med.dosage}".strip(" •")

class ReminderSynchronizer:
    def __init__(self, scheduler: ReminderScheduler, title: str = DEFAULT_TITLE):
        self.scheduler = scheduler
        self.title = title

    async def cancel_reminders_for(self, med: Medication) -> int:
        tags = {payload_tag(med), legacy_payload_tag(med)}
        try:
            pending = await self.scheduler.list_pending()
            stale = [p.id for p in pending if p.tag in tags]
            if stale:
                await self.scheduler.cancel_many(stale)
        except SchedulerError:
            logger.exception(f"cancel reminders failed id={med.id}")
            raise
        except Exception as exc:
            logger.exception(f"cancel reminders failed id={med.id}")
            raise SchedulerError(f"cancel reminders failed for {med.id}: {exc}") from exc
        return len(stale)

    async def sync_reminders_for(self, med: Medication) -> int:
        """
        Cancel the medication's reminders, then, if it is active, submit one
        reminder per occurrence of the whole window. Past occurrences are
        submitted too; the scheduler decides what to do with them.
        """
        await self.cancel_reminders_for(med)
        if not med.is_active:
            return 0

        tag = payload_tag(med)
        body = reminder_body(med)
        occurrences = compute_occurrences(med)
        batch = [PendingReminder(id=reminder_id(med.id, i), tag=tag, at=at, title=self.title, body=body)
                 for i, at in enumerate(occurrences)]
        try:
            await self.scheduler.schedule_many(batch)
        except SchedulerError:
            logger.exception(f"schedule reminders failed id={med.id}")
            raise
        except Exception as exc:
            logger.exception(f"schedule reminders failed id={med.id}")
            raise SchedulerError(f"schedule reminders failed for {med.id}: {exc}") from exc
        logger.info(f"scheduled {len(occurrences)} reminders id={med.id} name={med.name}")
        return len(occurrences)

    async def cancel_all_reminders(self):
        try:
            await self.scheduler.cancel_all()
        except SchedulerError:
            raise
        except Exception as exc:
            raise SchedulerError(f"cancel all reminders failed: {exc}") from exc
        logger.info("cancelled all reminders")

    async def reschedule_all(self, active: Iterable[Medication]) -> int:
        await self.cancel_all_reminders()
        total = 0
        for med in active:
            total += await self.sync_reminders_for(med)
        logger.info(f"resynced {total} reminders")
        return total
