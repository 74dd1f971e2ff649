# medreminder/registry.py
import asyncio
import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Optional, List, Tuple, Callable, NamedTuple

from .doses import compute_remaining_doses, days_until_end
from .errors import ValidationError, NotFoundError, PersistenceError, CorruptBlobError
from .models import Medication, STORAGE_KEY, serialize_medications, deserialize_medications
from .reminders import ReminderSynchronizer
from .store import KeyValueStore

logger = logging.getLogger("medreminder")

Observer = Callable[["MedicationRegistry"], None]

class UpcomingDose(NamedTuple):
    medication: Medication
    dose_time: datetime
    time_until: timedelta

class RegistryStatistics(NamedTuple):
    total_medications: int
    active_medications: int
    upcoming_doses: int
    ending_this_week: int

def _local_now() -> datetime:
    return datetime.now().astimezone()

class MedicationRegistry:
    """
    Owns the medication collection. Mutations are serialized; each one
    updates memory, persists the whole collection, syncs reminders, then
    notifies observers. Reads see an immutable snapshot.

    A persistence or scheduler failure leaves the in-memory change applied
    and is raised to the caller; nothing is rolled back.
    """

    def __init__(self, store: KeyValueStore, synchronizer: ReminderSynchronizer,
                 clock: Callable[[], datetime] = _local_now, default_tz: Optional[tzinfo] = None):
        self.store = store
        self.synchronizer = synchronizer
        self.clock = clock
        self.default_tz = default_tz
        self._meds: Tuple[Medication, ...] = ()
        self._lock = asyncio.Lock()
        self._observers: List[Observer] = []

    # -------------------------
    # Reads
    # -------------------------
    @property
    def medications(self) -> Tuple[Medication, ...]:
        return self._meds

    @property
    def active_medications(self) -> Tuple[Medication, ...]:
        return tuple(m for m in self._meds if m.is_active)

    def get(self, med_id: str) -> Medication:
        for m in self._meds:
            if m.id == med_id:
                return m
        raise NotFoundError(med_id)

    def _index_of(self, meds: Tuple[Medication, ...], med_id: str) -> int:
        for i, m in enumerate(meds):
            if m.id == med_id:
                return i
        raise NotFoundError(med_id)

    def upcoming_doses(self, limit: int = 10, now: Optional[datetime] = None) -> List[UpcomingDose]:
        now = now or self.clock()
        now_utc = now.astimezone(timezone.utc)
        upcoming = []
        for med in self.active_medications:
            for dt in compute_remaining_doses(med, now):
                upcoming.append(UpcomingDose(med, dt, dt.astimezone(timezone.utc) - now_utc))
        # by instant, not wall time; stable so ties keep insertion order
        upcoming.sort(key=lambda u: u.dose_time.astimezone(timezone.utc))
        return upcoming[:max(0, int(limit))]

    def statistics(self, now: Optional[datetime] = None) -> RegistryStatistics:
        now = now or self.clock()
        active = self.active_medications
        upcoming = 0
        ending = 0
        for med in active:
            upcoming += len(compute_remaining_doses(med, now))
            if 0 < days_until_end(med, now) <= 7:
                ending += 1
        return RegistryStatistics(
            total_medications=len(self._meds),
            active_medications=len(active),
            upcoming_doses=upcoming,
            ending_this_week=ending,
        )

    # -------------------------
    # Observers
    # -------------------------
    def subscribe(self, observer: Observer) -> Callable[[], None]:
        self._observers.append(observer)

        def unsubscribe():
            if observer in self._observers:
                self._observers.remove(observer)
        return unsubscribe

    def _notify(self):
        for observer in list(self._observers):
            try:
                observer(self)
            except Exception:
                logger.exception("registry observer failed")

    # -------------------------
    # Persistence
    # -------------------------
    async def load(self) -> int:
        async with self._lock:
            meds: List[Medication] = []
            try:
                blob = await self.store.get(STORAGE_KEY)
                if blob is not None:
                    meds = deserialize_medications(blob, self.default_tz)
            except CorruptBlobError as exc:
                logger.warning(f"medication blob corrupt, starting empty: {exc}")
            self._meds = tuple(meds)
            logger.info(f"loaded {len(meds)} medicines")
        self._notify()
        return len(meds)

    async def _persist(self):
        blob = serialize_medications(self._meds)
        try:
            await self.store.set(STORAGE_KEY, blob)
        except PersistenceError:
            logger.exception("saving medicines failed")
            raise
        except Exception as exc:
            logger.exception("saving medicines failed")
            raise PersistenceError(f"saving medicines failed: {exc}") from exc

    # -------------------------
    # Mutations
    # -------------------------
    async def add(self, med: Medication) -> Medication:
        if not isinstance(med, Medication):
            raise ValidationError("expected a Medication")
        async with self._lock:
            if any(m.id == med.id for m in self._meds):
                raise ValidationError(f"duplicate medication id: {med.id}")
            self._meds = self._meds + (med,)
            try:
                await self._persist()
                await self.synchronizer.sync_reminders_for(med)
            finally:
                self._notify()
        logger.info(f"added medicine id={med.id} name={med.name}")
        return med

    async def create(self, name: str, dosage: str, start_time: datetime, interval_hours: int,
                     total_days: int, notes: Optional[str] = None) -> Medication:
        med = Medication.new(name, dosage, start_time, interval_hours, total_days, notes=notes)
        return await self.add(med)

    async def update(self, med: Medication) -> Medication:
        if not isinstance(med, Medication):
            raise ValidationError("expected a Medication")
        async with self._lock:
            i = self._index_of(self._meds, med.id)
            old = self._meds[i]
            self._meds = self._meds[:i] + (med,) + self._meds[i + 1:]
            try:
                await self._persist()
                if old.name != med.name:
                    # the legacy tag is name-keyed; clear it under the old name too
                    await self.synchronizer.cancel_reminders_for(old)
                await self.synchronizer.sync_reminders_for(med)
            finally:
                self._notify()
        logger.info(f"updated medicine id={med.id}")
        return med

    async def remove(self, med_id: str) -> Medication:
        async with self._lock:
            i = self._index_of(self._meds, med_id)
            med = self._meds[i]
            try:
                await self.synchronizer.cancel_reminders_for(med)
                self._meds = self._meds[:i] + self._meds[i + 1:]
                await self._persist()
            finally:
                self._notify()
        logger.info(f"deleted medicine id={med_id}")
        return med

    async def toggle(self, med_id: str) -> Medication:
        async with self._lock:
            i = self._index_of(self._meds, med_id)
            med = self._meds[i].replace(is_active=not self._meds[i].is_active)
            self._meds = self._meds[:i] + (med,) + self._meds[i + 1:]
            try:
                await self._persist()
                await self.synchronizer.sync_reminders_for(med)
            finally:
                self._notify()
        logger.info(f"toggled medicine id={med_id} active={med.is_active}")
        return med

    async def reschedule_all(self) -> int:
        async with self._lock:
            return await self.synchronizer.reschedule_all(self.active_medications)

    async def mark_dose_taken(self, med_id: str, dose_time: datetime):
        # history is not recorded yet; this only validates and logs
        med = self.get(med_id)
        logger.info(f"dose taken id={med.id} name={med.name} scheduled={dose_time.isoformat()}")
