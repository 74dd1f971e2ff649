# medreminder/scheduler.py
#
# Reminder scheduler collaborators. Both keep a ledger of pending reminders
# (AlarmManager cannot list what it holds) in the injected store so that
# list_pending() survives restarts.

import json
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, List, Dict, Callable, Iterable, Protocol

from .errors import SchedulerError, PersistenceError, CorruptBlobError
from .store import KeyValueStore

try:
    from jnius import autoclass, cast
except Exception:
    autoclass = None
    cast = None

logger = logging.getLogger("medreminder")

LEDGER_KEY = "reminders"

@dataclass(frozen=True)
class PendingReminder:
    id: int
    tag: str
    at: datetime
    title: str = ""
    body: str = ""

    def to_record(self) -> Dict:
        return {"id": self.id, "tag": self.tag, "at": self.at.isoformat(),
                "title": self.title, "body": self.body}

    @classmethod
    def from_record(cls, rec: Dict) -> "PendingReminder":
        return cls(
            id=int(rec["id"]),
            tag=rec["tag"],
            at=datetime.fromisoformat(rec["at"]),
            title=rec.get("title", ""),
            body=rec.get("body", ""),
        )

class ReminderScheduler(Protocol):
    async def schedule(self, reminder_id: int, title: str, body: str, at: datetime, tag: str) -> None: ...
    async def schedule_many(self, reminders: Iterable[PendingReminder]) -> None: ...
    async def cancel(self, reminder_id: int) -> None: ...
    async def cancel_many(self, reminder_ids: Iterable[int]) -> int: ...
    async def cancel_all(self) -> None: ...
    async def list_pending(self) -> List[PendingReminder]: ...

# -------------------------
# Ledger base
# -------------------------
class _LedgerScheduler:
    def __init__(self, store: Optional[KeyValueStore] = None):
        self.store = store
        self._pending: Dict[int, PendingReminder] = {}
        self._loaded = store is None
        self._lock = asyncio.Lock()

    async def _ensure_loaded(self):
        if self._loaded:
            return
        try:
            blob = await self.store.get(LEDGER_KEY)
        except CorruptBlobError as exc:
            logger.warning(f"reminder ledger corrupt, starting empty: {exc}")
            blob = None
        except PersistenceError as exc:
            raise SchedulerError(f"reminder ledger read failed: {exc}") from exc
        if blob:
            try:
                recs = json.loads(blob.decode("utf-8"))
                self._pending = {r.id: r for r in map(PendingReminder.from_record, recs)}
            except (ValueError, KeyError, TypeError) as exc:
                logger.warning(f"reminder ledger unreadable, starting empty: {exc}")
                self._pending = {}
        self._loaded = True

    async def _save(self):
        if self.store is None:
            return
        blob = json.dumps([r.to_record() for r in self._pending.values()]).encode("utf-8")
        try:
            await self.store.set(LEDGER_KEY, blob)
        except PersistenceError as exc:
            raise SchedulerError(f"reminder ledger write failed: {exc}") from exc

    def _arm(self, rem: PendingReminder):
        pass

    def _disarm(self, rem: PendingReminder):
        pass

    async def schedule(self, reminder_id: int, title: str, body: str, at: datetime, tag: str) -> None:
        rem = PendingReminder(id=int(reminder_id), tag=tag, at=at, title=title, body=body)
        await self.schedule_many([rem])

    async def schedule_many(self, reminders: Iterable[PendingReminder]) -> None:
        """Arm every reminder, then write the ledger once."""
        async with self._lock:
            await self._ensure_loaded()
            armed = 0
            try:
                for rem in reminders:
                    self._arm(rem)
                    self._pending[rem.id] = rem
                    armed += 1
            finally:
                # whatever was armed before a failure is still recorded
                if armed:
                    await self._save()

    async def cancel(self, reminder_id: int) -> None:
        await self.cancel_many([reminder_id])

    async def cancel_many(self, reminder_ids: Iterable[int]) -> int:
        async with self._lock:
            await self._ensure_loaded()
            removed = 0
            try:
                for rid in reminder_ids:
                    rem = self._pending.get(int(rid))
                    if rem is None:
                        continue
                    self._disarm(rem)
                    del self._pending[rem.id]
                    removed += 1
            finally:
                if removed:
                    await self._save()
            return removed

    async def cancel_all(self) -> None:
        async with self._lock:
            await self._ensure_loaded()
            for rem in list(self._pending.values()):
                self._disarm(rem)
            self._pending.clear()
            await self._save()

    async def list_pending(self) -> List[PendingReminder]:
        async with self._lock:
            await self._ensure_loaded()
            return sorted(self._pending.values(), key=lambda r: (r.at.astimezone(timezone.utc), r.id))

# -------------------------
# In-app scheduler (desktop / fallback)
# -------------------------
def _log_reminder(rem: PendingReminder):
    logger.info(f"[in-app reminder] {rem.title} - {rem.body} @ {rem.at}")

class LocalScheduler(_LedgerScheduler):
    """
    Holds reminders in-process and delivers them from a polling task.

    Reminders already more than `grace_seconds` late when the poll sees them
    are dropped without delivery, so resubmitting a whole treatment window
    does not replay old doses.
    """

    def __init__(self, store: Optional[KeyValueStore] = None,
                 on_fire: Callable[[PendingReminder], None] = _log_reminder,
                 grace_seconds: float = 60.0, poll_seconds: float = 30.0):
        super().__init__(store)
        self.on_fire = on_fire
        self.grace_seconds = float(grace_seconds)
        self.poll_seconds = float(poll_seconds)
        self._task: Optional[asyncio.Task] = None

    async def fire_due(self, now: Optional[datetime] = None) -> List[PendingReminder]:
        now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        fired: List[PendingReminder] = []
        async with self._lock:
            await self._ensure_loaded()
            due = [r for r in self._pending.values() if r.at.astimezone(timezone.utc) <= now]
            if not due:
                return fired
            for rem in sorted(due, key=lambda r: (r.at.astimezone(timezone.utc), r.id)):
                del self._pending[rem.id]
                late = (now - rem.at).total_seconds()
                if late > self.grace_seconds:
                    logger.debug(f"dropped past-due reminder id={rem.id} late={late:.0f}s")
                    continue
                fired.append(rem)
            await self._save()
        for rem in fired:
            self.on_fire(rem)
        return fired

    def start(self):
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("local scheduler started")

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("local scheduler stopped")

    async def _loop(self):
        while True:
            try:
                await self.fire_due()
            except Exception:
                # keep polling; one bad delivery must not stop the rest
                logger.exception("local scheduler poll failed")
            await asyncio.sleep(self.poll_seconds)

# -------------------------
# Android AlarmManager
# -------------------------
def _android_ready() -> bool:
    return autoclass is not None

class AndroidAlarmScheduler(_LedgerScheduler):
    """
    Schedules AlarmManager broadcasts to the app's alarm receiver. The
    reminder id is the PendingIntent request code, so cancel() can rebuild
    the same PendingIntent.
    """

    def __init__(self, store: KeyValueStore, receiver_class: str):
        super().__init__(store)
        self.receiver_class = receiver_class
        if not _android_ready():
            raise SchedulerError("android runtime unavailable (pyjnius not importable)")

    def _context(self):
        PythonActivity = autoclass("org.kivy.android.PythonActivity")
        return PythonActivity.mActivity.getApplicationContext()

    def _sdk(self) -> int:
        BuildVERSION = autoclass("android.os.Build$VERSION")
        return int(BuildVERSION.SDK_INT)

    def _check_permission(self, ctx):
        if self._sdk() < 33:
            return
        ContextCompat = autoclass("androidx.core.content.ContextCompat")
        PackageManager = autoclass("android.content.pm.PackageManager")
        Manifest = autoclass("android.Manifest")
        perm = Manifest.permission.POST_NOTIFICATIONS
        if ContextCompat.checkSelfPermission(ctx, perm) != PackageManager.PERMISSION_GRANTED:
            raise SchedulerError("POST_NOTIFICATIONS permission not granted")

    def _pending_intent(self, ctx, rem: PendingReminder, extra_flags: int = 0):
        Intent = autoclass("android.content.Intent")
        PendingIntent = autoclass("android.app.PendingIntent")
        intent = Intent()
        intent.setClassName(ctx, self.receiver_class)
        intent.putExtra("title", rem.title)
        intent.putExtra("body", rem.body)
        intent.putExtra("payload", rem.tag)
        flags = PendingIntent.FLAG_UPDATE_CURRENT | extra_flags
        if self._sdk() >= 23:
            flags |= PendingIntent.FLAG_IMMUTABLE
        return PendingIntent.getBroadcast(ctx, int(rem.id), intent, int(flags))

    def _alarm_manager(self, ctx):
        AlarmManager = autoclass("android.app.AlarmManager")
        Context = autoclass("android.content.Context")
        return cast(AlarmManager, ctx.getSystemService(Context.ALARM_SERVICE))

    def _arm(self, rem: PendingReminder):
        try:
            ctx = self._context()
            self._check_permission(ctx)
            AlarmManager = autoclass("android.app.AlarmManager")
            am = self._alarm_manager(ctx)
            pi = self._pending_intent(ctx, rem)
            trigger_ms = int(rem.at.timestamp() * 1000)
            sdk = self._sdk()
            if sdk >= 31 and not am.canScheduleExactAlarms():
                # not guaranteed exact on some devices
                am.setAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                logger.info(f"alarm idle(fallback) rc={rem.id} @ {rem.at}")
            elif sdk >= 23:
                am.setExactAndAllowWhileIdle(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                logger.info(f"alarm exact+idle rc={rem.id} @ {rem.at}")
            else:
                am.setExact(AlarmManager.RTC_WAKEUP, trigger_ms, pi)
                logger.info(f"alarm exact rc={rem.id} @ {rem.at}")
        except SchedulerError:
            raise
        except Exception as exc:
            raise SchedulerError(f"alarm scheduling failed rc={rem.id}: {exc}") from exc

    def _disarm(self, rem: PendingReminder):
        try:
            ctx = self._context()
            PendingIntent = autoclass("android.app.PendingIntent")
            pi = self._pending_intent(ctx, rem, PendingIntent.FLAG_NO_CREATE)
            if pi is not None:
                self._alarm_manager(ctx).cancel(pi)
                pi.cancel()
        except Exception as exc:
            raise SchedulerError(f"alarm cancel failed rc={rem.id}: {exc}") from exc
