import io
import os
import json
import math
import asyncio
import logging
import tempfile
import unittest
from unittest import mock
from contextlib import redirect_stdout, redirect_stderr
from datetime import datetime, timedelta, timezone
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import main as m
from medreminder.config import Settings
from medreminder.doses import (
    compute_occurrences, compute_next_dose, compute_remaining_doses,
    is_currently_active, window_end, days_until_end,
)
from medreminder.errors import (
    ValidationError, NotFoundError, PersistenceError, CorruptBlobError, SchedulerError,
)
from medreminder.log import FileAndRingHandler, configure_logging
from medreminder.models import Medication, STORAGE_KEY, serialize_medications, deserialize_medications
from medreminder.registry import MedicationRegistry
from medreminder.reminders import ReminderSynchronizer, reminder_id, payload_tag
from medreminder.scheduler import LEDGER_KEY, LocalScheduler, PendingReminder
from medreminder.store import (
    MemoryStore, EncryptedFileStore, aes_encrypt, aes_decrypt, get_or_create_key,
)

UTC = timezone.utc
START = datetime(2024, 1, 1, 8, 0, tzinfo=UTC)
NOW = datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def _run(coro):
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout=30)
    return asyncio.run(coro)


def med(**kw):
    fields = dict(id="med-1", name="Amoxicillin", dosage="500mg", start_time=START,
                  interval_hours=8, total_days=1)
    fields.update(kw)
    return Medication(**fields)


def registry(store=None, scheduler=None):
    store = store if store is not None else MemoryStore()
    scheduler = scheduler if scheduler is not None else LocalScheduler()
    reg = MedicationRegistry(store, ReminderSynchronizer(scheduler), clock=lambda: NOW)
    return reg, store, scheduler


class CountingStore(MemoryStore):
    def __init__(self, *a, **kw):
        super().__init__(*a, **kw)
        self.writes = 0

    async def set(self, key, blob):
        self.writes += 1
        await super().set(key, blob)


class BrokenStore(MemoryStore):
    async def set(self, key, blob):
        raise PersistenceError("disk full")


class BrokenScheduler(LocalScheduler):
    async def schedule_many(self, reminders):
        raise RuntimeError("permission revoked")

    async def cancel_all(self):
        raise RuntimeError("alarm service gone")


def new_york():
    try:
        return ZoneInfo("America/New_York")
    except ZoneInfoNotFoundError:
        raise unittest.SkipTest("tz database unavailable")


class TestCrypto(unittest.TestCase):
    def test_aesgcm_roundtrip(self):
        key = AESGCM.generate_key(bit_length=256)
        pt = b"[]" * 4096
        self.assertEqual(aes_decrypt(aes_encrypt(pt, key), key), pt)

    def test_key_file_is_reused(self):
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / ".enc_key"
            k1 = get_or_create_key(path)
            k2 = get_or_create_key(path)
            self.assertEqual(len(k1), 32)
            self.assertEqual(k1, k2)


class TestEncryptedFileStore(unittest.TestCase):
    def test_set_get_and_missing(self):
        with tempfile.TemporaryDirectory() as td:
            store = EncryptedFileStore(Path(td), AESGCM.generate_key(bit_length=256))
            self.assertIsNone(_run(store.get("medicines")))
            _run(store.set("medicines", b'[{"x": 1}]'))
            self.assertEqual(_run(store.get("medicines")), b'[{"x": 1}]')
            self.assertNotIn(b'"x"', store.path_for("medicines").read_bytes())

    def test_wrong_key_is_corrupt(self):
        with tempfile.TemporaryDirectory() as td:
            _run(EncryptedFileStore(Path(td), AESGCM.generate_key(bit_length=256)).set("medicines", b"[]"))
            other = EncryptedFileStore(Path(td), AESGCM.generate_key(bit_length=256))
            with self.assertRaises(CorruptBlobError):
                _run(other.get("medicines"))

    def test_rejects_path_like_keys(self):
        store = EncryptedFileStore(Path("."), AESGCM.generate_key(bit_length=256))
        with self.assertRaises(PersistenceError):
            store.path_for("../escape")


class TestMedication(unittest.TestCase):
    def test_rejects_bad_schedule(self):
        for bad in (dict(interval_hours=0), dict(interval_hours=-8), dict(total_days=0),
                    dict(interval_hours=True), dict(total_days=1.5), dict(name="  "),
                    dict(start_time=datetime(2024, 1, 1, 8, 0))):
            with self.subTest(bad=bad):
                with self.assertRaises(ValidationError):
                    med(**bad)

    def test_replace_validates(self):
        with self.assertRaises(ValidationError):
            med().replace(interval_hours=0)
        self.assertFalse(med().replace(is_active=False).is_active)

    def test_new_assigns_unique_ids(self):
        a = Medication.new("A", "1 pill", START, 8, 1)
        b = Medication.new("A", "1 pill", START, 8, 1)
        self.assertNotEqual(a.id, b.id)

    def test_blob_roundtrip(self):
        meds = [med(), med(id="med-2", name="Ibuprofen", notes="after meals", is_active=False,
                           start_time=datetime(2024, 3, 1, 9, 30, tzinfo=timezone(timedelta(hours=-5))))]
        self.assertEqual(deserialize_medications(serialize_medications(meds)), meds)

    def test_record_shape(self):
        rec = med().to_record()
        self.assertEqual(set(rec), {"id", "name", "dosage", "startTime", "intervalHours",
                                    "totalDays", "isActive", "notes"})
        self.assertEqual(rec["startTime"], "2024-01-01T08:00:00+00:00")

    def test_missing_is_active_defaults_true(self):
        blob = json.dumps([{"id": "a", "name": "A", "dosage": "", "startTime": "2024-01-01T08:00:00+00:00",
                            "intervalHours": 8, "totalDays": 2}]).encode()
        self.assertTrue(deserialize_medications(blob)[0].is_active)

    def test_legacy_naive_start_uses_default_tz(self):
        blob = json.dumps([{"id": "a", "name": "A", "dosage": "", "startTime": "2024-01-01T08:00:00.000",
                            "intervalHours": 8, "totalDays": 2, "isActive": True, "notes": None}]).encode()
        tz = timezone(timedelta(hours=6))
        self.assertEqual(deserialize_medications(blob, tz)[0].start_time,
                         datetime(2024, 1, 1, 8, 0, tzinfo=tz))

    def test_garbage_blob_is_corrupt(self):
        for blob in (b"not json", b'{"id": 1}', b'[{"id": "a"}]', b"\xff\xfe"):
            with self.subTest(blob=blob):
                with self.assertRaises(CorruptBlobError):
                    deserialize_medications(blob)


class TestDoseCalculator(unittest.TestCase):
    def test_first_dose_is_current_at_start(self):
        self.assertEqual(compute_next_dose(med(), START), START)
        self.assertEqual(compute_remaining_doses(med(), START), [datetime(2024, 1, 1, 16, 0, tzinfo=UTC)])

    def test_nothing_left_at_window_end(self):
        end = datetime(2024, 1, 2, 0, 0, tzinfo=UTC)
        self.assertEqual(window_end(med()), end)
        self.assertIsNone(compute_next_dose(med(), end))
        self.assertEqual(compute_remaining_doses(med(), end), [])

    def test_before_start_returns_start(self):
        early = START - timedelta(days=3)
        self.assertEqual(compute_next_dose(med(), early), START)
        self.assertEqual(compute_remaining_doses(med(), early), compute_occurrences(med()))

    def test_between_and_on_occurrences(self):
        sixteen = datetime(2024, 1, 1, 16, 0, tzinfo=UTC)
        self.assertEqual(compute_next_dose(med(), datetime(2024, 1, 1, 9, 0, tzinfo=UTC)), sixteen)
        self.assertEqual(compute_next_dose(med(), sixteen), sixteen)
        self.assertEqual(compute_remaining_doses(med(), sixteen), [])
        # the next step lands exactly on the exclusive window end
        self.assertIsNone(compute_next_dose(med(), sixteen + timedelta(minutes=1)))

    def test_inactive_has_no_doses(self):
        off = med(is_active=False)
        self.assertIsNone(compute_next_dose(off, START))
        self.assertEqual(compute_remaining_doses(off, START), [])
        self.assertFalse(is_currently_active(off, START + timedelta(hours=1)))

    def test_window_ends_at_local_midnight(self):
        # 08:00 start, one day: 08:00 and 16:00; midnight is excluded
        self.assertEqual(compute_occurrences(med()),
                         [START, datetime(2024, 1, 1, 16, 0, tzinfo=UTC)])
        late = med(start_time=datetime(2024, 1, 1, 23, 0, tzinfo=UTC), interval_hours=1)
        self.assertEqual(compute_occurrences(late), [datetime(2024, 1, 1, 23, 0, tzinfo=UTC)])

    def test_remaining_count_bounded(self):
        for h in (1, 5, 7, 8, 24, 25, 48):
            for d in (1, 3, 10):
                m_ = med(interval_hours=h, total_days=d)
                bound = math.ceil(24 * d / h)
                with self.subTest(h=h, d=d):
                    # START is 08:00, so the window spans 24d - 8 hours
                    self.assertEqual(len(compute_occurrences(m_)), math.ceil((24 * d - 8) / h))
                    self.assertLessEqual(len(compute_occurrences(m_)), bound)
                    self.assertLessEqual(len(compute_remaining_doses(m_, START)), bound)
                    self.assertLessEqual(len(compute_remaining_doses(m_, START - timedelta(hours=1))), bound)

    def test_next_dose_is_monotonic(self):
        m_ = med(interval_hours=5, total_days=2)
        prev = compute_next_dose(m_, START - timedelta(hours=2))
        now = START - timedelta(hours=2)
        while now < window_end(m_) + timedelta(hours=2):
            now += timedelta(minutes=20)
            cur = compute_next_dose(m_, now)
            if prev is None:
                self.assertIsNone(cur)
            elif cur is not None:
                self.assertGreaterEqual(cur, prev)
            prev = cur

    def test_currently_active_excludes_start(self):
        self.assertFalse(is_currently_active(med(), START))
        self.assertTrue(is_currently_active(med(), START + timedelta(minutes=1)))
        self.assertFalse(is_currently_active(med(), window_end(med())))

    def test_days_until_end_truncates(self):
        m_ = med(total_days=10)     # window ends 2024-01-11 00:00
        self.assertEqual(days_until_end(m_, datetime(2024, 1, 4, 0, 0, tzinfo=UTC)), 7)
        self.assertEqual(days_until_end(m_, datetime(2024, 1, 3, 23, 0, tzinfo=UTC)), 7)
        self.assertEqual(days_until_end(m_, datetime(2024, 1, 10, 23, 0, tzinfo=UTC)), 0)
        self.assertEqual(days_until_end(m_, datetime(2024, 1, 11, 1, 0, tzinfo=UTC)), 0)
        self.assertEqual(days_until_end(m_, datetime(2024, 1, 12, 1, 0, tzinfo=UTC)), -1)

    def test_intervals_are_absolute_across_dst(self):
        ny = new_york()
        m_ = med(start_time=datetime(2024, 3, 9, 20, 0, tzinfo=ny), total_days=2)
        occ = compute_occurrences(m_)
        self.assertEqual(len(occ), 4)
        self.assertEqual(occ[1].hour, 5)
        self.assertEqual(occ[1].astimezone(UTC) - occ[0].astimezone(UTC), timedelta(hours=8))
        self.assertEqual(window_end(m_), datetime(2024, 3, 11, 0, 0, tzinfo=ny))

    def test_repeated_hour_compares_instants(self):
        ny = new_york()
        # 01:45 EDT is 05:45 UTC; the repeated 01:30 EST is 06:30 UTC
        m_ = med(start_time=datetime(2024, 11, 3, 1, 45, tzinfo=ny))
        later = datetime(2024, 11, 3, 1, 30, tzinfo=ny, fold=1)
        self.assertTrue(is_currently_active(m_, later))
        self.assertEqual(compute_next_dose(m_, later).astimezone(UTC),
                         datetime(2024, 11, 3, 13, 45, tzinfo=UTC))
        self.assertEqual(len(compute_remaining_doses(m_, later)), 2)


class TestReminderSync(unittest.TestCase):
    def test_reminder_id_is_stable_31_bit(self):
        self.assertEqual(reminder_id("med-1", 0), 1124674895)
        self.assertEqual(reminder_id("med-1", 1), 656688907)
        ids = {reminder_id("med-1", i) for i in range(500)}
        self.assertEqual(len(ids), 500)
        self.assertTrue(all(0 <= i <= 0x7FFFFFFF for i in ids))

    def test_schedules_whole_window(self):
        sched = LocalScheduler()
        sync = ReminderSynchronizer(sched)
        m_ = med(total_days=2)
        self.assertEqual(_run(sync.sync_reminders_for(m_)), 5)
        pending = _run(sched.list_pending())
        self.assertEqual([p.at for p in pending], compute_occurrences(m_))
        self.assertEqual({p.id for p in pending}, {reminder_id("med-1", i) for i in range(5)})
        self.assertTrue(all(p.tag == "medication:med-1" for p in pending))
        self.assertEqual(pending[0].body, "Amoxicillin • 500mg")

    def test_sync_is_idempotent(self):
        sched = LocalScheduler()
        sync = ReminderSynchronizer(sched)
        _run(sync.sync_reminders_for(med()))
        first = _run(sched.list_pending())
        _run(sync.sync_reminders_for(med()))
        self.assertEqual(_run(sched.list_pending()), first)

    def test_inactive_only_cancels(self):
        sched = LocalScheduler()
        sync = ReminderSynchronizer(sched)
        _run(sync.sync_reminders_for(med()))
        self.assertEqual(_run(sync.sync_reminders_for(med(is_active=False))), 0)
        self.assertEqual(_run(sched.list_pending()), [])

    def test_legacy_tag_cancelled_by_exact_name(self):
        sched = LocalScheduler()
        _run(sched.schedule(1, "t", "b", NOW, "medicine:Amoxicillin"))
        _run(sched.schedule(2, "t", "b", NOW, "medicine:Amoxicillin XR"))
        _run(ReminderSynchronizer(sched).cancel_reminders_for(med()))
        self.assertEqual([p.id for p in _run(sched.list_pending())], [2])

    def test_scheduler_failure_surfaces(self):
        sync = ReminderSynchronizer(BrokenScheduler())
        with self.assertRaises(SchedulerError) as ctx:
            _run(sync.sync_reminders_for(med()))
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)

    def test_cancel_all_failure_surfaces(self):
        sync = ReminderSynchronizer(BrokenScheduler())
        with self.assertRaises(SchedulerError) as ctx:
            _run(sync.cancel_all_reminders())
        self.assertIsInstance(ctx.exception.__cause__, RuntimeError)
        with self.assertRaises(SchedulerError):
            _run(sync.reschedule_all([med()]))

    def test_sync_writes_ledger_once_per_batch(self):
        store = CountingStore()
        sync = ReminderSynchronizer(LocalScheduler(store))
        self.assertEqual(_run(sync.sync_reminders_for(med(total_days=3))), 8)
        self.assertEqual(store.writes, 1)
        # one write for the cancelled batch, one for the new one
        _run(sync.sync_reminders_for(med(total_days=3)))
        self.assertEqual(store.writes, 3)

    def test_reschedule_all_clears_foreign_reminders(self):
        sched = LocalScheduler()
        _run(sched.schedule(7, "t", "b", NOW, "medication:gone"))
        sync = ReminderSynchronizer(sched)
        n = _run(sync.reschedule_all([med(), med(id="med-2", name="B")]))
        self.assertEqual(n, 4)
        self.assertEqual({p.tag for p in _run(sched.list_pending())},
                         {"medication:med-1", "medication:med-2"})


class TestLocalScheduler(unittest.TestCase):
    def test_fire_due_drops_stale(self):
        fired = []
        sched = LocalScheduler(on_fire=fired.append, grace_seconds=60)
        _run(sched.schedule(1, "t", "late", NOW - timedelta(seconds=10), "x"))
        _run(sched.schedule(2, "t", "old", NOW - timedelta(hours=1), "x"))
        _run(sched.schedule(3, "t", "future", NOW + timedelta(hours=1), "x"))
        out = _run(sched.fire_due(NOW))
        self.assertEqual([r.id for r in out], [1])
        self.assertEqual([r.body for r in fired], ["late"])
        self.assertEqual([p.id for p in _run(sched.list_pending())], [3])

    def test_ledger_survives_restart(self):
        store = MemoryStore()
        _run(LocalScheduler(store).schedule(5, "t", "b", NOW, "medication:a"))
        pending = _run(LocalScheduler(store).list_pending())
        self.assertEqual(pending, [PendingReminder(5, "medication:a", NOW, "t", "b")])

    def test_start_stop(self):
        async def go():
            fired = []
            sched = LocalScheduler(on_fire=fired.append, poll_seconds=0.01)
            await sched.schedule(1, "t", "b", datetime.now(UTC), "x")
            sched.start()
            await asyncio.sleep(0.1)
            await sched.stop()
            return fired
        self.assertEqual(len(_run(go())), 1)

    def test_polling_survives_delivery_error(self):
        async def go():
            delivered = []

            def on_fire(rem):
                if rem.id == 1:
                    raise RuntimeError("notification channel gone")
                delivered.append(rem.id)

            sched = LocalScheduler(on_fire=on_fire, poll_seconds=0.01)
            await sched.schedule(1, "t", "b", datetime.now(UTC), "x")
            sched.start()
            await asyncio.sleep(0.1)
            await sched.schedule(2, "t", "b", datetime.now(UTC), "x")
            await asyncio.sleep(0.2)
            await sched.stop()
            return delivered

        with self.assertLogs("medreminder", level="ERROR"):
            self.assertEqual(_run(go()), [2])

    def test_corrupt_ledger_starts_empty(self):
        with tempfile.TemporaryDirectory() as td:
            store = EncryptedFileStore(Path(td), AESGCM.generate_key(bit_length=256))
            store.path_for(LEDGER_KEY).write_bytes(b"garbage-bytes-not-a-ciphertext")
            sched = LocalScheduler(store)
            with self.assertLogs("medreminder", level="WARNING"):
                self.assertEqual(_run(sched.list_pending()), [])
            _run(sched.schedule(5, "t", "b", NOW, "medication:a"))
            self.assertEqual([p.id for p in _run(LocalScheduler(store).list_pending())], [5])

    def test_android_scheduler_needs_device(self):
        from medreminder import scheduler as sched_mod
        if sched_mod.autoclass is not None:
            self.skipTest("pyjnius available")
        with self.assertRaises(SchedulerError):
            sched_mod.AndroidAlarmScheduler(MemoryStore(), Settings(base_dir=Path(".")).receiver_class)


class TestRegistry(unittest.TestCase):
    def test_add_persists_and_schedules(self):
        reg, store, sched = registry()
        _run(reg.add(med()))
        self.assertEqual(reg.medications, (med(),))
        self.assertEqual(deserialize_medications(_run(store.get(STORAGE_KEY))), [med()])
        self.assertEqual(len(_run(sched.list_pending())), 2)

    def test_duplicate_id_rejected(self):
        reg, store, _ = registry(store=CountingStore())
        _run(reg.add(med()))
        with self.assertRaises(ValidationError):
            _run(reg.add(med(name="Other")))
        self.assertEqual(store.writes, 1)

    def test_update_replaces_reminders(self):
        reg, _, sched = registry()
        _run(reg.add(med()))
        _run(reg.update(med(interval_hours=12, total_days=2)))
        pending = _run(sched.list_pending())
        self.assertEqual(len(pending), 4)
        self.assertEqual(reg.get("med-1").interval_hours, 12)

    def test_rename_cancels_old_legacy_reminders(self):
        reg, _, sched = registry()
        _run(reg.add(med()))
        _run(sched.schedule(99, "t", "b", NOW, "medicine:Amoxicillin"))
        _run(sched.schedule(98, "t", "b", NOW, "medicine:Ibuprofen"))
        _run(reg.update(med(name="Amoxil")))
        pending = _run(sched.list_pending())
        ids = {p.id for p in pending}
        self.assertNotIn(99, ids)
        self.assertIn(98, ids)
        self.assertEqual(len(pending), 3)
        self.assertEqual(pending[-1].body, "Amoxil • 500mg")

    def test_update_missing(self):
        reg, _, _ = registry()
        with self.assertRaises(NotFoundError):
            _run(reg.update(med()))

    def test_toggle_cancels_only_own_reminders(self):
        reg, _, sched = registry()
        _run(reg.add(med()))
        _run(reg.add(med(id="med-2", name="Ibuprofen", interval_hours=6)))
        off = _run(reg.toggle("med-1"))
        self.assertFalse(off.is_active)
        pending = _run(sched.list_pending())
        self.assertEqual({p.tag for p in pending}, {"medication:med-2"})
        self.assertEqual(len(pending), 3)
        on = _run(reg.toggle("med-1"))
        self.assertTrue(on.is_active)
        self.assertEqual(len(_run(sched.list_pending())), 5)

    def test_remove(self):
        reg, store, sched = registry()
        _run(reg.add(med()))
        _run(reg.remove("med-1"))
        self.assertEqual(reg.medications, ())
        self.assertEqual(_run(sched.list_pending()), [])
        self.assertEqual(_run(store.get(STORAGE_KEY)), b"[]")

    def test_remove_missing_leaves_store_alone(self):
        reg, store, _ = registry(store=CountingStore())
        _run(reg.add(med()))
        before = _run(store.get(STORAGE_KEY))
        with self.assertRaises(NotFoundError):
            _run(reg.remove("nope"))
        self.assertEqual(store.writes, 1)
        self.assertEqual(_run(store.get(STORAGE_KEY)), before)

    def test_upcoming_returns_global_earliest(self):
        reg, _, _ = registry()
        _run(reg.add(med()))
        _run(reg.add(med(id="med-2", name="Ibuprofen", interval_hours=6,
                         start_time=datetime(2024, 1, 1, 13, 0, tzinfo=UTC))))
        up = reg.upcoming_doses(limit=1)
        self.assertEqual(len(up), 1)
        self.assertEqual(up[0].medication.id, "med-2")
        self.assertEqual(up[0].dose_time, datetime(2024, 1, 1, 13, 0, tzinfo=UTC))
        self.assertEqual(up[0].time_until, timedelta(hours=1))

    def test_upcoming_ties_keep_insertion_order(self):
        reg, _, _ = registry()
        _run(reg.add(med(id="b", name="B")))
        _run(reg.add(med(id="a", name="A")))
        up = reg.upcoming_doses(limit=10)
        self.assertEqual([(u.medication.id, u.dose_time.hour) for u in up], [("b", 16), ("a", 16)])

    def test_upcoming_orders_repeated_hour_by_instant(self):
        ny = new_york()
        reg, _, _ = registry()
        # 01:30 EST (second pass) is after 01:45 EDT (first pass)
        _run(reg.add(med(id="est", name="A", interval_hours=24, total_days=2,
                         start_time=datetime(2024, 11, 3, 1, 30, tzinfo=ny, fold=1))))
        _run(reg.add(med(id="edt", name="B", interval_hours=24, total_days=2,
                         start_time=datetime(2024, 11, 3, 1, 45, tzinfo=ny))))
        up = reg.upcoming_doses(limit=2, now=datetime(2024, 11, 3, 4, 0, tzinfo=UTC))
        self.assertEqual([u.medication.id for u in up], ["edt", "est"])
        self.assertEqual(up[0].time_until, timedelta(hours=1, minutes=45))
        self.assertEqual(up[1].time_until, timedelta(hours=2, minutes=30))

    def test_statistics(self):
        reg, _, _ = registry()
        _run(reg.add(med(total_days=5)))                      # ends in 4 days
        _run(reg.add(med(id="m2", name="Long", total_days=30)))
        _run(reg.add(med(id="m3", name="Off", total_days=5, is_active=False)))
        stats = reg.statistics()
        self.assertEqual(stats.total_medications, 3)
        self.assertEqual(stats.active_medications, 2)
        self.assertEqual(stats.upcoming_doses, 13 + 88)
        self.assertEqual(stats.ending_this_week, 1)

    def test_load_corrupt_blob_starts_empty(self):
        store = MemoryStore({STORAGE_KEY: b"{broken"})
        reg, _, _ = registry(store=store)
        with self.assertLogs("medreminder", level="WARNING"):
            self.assertEqual(_run(reg.load()), 0)
        self.assertEqual(reg.medications, ())

    def test_load_encrypted_store(self):
        with tempfile.TemporaryDirectory() as td:
            store = EncryptedFileStore(Path(td), AESGCM.generate_key(bit_length=256))
            reg, _, _ = registry(store=store)
            _run(reg.add(med()))
            again, _, _ = registry(store=store)
            self.assertEqual(_run(again.load()), 1)
            self.assertEqual(again.medications, (med(),))

            store.path_for(STORAGE_KEY).write_bytes(b"garbage-bytes-not-a-ciphertext")
            third, _, _ = registry(store=store)
            with self.assertLogs("medreminder", level="WARNING"):
                _run(third.load())
            self.assertEqual(third.medications, ())

    def test_persistence_failure_keeps_memory_change(self):
        reg, _, sched = registry(store=BrokenStore())
        with self.assertRaises(PersistenceError):
            _run(reg.add(med()))
        self.assertEqual(reg.medications, (med(),))
        self.assertEqual(_run(sched.list_pending()), [])

    def test_scheduler_failure_surfaces(self):
        reg, _, _ = registry(scheduler=BrokenScheduler())
        with self.assertRaises(SchedulerError):
            _run(reg.add(med()))
        self.assertEqual(len(reg.medications), 1)

    def test_observers_see_submitted_reminders(self):
        reg, _, sched = registry()
        seen = []
        unsubscribe = reg.subscribe(lambda r: seen.append((len(r.medications), len(sched._pending))))
        _run(reg.add(med()))
        unsubscribe()
        _run(reg.toggle("med-1"))
        self.assertEqual(seen, [(1, 2)])

    def test_mutations_are_serialized(self):
        reg, store, sched = registry()
        _run(reg.add(med()))

        async def flip_many():
            await asyncio.gather(*(reg.toggle("med-1") for _ in range(5)))

        _run(flip_many())
        self.assertFalse(reg.get("med-1").is_active)
        self.assertEqual(deserialize_medications(_run(store.get(STORAGE_KEY))), list(reg.medications))
        self.assertEqual(_run(sched.list_pending()), [])

    def test_reschedule_all(self):
        reg, _, sched = registry()
        _run(reg.add(med()))
        _run(reg.add(med(id="m2", name="Off", is_active=False)))
        _run(sched.cancel_all())
        self.assertEqual(_run(reg.reschedule_all()), 2)
        self.assertEqual({p.tag for p in _run(sched.list_pending())}, {payload_tag(med())})

    def test_mark_dose_taken_requires_known_id(self):
        reg, _, _ = registry()
        _run(reg.add(med()))
        _run(reg.mark_dose_taken("med-1", START))
        with self.assertRaises(NotFoundError):
            _run(reg.mark_dose_taken("nope", START))


class TestCli(unittest.TestCase):
    def tearDown(self):
        logger = logging.getLogger("medreminder")
        for h in list(logger.handlers):
            if isinstance(h, FileAndRingHandler):
                logger.removeHandler(h)

    def test_add_list_remove(self):
        with tempfile.TemporaryDirectory() as td:
            settings = Settings(base_dir=Path(td), timezone="UTC")
            out = io.StringIO()
            with redirect_stdout(out):
                rc = m.main(["add", "Ibuprofen", "200mg", "2030-01-01T08:00", "6", "2"], settings)
            self.assertEqual(rc, 0)
            med_id = out.getvalue().strip()

            out = io.StringIO()
            with redirect_stdout(out):
                self.assertEqual(m.main(["list"], settings), 0)
                self.assertEqual(m.main(["stats"], settings), 0)
            self.assertIn("Ibuprofen", out.getvalue())
            self.assertIn("medicines=1 active=1 upcoming=7", out.getvalue())

            with redirect_stdout(io.StringIO()):
                self.assertEqual(m.main(["remove", med_id], settings), 0)
            err = io.StringIO()
            with redirect_stderr(err):
                self.assertEqual(m.main(["remove", med_id], settings), 1)
            self.assertIn("not found", err.getvalue())

    def test_bad_env_setting_exits_2(self):
        err = io.StringIO()
        with mock.patch.dict(os.environ, {"MEDREMINDER_LOG_LINES": "lots"}), redirect_stderr(err):
            self.assertEqual(m.main(["list"]), 2)
        self.assertIn("MEDREMINDER_LOG_LINES", err.getvalue())

    def test_parse_start_attaches_zone(self):
        settings = Settings(base_dir=Path("."), timezone="UTC")
        self.assertEqual(m.parse_start("2024-01-01T08:00", settings), START)

    def test_ring_log_collects_lines(self):
        ring = configure_logging(None, max_lines=2)
        logger = logging.getLogger("medreminder")
        for i in range(3):
            logger.info(f"line {i}")
        lines = ring.text().splitlines()
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[-1].endswith("line 2"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
