# main.py
# Medicine Reminder — interval dose scheduling with encrypted local storage
#
# Usage:
#   python main.py add "Amoxicillin" "500mg" 2024-01-01T08:00 8 7
#   python main.py upcoming --limit 5
#   python main.py stats
#   python main.py toggle <id> | remove <id> | resync | list
#   python main.py serve          # deliver reminders in-process (desktop)
#
# Data lives under MEDREMINDER_HOME (default ./medreminder_data).

import sys
import asyncio
import argparse
import logging
from datetime import datetime
from typing import Optional, List, Tuple

from medreminder.config import Settings
from medreminder.doses import compute_next_dose, is_currently_active
from medreminder.errors import MedReminderError
from medreminder.log import configure_logging
from medreminder.registry import MedicationRegistry
from medreminder.reminders import ReminderSynchronizer
from medreminder.scheduler import LocalScheduler
from medreminder.store import EncryptedFileStore, get_or_create_key

logger = logging.getLogger("medreminder")

def build(settings: Settings) -> Tuple[MedicationRegistry, LocalScheduler]:
    key = get_or_create_key(settings.key_path)
    store = EncryptedFileStore(settings.blob_dir, key)
    scheduler = LocalScheduler(store, grace_seconds=settings.grace_seconds)
    tz = settings.tzinfo

    def clock() -> datetime:
        return datetime.now(tz) if tz else datetime.now().astimezone()

    registry = MedicationRegistry(store, ReminderSynchronizer(scheduler), clock=clock, default_tz=tz)
    return registry, scheduler

def parse_start(text: str, settings: Settings) -> datetime:
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        tz = settings.tzinfo
        dt = dt.replace(tzinfo=tz) if tz else dt.astimezone()
    return dt

def _fmt(dt: Optional[datetime]) -> str:
    return dt.strftime("%Y-%m-%d %H:%M") if dt else "—"

def _parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="medreminder", description="Interval medicine reminders")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("list", help="list medicines")
    up = sub.add_parser("upcoming", help="show upcoming doses")
    up.add_argument("--limit", type=int, default=10)
    sub.add_parser("stats", help="show statistics")

    add = sub.add_parser("add", help="add a medicine")
    add.add_argument("name")
    add.add_argument("dosage")
    add.add_argument("start", help="ISO-8601 start time, e.g. 2024-01-01T08:00")
    add.add_argument("interval_hours", type=int)
    add.add_argument("total_days", type=int)
    add.add_argument("--notes", default=None)

    for name in ("toggle", "remove"):
        sp = sub.add_parser(name)
        sp.add_argument("id")

    sub.add_parser("resync", help="cancel and reschedule every reminder")
    sub.add_parser("serve", help="deliver reminders in-process until interrupted")
    return p

async def run(args: argparse.Namespace, settings: Settings) -> int:
    registry, scheduler = build(settings)
    await registry.load()
    now = registry.clock()

    if args.cmd == "list":
        for m in registry.medications:
            state = "active" if is_currently_active(m, now) else ("on" if m.is_active else "off")
            print(f"{m.id}  {m.name} ({m.dosage})  every {m.interval_hours}h x {m.total_days}d  "
                  f"[{state}] next={_fmt(compute_next_dose(m, now))}")
    elif args.cmd == "upcoming":
        for u in registry.upcoming_doses(limit=args.limit, now=now):
            mins = int(u.time_until.total_seconds() // 60)
            print(f"{_fmt(u.dose_time)}  {u.medication.name} • {u.medication.dosage}  (in {mins} min)")
    elif args.cmd == "stats":
        s = registry.statistics(now=now)
        print(f"medicines={s.total_medications} active={s.active_medications} "
              f"upcoming={s.upcoming_doses} ending_this_week={s.ending_this_week}")
    elif args.cmd == "add":
        med = await registry.create(args.name, args.dosage, parse_start(args.start, settings),
                                    args.interval_hours, args.total_days, notes=args.notes)
        print(med.id)
    elif args.cmd == "toggle":
        med = await registry.toggle(args.id)
        print(f"{med.id} active={med.is_active}")
    elif args.cmd == "remove":
        await registry.remove(args.id)
    elif args.cmd == "resync":
        n = await registry.reschedule_all()
        print(f"{n} reminders scheduled")
    elif args.cmd == "serve":
        scheduler.start()
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()
    return 0

def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    try:
        settings = settings or Settings()
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    configure_logging(settings.log_path, settings.log_lines)
    args = _parser().parse_args(argv)
    logger.info(f"start cmd={args.cmd} base={settings.base_dir}")
    try:
        return asyncio.run(run(args, settings))
    except MedReminderError as e:
        logger.error(f"{args.cmd} failed: {e}")
        print(f"error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
    except KeyboardInterrupt:
        return 130

if __name__ == "__main__":
    sys.exit(main())
