# medreminder/config.py
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from datetime import timezone
from typing import Optional
from zoneinfo import ZoneInfo

def _is_writable_dir(p: Path) -> bool:
    try:
        p.mkdir(parents=True, exist_ok=True)
        t = p / f".writetest.{uuid.uuid4().hex}"
        t.write_text("ok", encoding="utf-8")
        t.unlink(missing_ok=True)
        return True
    except OSError:
        return False

def _app_base_dir() -> Path:
    p = os.environ.get("MEDREMINDER_HOME")
    if p:
        return Path(p)

    p = os.environ.get("ANDROID_PRIVATE")
    if p:
        d = Path(p) / "medreminder_data"
        if _is_writable_dir(d):
            return d

    return Path.cwd() / "medreminder_data"

def _env_int(name: str, default: int) -> int:
    v = os.environ.get(name)
    if not v:
        return default
    try:
        return int(v)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {v!r}")

@dataclass
class Settings:
    """Runtime configuration resolved from environment variables."""

    base_dir: Path = field(default_factory=_app_base_dir)
    timezone: Optional[str] = field(default_factory=lambda: os.environ.get("MEDREMINDER_TZ") or None)
    log_lines: int = field(default_factory=lambda: _env_int("MEDREMINDER_LOG_LINES", 800))
    grace_seconds: int = field(default_factory=lambda: _env_int("MEDREMINDER_GRACE_SECONDS", 60))
    receiver_class: str = "org.example.medreminder.AlarmReceiver"

    @property
    def blob_dir(self) -> Path:
        return self.base_dir / "store"

    @property
    def key_path(self) -> Path:
        return self.base_dir / ".enc_key"

    @property
    def log_path(self) -> Path:
        return self.base_dir / "app.log"

    @property
    def tzinfo(self):
        """Configured zone, or None for the system local zone."""
        if not self.timezone:
            return None
        if self.timezone.upper() == "UTC":
            return timezone.utc
        return ZoneInfo(self.timezone)
