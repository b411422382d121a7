"""Configuration management for keytally."""

import json
import sqlite3
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from utils.keycodes import is_supported_layout


class AppSettings(BaseModel):
    """Application settings with validation."""

    # Flush timing
    flush_grace_ms: int = Field(
        default=250,
        ge=0,
        description="Delay after a bucket ends before its timer flush (ms)",
    )
    min_flush_delay_ms: int = Field(
        default=100,
        ge=100,
        description="Lower bound for any scheduled flush delay (ms)",
    )

    # Statistics
    idle_threshold_minutes: int = Field(
        default=5,
        ge=1,
        description="Largest gap between active minutes still counted as focus",
    )
    max_key_results: int = Field(
        default=10, ge=1, description="Entries in top-keys lists"
    )

    # Keyboard layout
    keyboard_layout: str = Field(
        default="us", description="Keyboard layout identifier"
    )

    # Data management
    data_retention_days: int = Field(
        default=-1, ge=-1, description="Days to keep data (-1 = keep forever)"
    )

    # Status logging while capturing
    status_interval_sec: int = Field(
        default=60, ge=1, description="Interval between status log lines (sec)"
    )

    model_config = ConfigDict(extra="ignore")

    @field_validator("keyboard_layout")
    @classmethod
    def validate_layout(cls, v):
        if not is_supported_layout(v):
            raise ValueError(f"Unsupported keyboard layout: {v}")
        return v


class Config:
    """Configuration manager using SQLite for persistence with Pydantic validation."""

    def __init__(self, db_path: Path):
        """Initialize config with database connection.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_settings_table()
        self._ensure_defaults()

    def _get_connection(self) -> sqlite3.Connection:
        """Create database connection."""
        return sqlite3.connect(self.db_path, timeout=30.0)

    def _init_settings_table(self) -> None:
        """Create settings table if not exists."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS settings (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
            """)
        conn.close()

    def _ensure_defaults(self) -> None:
        """Ensure all default settings exist in database."""
        defaults = AppSettings().model_dump()

        with self._get_connection() as conn:
            conn.executemany(
                """
                INSERT OR IGNORE INTO settings (key, value)
                VALUES (?, ?)
            """,
                [(key, self._serialize_value(value)) for key, value in defaults.items()],
            )
        conn.close()

    def _serialize_value(self, value: Any) -> str:
        """Convert value to string for storage."""
        if isinstance(value, bool):
            return "True" if value else "False"
        if isinstance(value, (list, dict)):
            return json.dumps(value)
        return str(value)

    def _simple_parse(self, value: str) -> Any:
        """Parse a stored string back into int, float, bool, JSON or str."""
        if value.startswith("[") or value.startswith("{"):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        if value.lower() in ("true", "yes", "on"):
            return True
        if value.lower() in ("false", "no", "off"):
            return False

        return value

    def get(self, key: str, default: Optional[Any] = None) -> Any:
        """Get configuration value.

        Args:
            key: Setting key
            default: Default value if not found

        Returns:
            Setting value
        """
        with self._get_connection() as conn:
            result = conn.execute(
                "SELECT value FROM settings WHERE key = ?", (key,)
            ).fetchone()
        conn.close()

        if result:
            return self._simple_parse(result[0])
        if default is not None:
            return default
        if key in AppSettings.model_fields:
            return getattr(AppSettings(), key)
        return None

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        """Get integer configuration value."""
        value = self.get(key, default)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
        try:
            return int(value)
        except (ValueError, TypeError):
            if key in AppSettings.model_fields:
                return getattr(AppSettings(), key)
            return default if default is not None else 0

    def get_bool(self, key: str, default: Optional[bool] = None) -> bool:
        """Get boolean configuration value."""
        value = self.get(key, default)
        if isinstance(value, bool):
            return value
        if isinstance(value, int):
            return bool(value)
        if isinstance(value, str):
            return value.lower() in ("true", "1", "yes", "on")
        return bool(value) if value else False

    def set(self, key: str, value: Any) -> None:
        """Set configuration value with pydantic validation.

        Args:
            key: Setting key
            value: Setting value

        Raises:
            ValueError: If value fails validation
        """
        if key in AppSettings.model_fields:
            try:
                validated = AppSettings(**{key: value})
                value = getattr(validated, key)
            except Exception as e:
                raise ValueError(f"Invalid value for {key}: {e}")

        with self._get_connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO settings (key, value)
                VALUES (?, ?)
            """,
                (key, self._serialize_value(value)),
            )
        conn.close()

    def get_all(self) -> dict[str, Any]:
        """Get all settings as dictionary."""
        with self._get_connection() as conn:
            rows = conn.execute("SELECT key, value FROM settings").fetchall()
        conn.close()
        return {key: self._simple_parse(value) for key, value in rows}

    def settings(self) -> AppSettings:
        """All known settings as a validated model."""
        stored = self.get_all()
        return AppSettings(**{k: v for k, v in stored.items() if k in AppSettings.model_fields})
