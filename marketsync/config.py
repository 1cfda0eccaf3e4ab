from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final, List, Optional

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@dataclass(slots=True)
class Settings:
    """Central configuration driven by environment variables."""

    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    request_timeout_seconds: float = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "15"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    data_dir: Path = field(default_factory=lambda: Path(os.getenv("DATA_DIR", "./data")))

    scheduler_enabled: bool = _env_flag("SCHEDULER_ENABLED")
    fetch_interval_seconds: int = int(os.getenv("FETCH_INTERVAL_SECONDS", "3600"))
    scheduler_platforms_raw: str | None = os.getenv("SCHEDULER_PLATFORMS")

    fetch_concurrency_raw: str | None = os.getenv("FETCH_CONCURRENCY")
    initial_lookback_days: int = int(os.getenv("INITIAL_LOOKBACK_DAYS", "20"))
    sse_heartbeat_seconds: float = float(os.getenv("SSE_HEARTBEAT_SECONDS", "15"))

    def ensure_paths(self) -> None:
        """Create expected directories if they do not exist."""
        self.data_dir.mkdir(parents=True, exist_ok=True)
        (self.data_dir / "export").mkdir(parents=True, exist_ok=True)

    @property
    def scheduler_platforms(self) -> List[str]:
        if not self.scheduler_platforms_raw:
            return []
        return [token.strip().lower() for token in self.scheduler_platforms_raw.split(",") if token.strip()]

    def concurrency_override(self, platform: str) -> Optional[int]:
        """Positive concurrency from `<PLATFORM>_FETCH_CONCURRENCY` or `FETCH_CONCURRENCY`."""
        raw = os.getenv(f"{platform.upper()}_FETCH_CONCURRENCY") or self.fetch_concurrency_raw
        if not raw:
            return None
        try:
            value = int(raw)
        except ValueError:
            return None
        return value if value > 0 else None


# Singleton-style settings import
settings: Final[Settings] = Settings()
settings.ensure_paths()
