"""Project-level configuration and path helpers."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "school_chat.db"
DEFAULT_LOG_PATH = LOGS_DIR / "app.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)

DEFAULT_ALLOWED_CONTENT_TYPES = (
    "image/*",
    "audio/*",
    "text/plain",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.*",
)


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


@dataclass(frozen=True)
class ChatSettings:
    """Tunables of the messaging core."""

    session_user_id: str = "director"
    max_upload_bytes: int = 10 * 1024 * 1024  # 10 MB
    allowed_content_types: tuple[str, ...] = DEFAULT_ALLOWED_CONTENT_TYPES
    max_concurrent_uploads: int = 4
    max_poll_options: int = 10
    mobile_breakpoint: int = 768  # px
    fingerprint_bucket_seconds: int = 5

    @classmethod
    def from_env(cls) -> "ChatSettings":
        """Build settings from CHAT_* environment variables."""
        defaults = cls()
        content_types = os.getenv("CHAT_ALLOWED_CONTENT_TYPES")
        return cls(
            session_user_id=os.getenv("CHAT_SESSION_USER", defaults.session_user_id),
            max_upload_bytes=int(
                os.getenv("CHAT_MAX_UPLOAD_BYTES", str(defaults.max_upload_bytes))
            ),
            allowed_content_types=(
                tuple(t.strip() for t in content_types.split(",") if t.strip())
                if content_types
                else defaults.allowed_content_types
            ),
            max_concurrent_uploads=int(
                os.getenv(
                    "CHAT_MAX_CONCURRENT_UPLOADS", str(defaults.max_concurrent_uploads)
                )
            ),
            max_poll_options=int(
                os.getenv("CHAT_MAX_POLL_OPTIONS", str(defaults.max_poll_options))
            ),
            mobile_breakpoint=int(
                os.getenv("CHAT_MOBILE_BREAKPOINT", str(defaults.mobile_breakpoint))
            ),
            fingerprint_bucket_seconds=int(
                os.getenv(
                    "CHAT_FINGERPRINT_BUCKET_SECONDS",
                    str(defaults.fingerprint_bucket_seconds),
                )
            ),
        )
