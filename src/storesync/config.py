"""Settings for storesync, read from the environment."""

import os
from dataclasses import dataclass
from pathlib import Path

# Local data directory within the storesync project
# Can be overridden via STORESYNC_DATA_DIR environment variable
_default_data_dir = Path(__file__).parent.parent.parent / "data"

STORE_FILE = "documents.json"
LOCAL_ORDERS_FILE = "local_orders.json"

DEFAULT_STORE_PREFIX = "PBM"
DEFAULT_OPERATION_TIMEOUT = 10.0
DEFAULT_DELIVERY_DAYS = 7


@dataclass(frozen=True)
class Settings:
    """Runtime configuration shared by the components."""

    data_dir: Path
    store_prefix: str = DEFAULT_STORE_PREFIX
    operation_timeout: float = DEFAULT_OPERATION_TIMEOUT
    default_delivery_days: int = DEFAULT_DELIVERY_DAYS
    log_level: str = "INFO"
    log_file: str | None = None

    @property
    def store_path(self) -> Path:
        return self.data_dir / STORE_FILE

    @property
    def local_orders_path(self) -> Path:
        return self.data_dir / LOCAL_ORDERS_FILE

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from STORESYNC_* environment variables."""
        return cls(
            data_dir=Path(os.environ.get("STORESYNC_DATA_DIR", _default_data_dir)),
            store_prefix=os.environ.get("STORESYNC_STORE_PREFIX", DEFAULT_STORE_PREFIX),
            operation_timeout=float(
                os.environ.get("STORESYNC_OPERATION_TIMEOUT", DEFAULT_OPERATION_TIMEOUT)
            ),
            default_delivery_days=int(
                os.environ.get("STORESYNC_DEFAULT_DELIVERY_DAYS", DEFAULT_DELIVERY_DAYS)
            ),
            log_level=os.environ.get("STORESYNC_LOG_LEVEL", "INFO"),
            log_file=os.environ.get("STORESYNC_LOG_FILE") or None,
        )
