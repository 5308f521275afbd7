"""Local persistence of locally constructed orders.

Only orders with ``source == "local"`` are written here. Orders reconciled
from checkout records live in the document store and are never cached on
disk, so a stale local copy can't shadow the remote one.
"""

import json
import logging
import os
import tempfile
from pathlib import Path

from .errors import LocalCacheError
from .models import Order

log = logging.getLogger(__name__)

SCHEMA_VERSION = 1


class LocalOrderCache:
    """Reads and writes the local order file."""

    def __init__(self, path: Path | None):
        """
        Args:
            path: JSON file location. None disables persistence (in-memory only).
        """
        self.path = Path(path) if path is not None else None

    def exists(self) -> bool:
        return self.path is not None and self.path.exists()

    def load(self) -> list[Order]:
        """
        Load cached local orders.

        Raises:
            LocalCacheError: If the file exists but can't be parsed.
        """
        if not self.exists():
            return []

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return [Order.from_dict(o) for o in data.get("orders", [])]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise LocalCacheError(str(self.path), str(e)) from e

    def save(self, orders: list[Order]) -> None:
        """
        Save the local subset of ``orders`` atomically.

        Uses write-to-temp-then-rename for atomicity.
        """
        if self.path is None:
            return

        local_orders = [o for o in orders if o.is_local]
        self.path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            "schema_version": SCHEMA_VERSION,
            "orders": [o.to_dict() for o in local_orders],
        }
        fd, temp_path = tempfile.mkstemp(dir=self.path.parent, prefix=".orders_", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.write("\n")
            os.replace(temp_path, self.path)
        except Exception:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            raise
        log.debug(f"Saved {len(local_orders)} local orders to {self.path}")
