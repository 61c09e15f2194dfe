"""
Checkpoint store - remembers the highest delivery id already alerted on
"""
import os
import re
from pathlib import Path
from typing import Union

from .errors import CheckpointError
from .logging_setup import get_logger

log = get_logger("checkpoint")

LEADING_INTEGER = re.compile(r"[+-]?\d+")


class CheckpointStore:
    """Single integer cursor persisted as decimal text in a file"""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    def read(self) -> int:
        """
        Return the stored checkpoint, or 0 if none has been written yet.

        An empty file reads as 0. Trailing garbage after the leading digits
        is ignored with a warning. Contents with no leading digits, or a file
        that exists but cannot be opened, raise CheckpointError: restarting
        from 0 would re-alert every failure in the database.
        """
        try:
            raw = self.path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            log.info("No checkpoint at %s, starting from 0", self.path)
            return 0
        except OSError as e:
            raise CheckpointError(f"Cannot read checkpoint {self.path}: {e}") from e

        if not raw:
            log.warning("Checkpoint %s is empty, starting from 0", self.path)
            return 0

        match = LEADING_INTEGER.match(raw)
        if match is None:
            raise CheckpointError(f"Checkpoint {self.path} is not a number: {raw!r}")
        value = int(match.group())
        if match.end() != len(raw):
            log.warning("Checkpoint %s holds %r, using %d", self.path, raw, value)

        if value < 0:
            log.warning("Negative checkpoint %d in %s, treating it as 0", value, self.path)
            return 0
        return value

    def write(self, delivery_id: int) -> bool:
        """Persist delivery_id, returning False (and logging) on failure"""
        tmp = self.path.with_name(self.path.name + ".tmp")
        try:
            if self.path.parent and not self.path.parent.exists():
                self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(str(int(delivery_id)))
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        except OSError as e:
            log.error("Failed to save checkpoint %d to %s: %s", delivery_id, self.path, e)
            try:
                tmp.unlink()
            except OSError:
                pass
            return False

        log.debug("Checkpoint saved: %d", delivery_id)
        return True
