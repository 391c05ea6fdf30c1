import json
import os
import tempfile

from .logui import debug, warn, error

TAG = "Training"


class DraftStore:
    """Single-slot JSON snapshot of an unfinished training session."""

    def __init__(self, path: str | None):
        self.path = path

    def exists(self) -> bool:
        return bool(self.path) and os.path.exists(self.path)

    def save(self, data: dict) -> bool:
        if not self.path:
            return True
        directory = os.path.dirname(os.path.abspath(self.path))
        tmp_path = None
        try:
            os.makedirs(directory, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix=".draft-", suffix=".json", dir=directory)
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_path, self.path)
            return True
        except (OSError, TypeError, ValueError) as e:
            if tmp_path and os.path.exists(tmp_path):
                try:
                    os.remove(tmp_path)
                except OSError:
                    pass
            error(f"Draft save failed: {e}", tag=TAG)
            return False

    def load(self) -> dict | None:
        if not self.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            warn(f"Unreadable training draft {self.path}: {e}", tag=TAG)
            return None
        if not isinstance(data, dict):
            warn(f"Ignoring malformed training draft {self.path}", tag=TAG)
            return None
        return data

    def clear(self):
        if not self.exists():
            return
        try:
            os.remove(self.path)
            debug("Draft cleared", tag=TAG)
        except OSError as e:
            error(f"Draft delete failed: {e}", tag=TAG)
