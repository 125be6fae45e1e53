"""Persisted creation timestamps for local files and folders.

Most POSIX filesystems do not let user code set a file's creation (birth)
time. The store keeps the remote creation timestamp that was applied to each
local path so later runs can compare against it. The state is stored in a
JSON file in the user's config directory, keyed by a hash of the local root.
"""

import hashlib
import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class CreationTimeStore:
    """Thread-safe map of local relative path -> creation timestamp."""

    def __init__(self, local_root: Path, state_dir: Optional[Path] = None):
        """Initialize the store.

        Args:
            local_root: Root of the local mirror
            state_dir: Directory to store state files. Defaults to
                      ~/.config/spmirror/state/
        """
        if state_dir is None:
            state_dir = Path.home() / ".config" / "spmirror" / "state"
        self.local_root = local_root
        self.state_dir = state_dir
        self.state_file = state_dir / f"{self._get_state_key(local_root)}.json"
        self._lock = threading.Lock()
        self._save_lock = threading.Lock()
        self._created: dict[str, float] = {}
        self._dirty = False
        self.load()

    @staticmethod
    def _get_state_key(local_root: Path) -> str:
        """Generate a unique key for a local root."""
        local_abs = str(local_root.resolve())
        return hashlib.sha256(local_abs.encode()).hexdigest()[:16]

    def _key(self, path: Path) -> str:
        try:
            return path.resolve().relative_to(self.local_root.resolve()).as_posix()
        except ValueError:
            return path.resolve().as_posix()

    def load(self) -> None:
        """Load the state file if it exists."""
        if not self.state_file.exists():
            logger.debug(f"No creation time state found at {self.state_file}")
            return

        try:
            with open(self.state_file, encoding="utf-8") as f:
                data = json.load(f)
            created = data.get("created", {})
            with self._lock:
                self._created = {k: float(v) for k, v in created.items()}
            logger.debug(
                f"Loaded {len(self._created)} creation timestamps "
                f"from {self.state_file}"
            )
        except (json.JSONDecodeError, ValueError, AttributeError) as e:
            logger.warning(f"Failed to load creation time state: {e}")

    def save(self) -> None:
        """Write the state file if anything changed.

        Safe to call from several threads; writes are serialized.
        """
        with self._save_lock:
            with self._lock:
                if not self._dirty:
                    return
                data = {
                    "local_root": str(self.local_root.resolve()),
                    "saved_at": datetime.now().isoformat(),
                    "created": dict(sorted(self._created.items())),
                }
                self._dirty = False

            try:
                self.state_dir.mkdir(parents=True, exist_ok=True)
                tmp_file = self.state_file.with_suffix(".json.tmp")
                with open(tmp_file, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                tmp_file.replace(self.state_file)
                logger.debug(
                    f"Saved {len(data['created'])} creation timestamps "
                    f"to {self.state_file}"
                )
            except OSError as e:
                with self._lock:
                    self._dirty = True
                logger.warning(f"Failed to save creation time state: {e}")

    def get(self, path: Path) -> Optional[float]:
        with self._lock:
            return self._created.get(self._key(path))

    def set(self, path: Path, created: float) -> None:
        key = self._key(path)
        with self._lock:
            if self._created.get(key) != created:
                self._created[key] = created
                self._dirty = True

    def __len__(self) -> int:
        with self._lock:
            return len(self._created)
