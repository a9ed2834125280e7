"""
Persistence Manager Module.
Saves and restores the bot's state snapshot (open positions, PnL history,
consumed close ids, trade log) as a JSON file.
"""

import fcntl
import json
import os
from typing import Any, Dict, Optional

from utils.logger import log

STATE_VERSION = 1


class PersistenceManager:
    """
    Manages the on-disk state snapshot.
    Writes go to a temp file under an exclusive lock, then os.replace.
    """

    def __init__(self, data_dir: str = "data", filename: str = "liqtrader_state.json"):
        self.filepath = os.path.join(data_dir, filename)
        self._ensure_directory()

    def _ensure_directory(self) -> None:
        directory = os.path.dirname(self.filepath)
        if directory and not os.path.exists(directory):
            os.makedirs(directory, exist_ok=True)
            log.info(f"Created directory: {directory}")

    def save_state(self, state: Dict[str, Any]) -> bool:
        """
        Save the snapshot atomically.

        Returns:
            True if the file was replaced, False on any I/O failure (logged).
        """
        temp_filepath = f"{self.filepath}.tmp"
        lock_filepath = f"{self.filepath}.lock"
        payload = dict(state, version=STATE_VERSION)

        with open(lock_filepath, "w") as lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_EX)
            try:
                try:
                    json_data = json.dumps(payload, indent=2)
                except TypeError:
                    log.warning("State contains non-serializable values. Converting to strings.")
                    json_data = json.dumps(payload, indent=2, default=str)

                with open(temp_filepath, "w") as f:
                    f.write(json_data)
                os.replace(temp_filepath, self.filepath)
                log.debug(f"State saved to {self.filepath}")
                return True
            except OSError as e:
                log.error(f"Failed to save state: {e}")
                if os.path.exists(temp_filepath):
                    os.remove(temp_filepath)
                return False
            finally:
                fcntl.flock(lock_file, fcntl.LOCK_UN)

    def load_state(self) -> Optional[Dict[str, Any]]:
        """Load the snapshot, or None if there is none or it cannot be read."""
        if not os.path.exists(self.filepath):
            log.info(f"No state file found at {self.filepath}")
            return None

        try:
            with open(self.filepath, "r") as f:
                state = json.load(f)
        except (OSError, ValueError) as e:
            log.error(f"Failed to load state from {self.filepath}: {e}")
            return None

        if not isinstance(state, dict):
            log.error(f"Ignoring malformed state file {self.filepath}")
            return None
        log.info(f"State loaded from {self.filepath}")
        return state

    def clear_state(self) -> bool:
        if os.path.exists(self.filepath):
            os.remove(self.filepath)
            log.info(f"Cleared state at {self.filepath}")
        return True
