"""State manager for loading, saving, and locking the state file."""

import fcntl
import json
import os
import threading
import time
from pathlib import Path
from typing import Optional

from converge.state.models import RemoteState, StateFile, STATE_FORMAT_VERSION
from converge.utils.errors import StateError, StateLockError, StateNotFoundError
from converge.utils.logging import get_logger

logger = get_logger(__name__)


class StateManager:
    """Manages the state file with file locking and atomic writes."""

    def __init__(self, state_path: str):
        """
        Initialize StateManager.

        Args:
            state_path: Path to the state file
        """
        self.state_path = Path(state_path)
        self._lock_file: Optional[int] = None
        self._current_state: Optional[StateFile] = None
        self._mutex = threading.Lock()

    def load(self) -> StateFile:
        """
        Load state from file.

        Returns:
            StateFile object

        Raises:
            StateNotFoundError: If state file does not exist
            StateError: If state file is corrupted or invalid
        """
        if not self.state_path.exists():
            raise StateNotFoundError(f"State file not found: {self.state_path}")

        try:
            with open(self.state_path, "r") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Failed to parse state file {self.state_path}: {e}", cause=e)

        if not isinstance(data, dict):
            raise StateError(f"Invalid state file {self.state_path}: root must be an object")
        if data.get("version", STATE_FORMAT_VERSION) > STATE_FORMAT_VERSION:
            raise StateError(
                f"State file {self.state_path} has format version {data['version']}, "
                f"newer than supported version {STATE_FORMAT_VERSION}"
            )

        try:
            self._current_state = StateFile.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"Invalid state file {self.state_path}: {e}", cause=e)

        logger.debug(
            f"Loaded state serial {self._current_state.serial} with "
            f"{len(self._current_state.resources)} resources"
        )
        return self._current_state

    def load_or_initialize(self) -> StateFile:
        """Load the state file, or start an empty state if none exists yet."""
        if self.exists():
            return self.load()
        logger.info(f"No state file at {self.state_path}; starting from empty state")
        self._current_state = StateFile()
        return self._current_state

    def save(self, state: Optional[StateFile] = None) -> None:
        """
        Save state to file.

        Args:
            state: State to save; defaults to the currently loaded state

        Raises:
            StateError: If state cannot be saved
        """
        with self._mutex:
            state = state or self._current_state
            if state is None:
                raise StateError("State not loaded. Call load() first.")

            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            state.serial += 1

            try:
                # Write to temporary file first
                temp_path = self.state_path.with_suffix(".tmp")
                with open(temp_path, "w") as f:
                    json.dump(state.to_dict(), f, indent=2, default=str)

                # Atomic rename
                temp_path.replace(self.state_path)
                self._current_state = state
            except (OSError, TypeError, ValueError) as e:
                raise StateError(f"Failed to save state file {self.state_path}: {e}", cause=e)

    def is_loaded(self) -> bool:
        return self._current_state is not None

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_path.exists()

    def lock(self, timeout: float = 30) -> None:
        """
        Acquire exclusive lock on state file.

        Args:
            timeout: Lock timeout in seconds

        Raises:
            StateLockError: If lock cannot be acquired
        """
        lock_path = self.state_path.with_suffix(".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock_file = os.open(str(lock_path), os.O_CREAT | os.O_RDWR)
        start_time = time.time()
        while True:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_EX | fcntl.LOCK_NB)
                logger.debug(f"Acquired state lock {lock_path}")
                return
            except BlockingIOError:
                if time.time() - start_time > timeout:
                    os.close(self._lock_file)
                    self._lock_file = None
                    raise StateLockError(
                        f"Failed to acquire lock on state file after {timeout}s",
                        suggestions=["Check whether another run is using the same state file"]
                    )
                time.sleep(0.1)

    def unlock(self) -> None:
        """Release lock on state file."""
        if self._lock_file is not None:
            try:
                fcntl.flock(self._lock_file, fcntl.LOCK_UN)
                os.close(self._lock_file)
            finally:
                self._lock_file = None

    def __enter__(self):
        """Context manager entry - acquire lock and load state."""
        self.lock()
        self.load_or_initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit - release lock."""
        self.unlock()

    def get_state(self) -> StateFile:
        """
        Get the current state.

        Raises:
            StateError: If state is not loaded
        """
        if self._current_state is None:
            raise StateError("State not loaded. Call load() first.")
        return self._current_state

    def record(self, remote: RemoteState) -> None:
        """Record a resource's remote state and persist the state file."""
        with self._mutex:
            self.get_state().set_resource(remote)
        self.save()

    def forget(self, address: str) -> Optional[RemoteState]:
        """Remove a resource from state and persist the state file."""
        with self._mutex:
            removed = self.get_state().remove_resource(address)
        self.save()
        return removed
