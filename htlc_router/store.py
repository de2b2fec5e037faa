"""
JSON state store.

Snapshots swaps, asset authorities and confirmation records to one JSON file
so a restarted router can resume open swaps. Secrets are stripped unless
persist_secrets is set.
"""

import json
import logging
import os
import tempfile
import time
from typing import Dict, Any

log = logging.getLogger(__name__)

STATE_VERSION = 1


class StateStore:
    def __init__(self, path: str, persist_secrets: bool = False):
        self.path = os.path.expanduser(path)
        self.persist_secrets = persist_secrets

    def snapshot(self, registry, authority, confirmations) -> Dict[str, Any]:
        """Build the state document. Call from the event loop."""
        return {
            "version": STATE_VERSION,
            "saved_at": time.time(),
            "swaps": registry.to_dict(include_secrets=self.persist_secrets),
            "assets": authority.to_dict(),
            "confirmations": confirmations.to_dict(),
        }

    def save(self, registry, authority, confirmations):
        self.write(self.snapshot(registry, authority, confirmations))

    def write(self, state: Dict[str, Any]):
        """Write a snapshot atomically (temp file + rename). Safe to run in a worker thread."""
        directory = os.path.dirname(self.path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".state_", suffix=".json")
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(state, f, indent=2)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def load(self) -> Dict[str, Any]:
        """Load the last snapshot. Returns {} when there is none."""
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r") as f:
                state = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            log.error(f"Failed to load router state from {self.path}: {e}")
            return {}
        if state.get("version") != STATE_VERSION:
            log.error(f"Unsupported state version {state.get('version')} in {self.path}")
            return {}
        log.info(f"Loaded {len(state.get('swaps') or {})} swaps from {self.path}")
        return state
