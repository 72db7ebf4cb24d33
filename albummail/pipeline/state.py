"""
JSON-file delivery state for the album mailer.
Tracks which asset was delivered to which recipient and when.
Handles legacy single-recipient state files by migrating them on load.
"""

import json
import logging
import os
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Callable, Tuple

logger = logging.getLogger(__name__)

STATE_FILENAME = "sent.json"

class StorageError(Exception):
    """Raised when the state file cannot be read or written."""

@dataclass
class StateStoreConfig:
    dir: str
    filename: str=STATE_FILENAME

@dataclass
class DeliveryState:
    # asset id -> recipient address -> ISO timestamp of delivery
    asset_recipients: Dict[str, Dict[str, str]]=field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"assetRecipients": self.asset_recipients}

def has_been_sent(state: DeliveryState, asset_id: str, recipient: str) -> bool:
    """True iff the asset has a non-empty delivery timestamp for the recipient."""
    timestamp = state.asset_recipients.get(asset_id, {}).get(recipient)
    return isinstance(timestamp, str) and bool(timestamp)

def mark_sent(state: DeliveryState, asset_id: str, recipient: str, timestamp: str):
    """Record a delivery. Re-marking only replaces the recorded time."""
    state.asset_recipients.setdefault(asset_id, {})[recipient] = timestamp

def _read_current(raw: Dict[str, Any], recipients: List[str]) -> Optional[DeliveryState]:
    """{"assetRecipients": {asset_id: {recipient: timestamp}}}"""
    asset_recipients = raw.get("assetRecipients")
    if not isinstance(asset_recipients, dict):
        return None

    state = DeliveryState()
    for asset_id, per_recipient in asset_recipients.items():
        if not isinstance(per_recipient, dict):
            continue
        kept = {
            email: timestamp for email, timestamp in per_recipient.items()
            if isinstance(timestamp, str) and timestamp
        }
        if kept:
            state.asset_recipients[asset_id] = kept
    return state

def _read_legacy_sent_asset_ids(raw: Dict[str, Any], recipients: List[str]) -> Optional[DeliveryState]:
    """{"sentAssetIds": {asset_id: timestamp}}, written before multi-recipient support."""
    sent_asset_ids = raw.get("sentAssetIds")
    if not isinstance(sent_asset_ids, dict):
        return None

    state = DeliveryState()
    for asset_id, timestamp in sent_asset_ids.items():
        if not isinstance(timestamp, str) or not timestamp:
            continue
        state.asset_recipients[asset_id] = {email: timestamp for email in recipients}
    return state

# (reader, needs_persist) tried in order; current schema first
SCHEMA_READERS: List[Tuple[Callable[[Dict[str, Any], List[str]], Optional[DeliveryState]], bool]] = [
    (_read_current, False),
    (_read_legacy_sent_asset_ids, True),
]

class StateStore:
    def __init__(self, config: StateStoreConfig, read_only: bool=False):
        self.config = config
        self.read_only = read_only
        self.state_dir = Path(config.dir).expanduser()
        self.state_file = self.state_dir / config.filename

        logger.debug(f"Using state file {self.state_file} (read_only={read_only})")

    def load(self, recipients: List[str]) -> DeliveryState:
        """
        Load delivery state, creating or migrating the file when needed.

        Missing file: an empty state is written (unless read-only) and returned.
        Legacy file: migrated by stamping every recipient with the asset's
        timestamp, then persisted so the migration happens only once.
        Unrecognized content: treated as an empty state.
        """
        recipients = list(recipients)
        if not self.state_file.exists():
            logger.info(f"No state file at {self.state_file}, starting with empty state")
            state = DeliveryState()
            if not self.read_only:
                self.save(state)
            return state

        try:
            text = self.state_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StorageError(f"Failed to read state file {self.state_file}: {e}") from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            logger.warning(f"State file {self.state_file} is not valid JSON ({e}), treating as empty state")
            return DeliveryState()

        if not isinstance(raw, dict):
            logger.warning(f"State file {self.state_file} has unexpected top-level type {type(raw).__name__}, treating as empty state")
            return DeliveryState()

        for reader, needs_persist in SCHEMA_READERS:
            state = reader(raw, recipients)
            if state is None:
                continue
            if needs_persist:
                logger.info(f"Migrated legacy state ({len(state.asset_recipients)} assets) to {len(recipients)} recipient(s)")
                if not self.read_only:
                    self.save(state)
            logger.debug(f"Loaded delivery state with {len(state.asset_recipients)} assets")
            return state

        logger.warning(f"State file {self.state_file} has unknown shape, treating as empty state")
        return DeliveryState()

    def save(self, state: DeliveryState):
        """Write to a temporary sibling file, then replace the state file in one step."""
        if self.read_only:
            raise StorageError("State store was opened read-only")

        tmp_path = self.state_file.with_suffix(self.state_file.suffix + ".tmp")
        payload = json.dumps(state.to_dict(), indent=2, ensure_ascii=False)
        try:
            self.state_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w", encoding="utf-8") as f:
                f.write(payload)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.state_file)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(f"Failed to write state file {self.state_file}: {e}") from e

        logger.debug(f"Saved delivery state ({len(state.asset_recipients)} assets) to {self.state_file}")

    def stats(self, state: DeliveryState) -> Dict[str, Any]:
        """Get delivery statistics."""
        per_recipient: Dict[str, int] = {}
        for per_asset in state.asset_recipients.values():
            for email in per_asset:
                per_recipient[email] = per_recipient.get(email, 0) + 1

        return {
            "state_file": str(self.state_file),
            "exists": self.state_file.exists(),
            "assets_count": len(state.asset_recipients),
            "delivered_per_recipient": dict(sorted(per_recipient.items())),
        }
