"""
Secret Santa Storage Module - File I/O and State Management

RESPONSIBILITIES:
- JSON file operations (load/save with atomic writes)
- Participant signups, pending/approved matches, settings
- Temporary signup data (30 minute expiry)
- Blacklist lookups
- Building the matching pool (main pool vs substitutes)

ISOLATION:
- No Discord dependencies
- One SecretSantaStore per state file, injected into the cog
- Can be tested independently against a temp directory
"""

import copy
import datetime as dt
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .secret_santa_matching import Match, Participant

ROOT = Path(__file__).parent
DEFAULT_DATA_FILE = ROOT / "secret_santa_data.json"

TEMP_SIGNUP_TTL = dt.timedelta(minutes=30)

# Carried over from last year's event
DEFAULT_BLACKLIST = ["bogoro", "ellowwell"]

SUBSTITUTE_CHOICES = ("no", "yes", "only_sub")


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def parse_datetime(value: Any) -> Optional[dt.datetime]:
    """Parse an ISO-8601 string (naive values are treated as UTC)"""
    if not value:
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    else:
        try:
            parsed = dt.datetime.fromisoformat(str(value))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def load_json(path: Path, default: Any = None) -> Any:
    """
    Load JSON, returning `default` only for a missing or empty file.

    Unreadable or malformed files raise (OSError, UnicodeDecodeError,
    json.JSONDecodeError) so callers can fall back to a backup instead of
    silently starting over.
    """
    if not path.exists():
        return default if default is not None else {}
    # Explicit UTF-8 encoding for cross-platform compatibility
    text = path.read_text(encoding='utf-8').strip()
    if not text:
        return default if default is not None else {}
    return json.loads(text)


def save_json(path: Path, data: Any):
    """Save JSON atomically (temp file + rename)"""
    temp = path.with_suffix('.tmp')
    try:
        temp.write_text(
            json.dumps(data, indent=2, ensure_ascii=False),
            encoding='utf-8'
        )
        temp.replace(path)
    except Exception:
        # Clean up temp file if save failed
        if temp.exists():
            try:
                temp.unlink()
            except OSError:
                pass
        raise  # Re-raise so caller knows save failed


def get_default_settings() -> dict:
    return {
        "signups_open": True,
        "signup_deadline": None,
        "submission_deadline": None,
        "matched": False,
        "matched_at": None,
        "matches_approved": False,
        "last_reminder_day": None,
        "blacklisted_users": [],
    }


def get_default_state() -> dict:
    """Default state structure (used for fresh installs and fallbacks)"""
    return {
        "participants": {},
        "matches": [],
        "settings": get_default_settings(),
        "temp_signups": {},
    }


def validate_state_structure(state: dict, logger=None) -> dict:
    """
    Validate and fix state structure.

    Returns: Validated state (repaired if needed)
    """
    if not isinstance(state, dict):
        if logger:
            logger.error("State is not a dict, using defaults")
        return get_default_state()

    if not isinstance(state.get("participants"), dict):
        if logger and "participants" in state:
            logger.error("Invalid state - participants not a dict, resetting")
        state["participants"] = {}

    if not isinstance(state.get("matches"), list):
        if logger and "matches" in state:
            logger.error("Invalid state - matches not a list, resetting")
        state["matches"] = []
    else:
        state["matches"] = [
            m for m in state["matches"]
            if isinstance(m, dict) and m.get("santa_id") and m.get("giftee_id")
        ]

    settings = state.get("settings")
    if not isinstance(settings, dict):
        settings = {}
    for key, value in get_default_settings().items():
        settings.setdefault(key, value)
    state["settings"] = settings

    if not isinstance(state.get("temp_signups"), dict):
        state["temp_signups"] = {}

    return state


def new_participant_record(user_id: str, username: str, discord_name: str, **fields) -> dict:
    """Build a participant record with every field present"""
    record = {
        "user_id": str(user_id),
        "username": username,
        "discord_name": discord_name,
        "character_links": [],
        "preferred_character_requests": "",
        "other_character_requests": "",
        "content_to_avoid": "",
        "members_to_avoid": [],
        "is_substitute": "no",
        "matched_with": None,
        "received_assignment": False,
        "signed_up_at": utcnow().isoformat(),
    }
    record.update(fields)
    if record["is_substitute"] not in SUBSTITUTE_CHOICES:
        raise ValueError(f"is_substitute must be one of {SUBSTITUTE_CHOICES}")
    return record


def is_eligible(record: dict) -> bool:
    """Main pool: has an id, is not substitute-only, and linked at least one character"""
    if not record or not record.get("user_id"):
        return False
    if record.get("is_substitute") == "only_sub":
        return False
    links = record.get("character_links")
    return isinstance(links, list) and len(links) > 0


def to_participant(record: dict) -> Participant:
    return Participant(
        id=str(record["user_id"]),
        display_name=record.get("discord_name") or None,
        handle=record.get("username") or None,
        exclude_list=list(record.get("members_to_avoid") or []),
        eligible=is_eligible(record),
    )


class SecretSantaStore:
    """
    Persistence for one Secret Santa event.

    All reads and writes go through the in-memory `state` dict; every
    mutating call saves immediately. Callers serialize matching runs.
    """

    def __init__(self, state_file: Path = DEFAULT_DATA_FILE, logger: Optional[logging.Logger] = None):
        self.state_file = Path(state_file)
        self.backup_file = self.state_file.with_suffix('.backup')
        self.logger = logger or logging.getLogger("bot.santa.storage")
        self.state = self.load()

    # ---------- file level ----------

    def _read_state(self, path: Path) -> dict:
        if not path.exists():
            raise FileNotFoundError(path)
        raw = load_json(path, get_default_state())
        if not isinstance(raw, dict):
            raise ValueError(f"{path.name} does not hold a JSON object")
        return validate_state_structure(raw, self.logger)

    def load(self) -> dict:
        """
        Load state with multi-layer fallback system.

        Fallback chain:
        1. Load main state file
        2. If missing or corrupted → try backup file
        3. If backup fails → use clean defaults

        A corrupt main file is moved aside to `.corrupt` so the next save
        cannot overwrite it.
        """
        try:
            state = self._read_state(self.state_file)
            self.logger.info(f"State loaded successfully. Participants: {len(state['participants'])}")
            return state
        except FileNotFoundError:
            if not self.backup_file.exists():
                self.logger.info("No state file yet, starting fresh")
                return get_default_state()
            self.logger.warning(f"{self.state_file.name} is missing, trying backup")
        except (OSError, ValueError) as e:
            # JSONDecodeError and UnicodeDecodeError are ValueErrors
            self.logger.error(f"Failed to load state from {self.state_file.name}: {e}, trying backup")
            self._set_aside_corrupt_file()

        try:
            state = self._read_state(self.backup_file)
        except FileNotFoundError:
            self.logger.error("No backup file available")
        except (OSError, ValueError) as backup_error:
            self.logger.error(f"Backup load also failed: {backup_error}")
        else:
            self.logger.warning(f"Restored state from backup. Participants: {len(state['participants'])}")
            self.state = state
            self.save()
            return state

        self.logger.warning("Using clean default state")
        return get_default_state()

    def _set_aside_corrupt_file(self):
        corrupt = self.state_file.with_suffix('.corrupt')
        try:
            self.state_file.replace(corrupt)
            self.logger.warning(f"Corrupt state kept as {corrupt.name}")
        except OSError as e:
            self.logger.error(f"Could not move corrupt state file aside: {e}")

    def save(self) -> bool:
        """
        Save state to disk with error handling and backup.

        Returns: True if successful, False otherwise
        """
        try:
            save_json(self.state_file, self.state)
            return True
        except Exception as e:
            self.logger.error(f"CRITICAL: Failed to save state: {e}", exc_info=True)
            try:
                save_json(self.backup_file, self.state)
                self.logger.warning(f"Saved to backup file: {self.backup_file}")
            except Exception as backup_error:
                self.logger.error(f"Backup save also failed: {backup_error}")
            return False

    # ---------- participants ----------

    def load_participants(self) -> List[dict]:
        return [copy.deepcopy(p) for p in self.state["participants"].values()]

    def get_participant(self, user_id) -> Optional[dict]:
        record = self.state["participants"].get(str(user_id))
        return copy.deepcopy(record) if record else None

    def save_participant(self, record: dict) -> dict:
        """Insert or update a participant (keyed by user_id)"""
        user_id = str(record.get("user_id") or "")
        if not user_id:
            raise ValueError("Participant record needs a user_id")
        existing = self.state["participants"].get(user_id, {})
        merged = {**existing, **record, "user_id": user_id}
        self.state["participants"][user_id] = merged
        self.save()
        return copy.deepcopy(merged)

    def remove_participant(self, user_id) -> bool:
        """
        Remove a participant and every match they are part of.

        If they were in the pending draw, the whole pending set is dropped:
        removing one pair leaves someone without a santa and someone without
        a giftee, so the draw has to be redone.
        """
        user_id = str(user_id)
        removed = self.state["participants"].pop(user_id, None) is not None

        in_pending = any(
            m.get("is_pending") and user_id in (m["santa_id"], m["giftee_id"])
            for m in self.state["matches"]
        )
        before = len(self.state["matches"])
        self.state["matches"] = [
            m for m in self.state["matches"]
            if not (in_pending and m.get("is_pending"))
            and m["santa_id"] != user_id and m["giftee_id"] != user_id
        ]
        dropped = before - len(self.state["matches"])
        if in_pending:
            self.logger.warning(f"{user_id} left during review, pending matches cleared ({dropped} dropped)")
        elif dropped:
            self.logger.info(f"Removed {dropped} match(es) involving {user_id}")
        self.save()
        return removed

    def load_match_pool(self) -> List[Participant]:
        """Eligible main-pool participants, ready for match_all"""
        return [to_participant(r) for r in self.state["participants"].values() if is_eligible(r)]

    def load_substitutes(self) -> List[dict]:
        return [
            copy.deepcopy(r) for r in self.state["participants"].values()
            if r.get("is_substitute") in ("yes", "only_sub")
        ]

    def mark_assignment_received(self, user_id):
        record = self.state["participants"].get(str(user_id))
        if record is None:
            return
        record["received_assignment"] = True
        self.save()

    # ---------- matches ----------

    def save_pending_matches(self, matches: List[Match]):
        """Replace all pending matches with a fresh set"""
        now = utcnow().isoformat()
        kept = [m for m in self.state["matches"] if not m.get("is_pending")]
        pending = [
            {
                "santa_id": m.sender_id,
                "giftee_id": m.receive_id,
                "matched_at": now,
                "is_pending": True,
                "forced": m.forced,
            }
            for m in matches
        ]
        self.state["matches"] = kept + pending
        self.save()

    def get_pending_matches(self) -> List[dict]:
        return [dict(m) for m in self.state["matches"] if m.get("is_pending")]

    def get_approved_matches(self) -> List[dict]:
        return [dict(m) for m in self.state["matches"] if not m.get("is_pending")]

    def pending_problems(self) -> List[str]:
        """
        Reasons the pending draw no longer fits the current pool.

        Empty when every pool member gives and receives exactly once and
        every pending santa/giftee is still signed up.
        """
        pending = self.get_pending_matches()
        participants = self.state["participants"]
        pool_ids = [p.id for p in self.load_match_pool()]
        santas = [m["santa_id"] for m in pending]
        giftees = [m["giftee_id"] for m in pending]

        def name(uid):
            record = participants.get(uid) or {}
            return record.get("discord_name") or record.get("username") or uid

        problems = []
        for uid in dict.fromkeys(santas + giftees):
            if uid not in participants:
                problems.append(f"{uid} is no longer signed up")
        for uid in pool_ids:
            gives, gets = santas.count(uid), giftees.count(uid)
            if gives != 1:
                problems.append(f"{name(uid)} has no giftee" if not gives else f"{name(uid)} is santa {gives} times")
            if gets != 1:
                problems.append(f"{name(uid)} has no santa" if not gets else f"{name(uid)} has {gets} santas")
        return problems

    def approve_matches(self) -> int:
        """
        Promote pending matches to approved.

        A new approval replaces any previously approved set. Returns the
        number of approved matches.
        """
        pending = self.get_pending_matches()
        if not pending:
            return 0

        for record in self.state["participants"].values():
            record["matched_with"] = None

        approved = []
        for match in pending:
            match["is_pending"] = False
            approved.append(match)
            santa = self.state["participants"].get(match["santa_id"])
            if santa is not None:
                santa["matched_with"] = match["giftee_id"]
                santa["received_assignment"] = False

        self.state["matches"] = approved
        settings = self.state["settings"]
        settings["matched"] = True
        settings["matched_at"] = utcnow().isoformat()
        settings["matches_approved"] = True
        settings["last_reminder_day"] = None
        self.save()
        return len(approved)

    # ---------- settings ----------

    def get_settings(self) -> dict:
        return copy.deepcopy(self.state["settings"])

    def update_settings(self, **changes) -> dict:
        for key, value in changes.items():
            if isinstance(value, dt.datetime):
                value = value.isoformat()
            self.state["settings"][key] = value
        self.save()
        return self.get_settings()

    # ---------- temp signup data ----------

    def set_temp_signup_data(self, user_id, data: dict, now: Optional[dt.datetime] = None):
        now = now or utcnow()
        self.state["temp_signups"][str(user_id)] = {
            **data,
            "expires_at": (now + TEMP_SIGNUP_TTL).isoformat(),
        }
        self.save()

    def get_temp_signup_data(self, user_id, now: Optional[dt.datetime] = None) -> Optional[dict]:
        now = now or utcnow()
        entry = self.state["temp_signups"].get(str(user_id))
        if entry is None:
            return None
        expires_at = parse_datetime(entry.get("expires_at"))
        if expires_at is None or expires_at <= now:
            self.state["temp_signups"].pop(str(user_id), None)
            self.save()
            return None
        return dict(entry)

    def clear_temp_signup_data(self, user_id):
        if self.state["temp_signups"].pop(str(user_id), None) is not None:
            self.save()

    # ---------- blacklist ----------

    def is_blacklisted(self, user_id=None, username: str = None, discord_name: str = None) -> bool:
        """
        Check a user against the default and configured blacklists.

        Exact matches on id/username/display name count, as do substring
        hits inside the username or display name.
        """
        blacklist = DEFAULT_BLACKLIST + list(self.state["settings"].get("blacklisted_users") or [])
        user_key = str(user_id).lower() if user_id is not None else None
        username_lower = username.lower() if username else None
        discord_lower = discord_name.lower() if discord_name else None

        for blocked in blacklist:
            blocked_lower = str(blocked).lower()
            if blocked_lower in (user_key, username_lower, discord_lower):
                return True
            if username_lower and blocked_lower in username_lower:
                return True
            if discord_lower and blocked_lower in discord_lower:
                return True
        return False

    def add_to_blacklist(self, name: str) -> bool:
        blacklist = self.state["settings"].setdefault("blacklisted_users", [])
        if any(str(b).lower() == name.lower() for b in blacklist):
            return False
        blacklist.append(name)
        self.save()
        return True

    def remove_from_blacklist(self, name: str) -> bool:
        blacklist = self.state["settings"].setdefault("blacklisted_users", [])
        remaining = [b for b in blacklist if str(b).lower() != name.lower()]
        if len(remaining) == len(blacklist):
            return False
        self.state["settings"]["blacklisted_users"] = remaining
        self.save()
        return True
