"""
Secret Santa Storage Test Suite

Tests the JSON-backed store:
- Atomic save / load with backup fallback
- Participant upsert / removal (matches cascade)
- Eligibility filter for the match pool
- Pending → approved match flow
- Temp signup expiry
- Blacklist lookups

Run: python -m pytest tests/test_secret_santa_storage.py -v
"""

import datetime as dt
import json
import logging
import shutil
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from cogs.secret_santa_matching import Match
from cogs.secret_santa_storage import (
    SecretSantaStore, get_default_state, is_eligible, load_json, new_participant_record,
    save_json, to_participant, validate_state_structure,
)


@pytest.fixture
def store(tmp_path):
    return SecretSantaStore(tmp_path / "secret_santa_data.json")


def signup(store, user_id, name, links=("https://toyhou.se/char",), avoid=(), substitute="no"):
    record = new_participant_record(
        user_id, f"{name}_user", name,
        character_links=list(links), members_to_avoid=list(avoid), is_substitute=substitute,
    )
    return store.save_participant(record)


class TestJsonFiles:
    def test_save_and_load_roundtrip(self, tmp_path):
        path = tmp_path / "data.json"
        save_json(path, {"name": "Zoë", "links": [1, 2]})
        assert load_json(path) == {"name": "Zoë", "links": [1, 2]}
        assert not path.with_suffix(".tmp").exists()

    def test_missing_file_returns_default(self, tmp_path):
        assert load_json(tmp_path / "nope.json", {"default": True}) == {"default": True}

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(json.JSONDecodeError):
            load_json(path, {"ok": 1})


class TestStateStructure:
    def test_non_dict_state_replaced(self):
        assert validate_state_structure([]) == get_default_state()

    def test_missing_settings_filled_in(self):
        state = validate_state_structure({"participants": {}, "settings": {"signups_open": False}})
        assert state["settings"]["signups_open"] is False
        assert state["settings"]["blacklisted_users"] == []
        assert state["matches"] == []

    def test_malformed_matches_dropped(self):
        state = validate_state_structure({"matches": [{"santa_id": "1"}, "junk", {"santa_id": "1", "giftee_id": "2"}]})
        assert state["matches"] == [{"santa_id": "1", "giftee_id": "2"}]

    def test_store_reloads_saved_state(self, tmp_path):
        path = tmp_path / "state.json"
        first = SecretSantaStore(path)
        signup(first, 1, "alice")
        second = SecretSantaStore(path)
        assert second.get_participant("1")["discord_name"] == "alice"

    def test_store_repairs_invalid_participants(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text(json.dumps({"participants": "broken"}), encoding="utf-8")
        store = SecretSantaStore(path)
        assert store.state["participants"] == {}


class TestCorruptionRecovery:
    def _saved_with_backup(self, tmp_path):
        path = tmp_path / "state.json"
        store = SecretSantaStore(path)
        signup(store, 1, "alice")
        signup(store, 2, "bruno")
        shutil.copy(path, store.backup_file)
        return path, store.backup_file

    def test_corrupt_main_file_restores_backup(self, tmp_path, caplog):
        path, _ = self._saved_with_backup(tmp_path)
        path.write_text("{ this is not json", encoding="utf-8")

        with caplog.at_level(logging.ERROR, logger="bot.santa.storage"):
            store = SecretSantaStore(path)

        assert store.get_participant("1") is not None
        assert store.get_participant("2")["discord_name"] == "bruno"
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    def test_restored_state_survives_next_save(self, tmp_path):
        path, _ = self._saved_with_backup(tmp_path)
        path.write_text("{ this is not json", encoding="utf-8")

        store = SecretSantaStore(path)
        store.update_settings(signups_open=False)

        on_disk = json.loads(path.read_text(encoding="utf-8"))
        assert set(on_disk["participants"]) == {"1", "2"}
        assert path.with_suffix(".corrupt").read_text(encoding="utf-8") == "{ this is not json"

    def test_non_object_main_file_uses_backup(self, tmp_path):
        path, _ = self._saved_with_backup(tmp_path)
        path.write_text("[1, 2, 3]", encoding="utf-8")
        assert SecretSantaStore(path).get_participant("1") is not None

    def test_missing_main_file_uses_backup(self, tmp_path):
        path, _ = self._saved_with_backup(tmp_path)
        path.unlink()
        assert SecretSantaStore(path).get_participant("2") is not None

    def test_both_corrupt_falls_back_to_defaults(self, tmp_path, caplog):
        path, backup = self._saved_with_backup(tmp_path)
        path.write_text("{ broken", encoding="utf-8")
        backup.write_text("{ also broken", encoding="utf-8")

        with caplog.at_level(logging.ERROR, logger="bot.santa.storage"):
            store = SecretSantaStore(path)

        assert store.state == get_default_state()
        assert sum(r.levelno == logging.ERROR for r in caplog.records) >= 2


class TestParticipants:
    def test_upsert_keeps_existing_fields(self, store):
        signup(store, 1, "alice")
        store.save_participant({"user_id": "1", "content_to_avoid": "gore"})
        record = store.get_participant(1)
        assert record["discord_name"] == "alice"
        assert record["content_to_avoid"] == "gore"

    def test_record_requires_user_id(self, store):
        with pytest.raises(ValueError):
            store.save_participant({"username": "nobody"})

    def test_invalid_substitute_choice(self):
        with pytest.raises(ValueError):
            new_participant_record("1", "a", "a", is_substitute="maybe")

    def test_withdrawal_during_review_clears_pending_draw(self, store):
        for uid, name in ((1, "alice"), (2, "bruno"), (3, "carla"), (4, "diego")):
            signup(store, uid, name)
        store.save_pending_matches([Match("1", "2"), Match("2", "3"), Match("3", "4"), Match("4", "1")])
        assert store.remove_participant(3)
        assert store.get_participant(3) is None
        assert store.get_pending_matches() == []
        assert store.approve_matches() == 0

    def test_remove_cascades_approved_matches(self, store):
        for uid, name in ((1, "alice"), (2, "bruno"), (3, "carla")):
            signup(store, uid, name)
        store.save_pending_matches([Match("1", "2"), Match("2", "3"), Match("3", "1")])
        store.approve_matches()
        assert store.remove_participant(2)
        assert [(m["santa_id"], m["giftee_id"]) for m in store.get_approved_matches()] == [("3", "1")]

    def test_removing_unmatched_user_keeps_pending_draw(self, store):
        for uid, name in ((1, "alice"), (2, "bruno"), (3, "carla")):
            signup(store, uid, name)
        store.save_pending_matches([Match("1", "2"), Match("2", "1")])
        store.remove_participant(3)
        assert len(store.get_pending_matches()) == 2

    def test_returned_records_are_copies(self, store):
        signup(store, 1, "alice")
        record = store.get_participant(1)
        record["discord_name"] = "mallory"
        assert store.get_participant(1)["discord_name"] == "alice"


class TestMatchPool:
    def test_eligibility_rules(self):
        assert is_eligible({"user_id": "1", "character_links": ["x"], "is_substitute": "yes"})
        assert not is_eligible({"user_id": "1", "character_links": ["x"], "is_substitute": "only_sub"})
        assert not is_eligible({"user_id": "1", "character_links": []})
        assert not is_eligible({"character_links": ["x"]})

    def test_pool_and_substitutes(self, store):
        signup(store, 1, "alice")
        signup(store, 2, "bruno", substitute="yes")
        signup(store, 3, "carla", substitute="only_sub")
        signup(store, 4, "diego", links=())
        pool_ids = sorted(p.id for p in store.load_match_pool())
        sub_ids = sorted(r["user_id"] for r in store.load_substitutes())
        assert pool_ids == ["1", "2"]
        assert sub_ids == ["2", "3"]

    def test_to_participant_maps_names_and_avoid_list(self):
        record = new_participant_record("7", "bruno_user", "Bruno", character_links=["x"], members_to_avoid=["alice"])
        participant = to_participant(record)
        assert participant.id == "7"
        assert participant.display_name == "Bruno"
        assert participant.handle == "bruno_user"
        assert participant.exclude_list == ["alice"]
        assert participant.eligible


class TestMatches:
    def test_pending_replaced_on_redraw(self, store):
        store.save_pending_matches([Match("1", "2"), Match("2", "1")])
        store.save_pending_matches([Match("1", "3", forced=True)])
        pending = store.get_pending_matches()
        assert len(pending) == 1
        assert pending[0]["forced"] is True

    def test_approve_updates_participants_and_settings(self, store):
        signup(store, 1, "alice")
        signup(store, 2, "bruno")
        store.save_pending_matches([Match("1", "2"), Match("2", "1")])

        assert store.approve_matches() == 2
        assert store.get_pending_matches() == []
        assert len(store.get_approved_matches()) == 2
        assert store.get_participant(1)["matched_with"] == "2"
        assert store.get_participant(1)["received_assignment"] is False
        settings = store.get_settings()
        assert settings["matched"] and settings["matches_approved"]
        assert settings["matched_at"]

    def test_approve_without_pending(self, store):
        assert store.approve_matches() == 0
        assert store.get_settings()["matches_approved"] is False

    def test_pending_problems_empty_for_full_draw(self, store):
        for uid, name in ((1, "alice"), (2, "bruno"), (3, "carla")):
            signup(store, uid, name)
        store.save_pending_matches([Match("1", "2"), Match("2", "3"), Match("3", "1")])
        assert store.pending_problems() == []

    def test_pending_problems_after_late_signup(self, store):
        signup(store, 1, "alice")
        signup(store, 2, "bruno")
        store.save_pending_matches([Match("1", "2"), Match("2", "1")])
        signup(store, 3, "carla")
        assert store.pending_problems() == ["carla has no giftee", "carla has no santa"]

    def test_pending_problems_for_broken_draw(self, store):
        for uid, name in ((1, "alice"), (2, "bruno"), (3, "carla")):
            signup(store, uid, name)
        store.save_pending_matches([Match("1", "2"), Match("9", "3")])
        problems = store.pending_problems()
        assert "9 is no longer signed up" in problems
        assert "bruno has no giftee" in problems
        assert "carla has no giftee" in problems
        assert "alice has no santa" in problems

    def test_approval_resets_reminder_progress(self, store):
        signup(store, 1, "alice")
        signup(store, 2, "bruno")
        store.update_settings(last_reminder_day=0)
        store.save_pending_matches([Match("1", "2"), Match("2", "1")])
        store.approve_matches()
        assert store.get_settings()["last_reminder_day"] is None

    def test_mark_assignment_received(self, store):
        signup(store, 1, "alice")
        store.mark_assignment_received(1)
        assert store.get_participant(1)["received_assignment"] is True
        store.mark_assignment_received(999)  # unknown user is a no-op


class TestSettingsAndTempData:
    def test_update_settings_serializes_datetimes(self, store):
        deadline = dt.datetime(2025, 12, 1, 23, 59, tzinfo=dt.timezone.utc)
        settings = store.update_settings(signup_deadline=deadline, signups_open=False)
        assert settings["signup_deadline"] == deadline.isoformat()
        assert settings["signups_open"] is False

    def test_temp_signup_expires_after_thirty_minutes(self, store):
        start = dt.datetime(2025, 11, 1, 12, 0, tzinfo=dt.timezone.utc)
        store.set_temp_signup_data(1, {"username": "alice_user"}, now=start)
        assert store.get_temp_signup_data(1, now=start + dt.timedelta(minutes=29))["username"] == "alice_user"
        assert store.get_temp_signup_data(1, now=start + dt.timedelta(minutes=31)) is None
        assert "1" not in store.state["temp_signups"]

    def test_clear_temp_signup(self, store):
        store.set_temp_signup_data(1, {"username": "alice_user"})
        store.clear_temp_signup_data(1)
        assert store.get_temp_signup_data(1) is None


class TestBlacklist:
    def test_default_blacklist(self, store):
        assert store.is_blacklisted("123", "Bogoro", "Someone")

    def test_substring_in_display_name(self, store):
        assert store.is_blacklisted("123", "user", "xX_ellowwell_Xx")

    def test_configured_entries_and_ids(self, store):
        assert store.add_to_blacklist("555")
        assert not store.add_to_blacklist("555")
        assert store.is_blacklisted(555, "someone", "Someone")
        assert store.remove_from_blacklist("555")
        assert not store.remove_from_blacklist("555")
        assert not store.is_blacklisted(555, "someone", "Someone")

    def test_clean_user(self, store):
        assert not store.is_blacklisted("1", "alice_user", "Alice")
