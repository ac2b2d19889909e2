"""
Test that all Secret Santa modules can be imported correctly
Simulates how the bot loads the modules as a package
"""

import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


def test_imports():
    """Test all module imports"""
    errors = []

    print("Testing module imports...")
    print("=" * 60)

    modules = {
        "secret_santa_matching": ["match_all", "attempt_match", "can_match", "InsufficientParticipants"],
        "secret_santa_storage": ["SecretSantaStore", "load_json", "save_json", "get_default_state"],
        "secret_santa_schedule": ["reminder_due", "signups_should_close", "parse_deadline"],
        "secret_santa_checks": ["mod_check", "admin_check", "participant_check"],
        "secret_santa_views": ["SignupModal", "PendingMatchesView", "build_assignment_embed"],
        "SecretSanta_cog": ["SecretSantaCog", "setup"],
    }
    for name, attrs in modules.items():
        try:
            module = __import__(f"cogs.{name}", fromlist=attrs)
            missing = [a for a in attrs if not hasattr(module, a)]
            if missing:
                errors.append(f"{name}: missing {missing}")
                print(f"[FAIL] {name} missing {missing}")
            else:
                print(f"[OK] {name} imports OK")
        except Exception as e:
            errors.append(f"{name}: {e}")
            print(f"[FAIL] {name}: {e}")

    # Matching must stay free of storage/Discord imports
    print("\n" + "=" * 60)
    print("Checking for circular dependencies...")
    import cogs.secret_santa_matching as matching
    for forbidden in ("SecretSantaStore", "disnake"):
        if hasattr(matching, forbidden):
            errors.append(f"matching module imports {forbidden}")
            print(f"[FAIL] matching imports {forbidden}")

    print("\n" + "=" * 60)
    if errors:
        print(f"[FAIL] {len(errors)} import error(s) found:")
        for error in errors:
            print(f"   - {error}")
    else:
        print("[SUCCESS] All imports successful!")

    assert not errors


if __name__ == "__main__":
    test_imports()
