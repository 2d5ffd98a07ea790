#!/usr/bin/env python3
"""
Reset persisted telemetry state: pending queue, sequence counter and opt-out flag.
Run from project root or any directory; paths are resolved relative to this script.
"""

from pathlib import Path
import sys

# Make project imports available when executing as: python scripts/reset_state.py
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from beacon.settings import get_setting, load_settings  # noqa: E402

# SQLite keeps WAL side files next to the database.
_SIDE_SUFFIXES = ("", "-wal", "-shm")


def confirm() -> bool:
    """Prompt until user enters Y (proceed) or n (abort). Returns True only for Y, False for n."""
    while True:
        answer = input("Pending telemetry will be lost. Are you sure? [Y/n]: ").strip().lower()
        if answer in ("y", "yes"):
            return True
        if answer in ("n", "no"):
            return False


def state_files(root: Path, settings: dict) -> list[Path]:
    """Files holding persisted state for the configured SQLite store."""
    db_path = Path(get_setting(settings, "storage.db_path", "data/beacon_state.db"))
    if not db_path.is_absolute():
        db_path = root / db_path
    return [db_path.with_name(db_path.name + suffix) for suffix in _SIDE_SUFFIXES]


def main() -> int:
    if not confirm():
        print("Aborted.")
        return 0

    settings = load_settings()
    if get_setting(settings, "storage.backend") != "sqlite":
        print("Storage backend is not sqlite; nothing to remove.")
        return 0

    removed = 0
    errors: list[tuple[Path, OSError]] = []
    for path in state_files(PROJECT_ROOT, settings):
        if not path.exists():
            print(f"Skip (not found): {path}")
            continue
        try:
            path.unlink()
            print(f"Removed: {path}")
            removed += 1
        except OSError as e:
            errors.append((path, e))
            print(f"Error removing {path}: {e}", file=sys.stderr)

    if errors:
        print(f"\n{len(errors)} file(s) could not be removed.", file=sys.stderr)
        return 1
    print(f"\nDone. Removed {removed} file(s).")
    return 0


if __name__ == "__main__":
    sys.exit(main())
