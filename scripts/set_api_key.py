#!/usr/bin/env python3
"""Store the telemetry API key in the OS keyring under the configured secret name."""

from getpass import getpass
from pathlib import Path
import sys

PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from keyring.errors import KeyringError  # noqa: E402

from beacon.secrets import set_secret  # noqa: E402
from beacon.settings import get_setting, load_settings  # noqa: E402


def main() -> int:
    name = get_setting(load_settings(), "transport.api_key_secret") or "BEACON_API_KEY"
    value = getpass(f"{name}: ").strip()
    if not value:
        print("Empty key, nothing stored.")
        return 1
    try:
        set_secret(name, value)
    except KeyringError as e:
        print(f"Keyring unavailable ({e}); put {name}=... in .env instead.", file=sys.stderr)
        return 1
    print(f"Stored {name} in keyring.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
