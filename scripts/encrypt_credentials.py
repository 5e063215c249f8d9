#!/usr/bin/env python3
"""
Encrypt plaintext gateway credentials stored in system_settings.

Values that already look like an encryption envelope are skipped, so the
script is safe to run repeatedly.

Usage:
    python scripts/encrypt_credentials.py
"""

import asyncio
import os
import sys

# Add the project root to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.config.constants import SENSITIVE_SETTING_KEYS
from src.database.connection import engine
from src.services.settings_service import SettingsService
from src.shared.encryption import encryption_service


async def main() -> int:
    print("=" * 80)
    print("ENCRYPT STORED CREDENTIALS SCRIPT")
    print("=" * 80)
    print()

    if not encryption_service.test_encryption():
        print("❌ Encryption self-test failed. Check ENCRYPTION_KEY in your environment.")
        return 1

    try:
        report = await SettingsService().encrypt_existing(SENSITIVE_SETTING_KEYS)
    except Exception as e:
        print(f"❌ An unexpected error occurred during the script execution: {e}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        await engine.dispose()

    for key in report["encrypted"]:
        print(f"    ✅ Encrypted {key}")
    for key in report["skipped"]:
        print(f"    ✔️  {key} already encrypted or empty")
    for key in report["failed"]:
        print(f"    ❌ Failed to encrypt {key}")

    print()
    print(f"Encrypted: {len(report['encrypted'])}, skipped: {len(report['skipped'])}, failed: {len(report['failed'])}")
    print("=" * 80)
    return 1 if report["failed"] else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
