#!/usr/bin/env python3
"""
Print a new ENCRYPTION_KEY for AES-256-GCM credential encryption.

Usage:
    python scripts/generate_encryption_key.py
"""

import os
import sys

# Add the project root to the Python path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from src.shared.encryption import EncryptionService


def main():
    key = EncryptionService.generate_key()

    print("=" * 80)
    print("NEW ENCRYPTION KEY")
    print("=" * 80)
    print()
    print(f"ENCRYPTION_KEY={key}")
    print()
    print("Add this line to your .env file.")
    print("⚠️  Keep it secret and back it up: values encrypted with it cannot be recovered without it.")
    print("⚠️  Changing the key makes every stored encrypted setting unreadable.")


if __name__ == "__main__":
    main()
