#!/usr/bin/env python3
"""
Generate a cryptographically secure ADMIN_TOKEN.

Usage:
    python scripts/generate_token.py              # Generate default 32-byte token
    python scripts/generate_token.py 48           # Generate 48-byte token
    python scripts/generate_token.py --env        # Output as .env format

Example output:
    ADMIN_TOKEN=Yx8kL2mN9pQ4rS6tU0vW3xZ5aB7cD1eF
"""
import secrets
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from app.transport.security import validate_token_strength  # noqa: E402


def generate_token(length: int = 32) -> str:
    """URL-safe random token that passes the start-up strength check."""
    while True:
        token = secrets.token_urlsafe(length)
        if not validate_token_strength(token):
            return token


def main():
    length = 32
    env_format = False

    for arg in sys.argv[1:]:
        if arg == "--env":
            env_format = True
        elif arg.isdigit():
            length = int(arg)
        elif arg in ("--help", "-h"):
            print(__doc__)
            return

    token = generate_token(length)
    print(f"ADMIN_TOKEN={token}" if env_format else token)


if __name__ == "__main__":
    main()
