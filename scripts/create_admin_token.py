#!/usr/bin/env python3
"""
Issue an admin JWT for local use.

Run (from the project root):
    python scripts/create_admin_token.py
    python scripts/create_admin_token.py --user-id 3f0c... --minutes 60
"""
import sys
import uuid
import argparse
from pathlib import Path

# Add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


def main() -> int:
    parser = argparse.ArgumentParser(description="Create an admin bearer token")
    parser.add_argument("--user-id", type=uuid.UUID, default=None, help="Admin user id (random if omitted)")
    parser.add_argument("--minutes", type=int, default=None, help="Token lifetime in minutes")
    args = parser.parse_args()

    from app.core.auth import create_access_token

    user_id = args.user_id or uuid.uuid4()
    print(f"user_id: {user_id}")
    print(create_access_token(user_id, expires_minutes=args.minutes))
    return 0


if __name__ == "__main__":
    sys.exit(main())
