#!/usr/bin/env python3
"""
Operator Token Script
Issues a bearer token for the Placement Guard admin API.

Operators normally get tokens from the platform's admin login; use this for
local development, support access and cron jobs that call /admin routes.

Usage:
    python -m scripts.issue_operator_token <user_id> <email> [role] [hours]

Example:
    python -m scripts.issue_operator_token ops-1 ops@example.com operator 8
"""
import sys
import os

# Add the parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from placement_guard.auth import ACCESS_TOKEN_EXPIRE_HOURS, create_access_token
from placement_guard.config import OPERATOR_ROLES


def main():
    if len(sys.argv) < 3 or len(sys.argv) > 5:
        print(__doc__)
        sys.exit(1)

    user_id = sys.argv[1]
    email = sys.argv[2]
    role = sys.argv[3] if len(sys.argv) > 3 else "operator"
    hours = int(sys.argv[4]) if len(sys.argv) > 4 else ACCESS_TOKEN_EXPIRE_HOURS

    # Basic validation
    if "@" not in email:
        print("Error: Invalid email format.")
        sys.exit(1)

    if role not in OPERATOR_ROLES:
        print(f"Error: Role must be one of: {', '.join(sorted(OPERATOR_ROLES))}")
        sys.exit(1)

    token = create_access_token(user_id, email, role=role, expire_hours=hours)

    print(f"Token issued for {email} ({role}), valid {hours}h:")
    print(token)


if __name__ == "__main__":
    main()
