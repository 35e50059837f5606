#!/usr/bin/env python3
"""
Create a portfolio account from the command line.

The first owner account is the portfolio that guests see on the public pages.
"""

import argparse
import getpass
import sys
from pathlib import Path

import dotenv
dotenv.load_dotenv()

sys.path.insert(0, str(Path(__file__).parent.parent))

from portfolio.core.auth import create_user, derive_email
from portfolio.core.db import init_db


def main():
    parser = argparse.ArgumentParser(
        description="Create a portfolio account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s alice                    # Owner account, prompts for password
  %(prog)s bob --role guest         # Read-only account

Bare usernames sign in as <username>@portfolio.local unless --email is given.

Environment variables:
- DB_PATH=./data/portfolio.db (database file)
        """
    )
    parser.add_argument("username", help="Login name")
    parser.add_argument("--email", help="Email address (default: derived from username)")
    parser.add_argument("--role", choices=["owner", "guest"], default="owner", help="Account role (default: owner)")
    parser.add_argument("--password", help="Password (prompted when omitted)")
    args = parser.parse_args()

    password = args.password or getpass.getpass("Password: ")

    init_db()
    try:
        principal = create_user(args.username, password, role=args.role, email=args.email)
    except ValueError as e:
        print(f"❌ {e}")
        return 1

    print(f"✅ Created {principal.role} account '{principal.username}' ({args.email or derive_email(args.username)})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
