#!/usr/bin/env python3
"""
Run the portfolio sync API with uvicorn.
"""

import argparse
import sys
from pathlib import Path

# Load environment variables from .env file first
import dotenv
dotenv.load_dotenv()

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn


def main():
    parser = argparse.ArgumentParser(description='Run the portfolio sync API server')
    parser.add_argument('--host', default='127.0.0.1', help='Interface to bind (default: 127.0.0.1)')
    parser.add_argument('--port', type=int, default=8000, help='Port to listen on (default: 8000)')
    parser.add_argument('--reload', action='store_true', help='Reload on code changes (development)')
    args = parser.parse_args()

    from portfolio.core.config import validate_config

    issues = validate_config()
    for issue in issues:
        print(f"⚠️  {issue}")

    try:
        uvicorn.run("portfolio.api.main:app", host=args.host, port=args.port, reload=args.reload)
    except KeyboardInterrupt:
        print("\nℹ️  Server stopped")
    return 0


if __name__ == "__main__":
    sys.exit(main())
