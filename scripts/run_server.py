#!/usr/bin/env python3
"""
API entrypoint - loads .env, initializes the database and serves the decision API.
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

from verdict.core.config import validate_config


def main():
    parser = argparse.ArgumentParser(description="Run the Verdict decision API")
    parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Reload on code changes")
    args = parser.parse_args()

    issues = validate_config()
    if issues:
        print("❌ Configuration invalid:")
        for issue in issues:
            print(f"   - {issue}")
        return 1

    uvicorn.run("verdict.api.main:app", host=args.host, port=args.port, reload=args.reload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
