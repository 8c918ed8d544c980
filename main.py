#!/usr/bin/env python3
"""
Keycloak Migration Tool

- Multi-hop upgrades with checkpoints, backups and automatic rollback
- In-place, rolling, blue-green and canary rollouts, optionally per tenant

This script runs directly from a source checkout that uses the src/
layout by adding the local `src/` directory to sys.path. For production
use, prefer installing the project and using the provided console script.

Examples:
  python3 main.py plan --profile prod
  python3 main.py migrate --profile prod --dry-run
  python3 main.py migrate --profile prod --monitor
  python3 main.py rollback 25.0.6 --profile prod
"""

import os
import sys

# Add src/ to path to import modules directly
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
