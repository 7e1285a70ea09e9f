#!/usr/bin/env python3
"""
Ledger Service Entry Point

Starts the FastAPI server with the ledger system configured from the
environment (see ledger_service/config.py).
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from ledger_service.api import run_server
from ledger_service.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Banking Ledger Service...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Banking Ledger Service...")
