#!/usr/bin/env python3
"""
Bank Ledger Entry Point

Starts the FastAPI server with the configured storage backend.
"""

import sys

from bank_ledger.api import run_server
from bank_ledger.config import get_config


if __name__ == "__main__":
    settings = get_config()
    print("Starting Bank Ledger...")
    print(f"Storage backend: {settings.storage_backend}")
    print(f"API available at: http://{settings.api_host}:{settings.api_port}")
    print(f"Documentation at: http://{settings.api_host}:{settings.api_port}/docs")
    print()

    try:
        run_server()
    except KeyboardInterrupt:
        print("\nShutting down Bank Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
