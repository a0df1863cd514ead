#!/usr/bin/env python3
"""
Custody Ledger Entry Point

Starts the FastAPI server with the custody ledger.
"""

import sys

from custody_ledger.api import run_server
from custody_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Custody Ledger...")
    print(f"Withdrawal threshold: {config.withdrawal_threshold}")
    print(f"Bank cap: {config.bank_cap}")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Custody Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
