#!/usr/bin/env python3
"""
Cycle Ledger Entry Point

Starts the FastAPI server with the cycle ledger and loop simulator.
Host, port, storage and logging come from CYCLE_LEDGER_* settings.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from cycle_ledger.api import run_server
from cycle_ledger.config import get_config
from cycle_ledger.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, config.log_format, config.log_file)

    print("Starting Cycle Ledger...")
    print(f"Storage: {config.database_url}")
    print("All financial calculations use Decimal precision")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(
            host=config.api_host,
            port=config.api_port,
            debug=False,
            log_level=config.log_level
        )
    except KeyboardInterrupt:
        print("\nShutting down Cycle Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
