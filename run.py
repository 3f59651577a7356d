#!/usr/bin/env python3
"""
Ledger Consistency Engine Entry Point

Starts the FastAPI server with the host and port from LEDGER_* settings.
"""

import sys

from ledger_engine.api import run_server
from ledger_engine.config import get_config
from ledger_engine.logging_config import setup_logging


if __name__ == "__main__":
    config = get_config()
    setup_logging(config.log_level, log_format=config.log_format, log_file=config.log_file)

    print("Starting Ledger Consistency Engine...")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")

    try:
        run_server(host=config.api_host, port=config.api_port)
    except KeyboardInterrupt:
        print("\nShutting down Ledger Consistency Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
