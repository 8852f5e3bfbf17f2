#!/usr/bin/env python3
"""
Loan Engine Entry Point

Starts the FastAPI server with the loan engine API.
"""

import sys

from loan_engine.api import run_server
from loan_engine.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Loan Engine...")
    print(f"Storage: {'in-memory' if config.use_in_memory_storage else config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Loan Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
