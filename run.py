#!/usr/bin/env python3
"""
Retail Ledger Entry Point

Starts the FastAPI server with the ledger core.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from retail_ledger.api import run_server
from retail_ledger.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Retail Ledger...")
    print(f"API available at: http://{config.api_host}:{config.api_port}")
    print(f"Documentation at: http://{config.api_host}:{config.api_port}/docs")

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Retail Ledger...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
