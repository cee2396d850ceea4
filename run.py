#!/usr/bin/env python3
"""
Lending Ledger Entry Point

Starts the FastAPI server using the host and port from configuration.
"""

import sys

import uvicorn

from lending_ledger.config import get_config
from lending_ledger.logging_config import configure_logging


if __name__ == "__main__":
    config = get_config()
    logger = configure_logging(config)

    print("🏦 Starting Lending Ledger...")
    print(f"💰 Ledger currency: {config.currency}")
    print(f"🗄️  Storage: {config.database_url}")
    print(f"🌐 API available at: http://localhost:{config.api_port}")
    print(f"📚 Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        uvicorn.run(
            "lending_ledger.api:create_app",
            factory=True,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower()
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down Lending Ledger...")
    except Exception as e:
        logger.error(f"Error starting server: {e}")
        sys.exit(1)
