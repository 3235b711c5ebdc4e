"""Main entry point for the school chat core."""

import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

from chat_core.api import create_fastapi_app
from chat_core.config import DEFAULT_LOG_PATH
from chat_core.logging_config import setup_logging
from sim import Sim


def main():
    """Run the application."""
    project_root = Path(__file__).resolve().parent.parent
    load_dotenv(project_root / ".env")

    # Get configuration from environment
    api_host = os.getenv("API_HOST", "localhost")
    api_port = int(os.getenv("API_PORT", "8000"))
    log_level = os.getenv("LOG_LEVEL", "INFO")

    setup_logging(log_level=log_level, log_file=str(DEFAULT_LOG_PATH))

    # Create SIM instance; the backend is injected on startup
    sim = Sim()

    # Set SIM instance for control router
    from chat_core.api.routes import control
    control.set_sim_instance(sim)

    # Create FastAPI app
    app = create_fastapi_app()

    # Run with uvicorn
    uvicorn.run(
        app,
        host=api_host,
        port=api_port,
        log_level=log_level.lower(),
    )


if __name__ == "__main__":
    main()
