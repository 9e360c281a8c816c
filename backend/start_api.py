#!/usr/bin/env python3
"""
TripSync API Startup Script

Starts the TripSync FastAPI server for local development. The ARQ worker
(anonymization jobs, export purge) runs separately:

    python -m tripsync.workers.start_arq_worker
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the TripSync API server."""
    print("Starting TripSync API server...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    if not Path(".env").exists():
        print("WARNING: No .env file found!")
        print("   Run `python generate_keys.py` to create one from .env.example, or export:")
        print("   DATABASE_URL, JWT_SECRET, TOKEN_ENCRYPTION_KEY, ADMIN_API_KEY")
        print("")

    try:
        uvicorn.run(
            "tripsync.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["tripsync"],
            log_level="info",
        )
    except KeyboardInterrupt:
        print("\nShutting down TripSync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
