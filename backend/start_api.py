#!/usr/bin/env python3
"""
Stackcore Billing API Startup Script

Starts the FastAPI server for local development.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the billing API server."""
    print("Starting Stackcore Billing API...")
    print("   Swagger UI:  http://localhost:8000/docs")
    print("   ReDoc:       http://localhost:8000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("WARNING: No .env file found!")
        print("   Create a .env file with at least:")
        print("   DATABASE_URL=postgresql://...")
        print("   JWT_SECRET=your-secret-key-here")
        print("   STRIPE_API_KEY=sk_test_...")
        print("   STRIPE_WEBHOOK_SECRET=whsec_...")
        print("   STRIPE_API_BASE=http://localhost:12111  # optional, stripe-mock")
        print("")

    try:
        uvicorn.run(
            "stackcore.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["stackcore"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\nShutting down...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
