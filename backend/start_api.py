#!/usr/bin/env python3
"""
CAPI Outbox API Startup Script

Starts the FastAPI server that exposes the outbox process, health and per-event
operator endpoints. Run from the backend/ directory.
"""

import sys
from pathlib import Path

import uvicorn


def main():
    """Start the CAPI outbox API server."""
    print("🚀 Starting CAPI Outbox API Server...")
    print("📊 Endpoints:")
    print("   ✅ POST /capi/outbox/process")
    print("   ✅ GET  /capi/health")
    print("   ✅ POST /capi/events/{id}/dry-run | requeue | resend")
    print("")
    print("📖 Documentation will be available at:")
    print("   🌐 Swagger UI:  http://localhost:8000/docs")
    print("   📚 ReDoc:       http://localhost:8000/redoc")
    print("")

    env_file = Path(".env")
    if not env_file.exists():
        print("⚠️  WARNING: No .env file found!")
        print("   Create a .env file with these variables:")
        print("   DATABASE_URL=postgresql://...")
        print("   JWT_SECRET=your-secret-key-here")
        print("   TOKEN_ENCRYPTION_KEY=<urlsafe base64, 32 bytes>")
        print("   CRON_SECRET=your-scheduler-secret")
        print("")

    try:
        uvicorn.run(
            "app.main:app",
            host="0.0.0.0",
            port=8000,
            reload=True,
            reload_dirs=["app"],
            log_level="info"
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down CAPI outbox API server...")
    except Exception as e:
        print(f"❌ Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
