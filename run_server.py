#!/usr/bin/env python
"""
Server Entry Point

Usage:
    Development:  python run_server.py --dev
    Production:   python run_server.py
    Gunicorn:     python run_server.py --gunicorn
    Housekeeping: python run_server.py --maintenance
"""

import argparse
import asyncio
import os
import subprocess


def run_dev_server(port: int):
    """Run development server with auto-reload on the in-memory backend."""
    import uvicorn

    os.environ.setdefault("STORAGE_BACKEND", "memory")
    os.environ.setdefault("LOG_FORMAT", "text")
    uvicorn.run(
        "src.main:app",
        host="127.0.0.1",
        port=port,
        reload=True,
        reload_dirs=["src"],
        log_level="debug",
    )


def run_prod_server(port: int):
    """Run production server with Uvicorn directly."""
    import uvicorn
    from src.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "src.main:app",
        host=settings.api_host,
        port=port,
        workers=1 if settings.storage_backend == "memory" else settings.api_workers,
        log_level=settings.monitoring.log_level.lower(),
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
    )


def run_gunicorn(port: int):
    """Run with Gunicorn (recommended for production)."""
    env = dict(os.environ, API_PORT=str(port))
    subprocess.run(["gunicorn", "src.main:app", "-c", "gunicorn.conf.py"], env=env, check=True)


def run_maintenance():
    """Run one reservation maintenance pass and exit."""
    from workflows.maintenance import reservation_maintenance

    print(asyncio.run(reservation_maintenance()))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Checkout Inventory Core API Server")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--dev", action="store_true", help="Development mode with auto-reload")
    mode.add_argument("--gunicorn", action="store_true", help="Run under Gunicorn")
    mode.add_argument("--maintenance", action="store_true", help="Run one maintenance pass")
    parser.add_argument("--port", type=int, default=int(os.getenv("API_PORT", 8000)))

    args = parser.parse_args()

    if args.dev:
        print("🚀 Starting development server (memory storage)...")
        run_dev_server(args.port)
    elif args.gunicorn:
        print("🚀 Starting production server with Gunicorn...")
        run_gunicorn(args.port)
    elif args.maintenance:
        print("🧹 Running reservation maintenance...")
        run_maintenance()
    else:
        print("🚀 Starting production server with Uvicorn...")
        run_prod_server(args.port)
