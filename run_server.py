#!/usr/bin/env python
"""
Server Entry Point

Usage:
    Development:  python run_server.py --dev
    Production:   python run_server.py
"""

import argparse
import os

import uvicorn


def run_dev_server(port: int):
    """Run development server with auto-reload."""
    uvicorn.run(
        "rollup_engine.main:app",
        host="0.0.0.0",
        port=port,
        reload=True,
        reload_dirs=["rollup_engine"],
        log_level="debug",
        access_log=True,
    )


def run_prod_server(port: int):
    """
    Run production server with Uvicorn directly.

    A single worker: the refresh scheduler runs inside the API process and
    more workers would each start their own polling loop.
    """
    uvicorn.run(
        "rollup_engine.main:app",
        host="0.0.0.0",
        port=port,
        workers=1,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
        access_log=True,
        proxy_headers=True,
        forwarded_allow_ips="*",
        server_header=False,
        date_header=True,
    )


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Financial Rollup API Server")
    parser.add_argument(
        "--dev",
        action="store_true",
        help="Run in development mode with auto-reload"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=int(os.getenv("PORT", 8000)),
        help="Port to run on (default: 8000)"
    )

    args = parser.parse_args()

    if args.dev:
        print("Starting development server...")
        run_dev_server(args.port)
    else:
        print("Starting production server with Uvicorn...")
        run_prod_server(args.port)
