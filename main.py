#!/usr/bin/env python3
"""Unified entry point for MedLove Reminder Service.

Starts the API server, MCP server and background worker as subprocesses
and stops all of them if any one exits.
"""

import subprocess
import signal
import sys
import time
import os
from typing import List, Tuple

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'launcher.log')

# (label, script, extra environment)
SERVICES: List[Tuple[str, str, dict]] = [
    ("API server", "api_server.py", {}),
    ("MCP server", "mcp_server.py", {"MCP_TRANSPORT": "sse"}),
    ("Background worker", "background_worker.py", {}),
]

processes: List[subprocess.Popen] = []
shutdown_requested = False


def signal_handler(signum, frame):
    """Handle shutdown signals gracefully."""
    global shutdown_requested
    if shutdown_requested:
        logger.warning("Force shutdown requested")
        sys.exit(1)

    shutdown_requested = True
    logger.info(f"Received signal {signum}, initiating graceful shutdown...")
    shutdown_services()


def shutdown_services(exit_code: int = 0):
    """Stop all running services."""
    logger.info("Stopping all services...")
    for process in processes:
        if process.poll() is None:
            logger.info(f"Terminating process (PID: {process.pid})")
            process.terminate()

    # Wait for graceful termination (max 5 seconds per process)
    for process in processes:
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"Force killing process (PID: {process.pid})")
            process.kill()
            process.wait()

    logger.info("All services stopped")
    sys.exit(exit_code)


def start_service(label: str, script: str, extra_env: dict, cwd: str) -> subprocess.Popen:
    logger.info(f"Starting {label}...")
    env = os.environ.copy()
    env.update(extra_env)
    # Children share our console; their own loggers also write to LOG_DIR
    process = subprocess.Popen([sys.executable, script], cwd=cwd, env=env)
    processes.append(process)
    return process


def main():
    """Main entry point - start all services."""
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("=" * 60)
    logger.info("MedLove Reminder Service - Unified Startup")
    logger.info("=" * 60)

    current_dir = os.path.dirname(os.path.abspath(__file__))

    try:
        for label, script, extra_env in SERVICES:
            start_service(label, script, extra_env, current_dir)
            time.sleep(2)

        logger.info("=" * 60)
        logger.info("All services started successfully!")
        logger.info(f"  - API Server: http://{settings.API_HOST}:{settings.API_PORT}")
        logger.info(f"  - API Docs: http://{settings.API_HOST}:{settings.API_PORT}/docs")
        logger.info(f"  - MCP Server: http://{settings.MCP_HOST}:{settings.MCP_PORT}/sse")
        logger.info(f"  - Background Worker: every {settings.WORKER_CHECK_INTERVAL}s ({settings.TIMEZONE})")
        logger.info("=" * 60)

        # Stop everything if any service dies
        while not shutdown_requested:
            for (label, _, _), process in zip(SERVICES, processes):
                if process.poll() is not None:
                    logger.error(f"{label} (PID: {process.pid}) has stopped unexpectedly!")
                    shutdown_services(exit_code=1)
            time.sleep(5)

    except Exception as e:
        logger.error(f"Error starting services: {e}")
        shutdown_services(exit_code=1)


if __name__ == "__main__":
    main()
