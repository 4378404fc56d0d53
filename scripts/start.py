"""Production startup script for the effectiveness analyzer.

Usage:
    python scripts/start.py           # migrate, then serve the API
    python scripts/start.py worker    # run the RQ worker (periodic stale run sweep)
"""

import os
import signal
import subprocess
import sys


def run_migrations() -> bool:
    """Run database migrations before starting the app."""
    print("Running database migrations...")
    try:
        result = subprocess.run(
            ["alembic", "upgrade", "head"],
            check=True,
            capture_output=True,
            text=True,
        )
    except subprocess.CalledProcessError as e:
        print(f"Migration failed: {e.stderr}")
        return False
    print(result.stdout)
    print("Migrations complete.")
    return True


def start_api() -> None:
    """Start the FastAPI application with uvicorn.

    Analyses run as tasks inside the API process, so a single worker
    process keeps every run's live progress in one registry.
    """
    port = os.getenv("PORT", "8000")
    host = os.getenv("API_HOST", "0.0.0.0")

    print(f"Starting API server on {host}:{port}...")
    os.execvp(
        "uvicorn",
        [
            "uvicorn",
            "api.main:app",
            "--host",
            host,
            "--port",
            port,
            "--workers",
            "1",
            "--proxy-headers",
            "--forwarded-allow-ips",
            "*",
        ],
    )


def start_worker() -> None:
    """Replace this process with the RQ worker."""
    print("Starting worker...")
    os.execvp(sys.executable, [sys.executable, "-m", "worker.main"])


def signal_handler(signum: int, _frame: object) -> None:
    """Handle shutdown signals gracefully."""
    print(f"Received signal {signum}, shutting down...")
    sys.exit(0)


def main() -> None:
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    role = sys.argv[1] if len(sys.argv) > 1 else "api"
    if role == "worker":
        start_worker()
        return

    if os.getenv("RUN_MIGRATIONS", "true").lower() == "true" and not run_migrations():
        print("Migration failed, but continuing with startup...")
    start_api()


if __name__ == "__main__":
    main()
