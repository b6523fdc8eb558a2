#!/usr/bin/env python3
"""Media upload service launcher.

Starts gunicorn serving app:create_app() and waits until it answers.
"""

import argparse
import os
import signal
import subprocess
import sys
import time
import urllib.request

# ── Configuration ────────────────────────────────────────────
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 5000
PID_FILE = os.path.join(PROJECT_DIR, ".gunicorn.pid")

gunicorn_proc: subprocess.Popen | None = None


def log(msg: str) -> None:
    print(f"[media-upload] {msg}", flush=True)


def port_in_use(host: str, port: int) -> bool:
    """Check if a port is already in use."""
    import socket

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex((host, port)) == 0


def wait_for_server(health_url: str, timeout: int = 15) -> bool:
    """Poll the health URL until the server responds or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        try:
            urllib.request.urlopen(health_url, timeout=1)
            return True
        except OSError:
            pass
        # Check if gunicorn died
        if gunicorn_proc and gunicorn_proc.poll() is not None:
            return False
        time.sleep(0.5)
    return False


def shutdown(_signum: int = 0, _frame: object = None) -> None:
    """Gracefully stop gunicorn."""
    print()
    log("Shutting down...")
    if gunicorn_proc and gunicorn_proc.poll() is None:
        gunicorn_proc.terminate()
        try:
            gunicorn_proc.wait(timeout=10)
        except subprocess.TimeoutExpired:
            gunicorn_proc.kill()
    if os.path.exists(PID_FILE):
        os.remove(PID_FILE)
    log("Stopped.")
    sys.exit(0)


def main() -> None:
    global gunicorn_proc

    parser = argparse.ArgumentParser(description="Run the media upload service")
    parser.add_argument("--host", default=DEFAULT_HOST)
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--threads", type=int, default=8)
    args = parser.parse_args()

    if port_in_use(args.host, args.port):
        log(f"Port {args.port} is already in use.")
        sys.exit(1)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    # Upload sessions and SSE queues live in process memory, so a single
    # worker process serves every request; concurrency comes from threads
    log(f"Starting gunicorn on {args.host}:{args.port}...")
    gunicorn_proc = subprocess.Popen(
        [
            sys.executable,
            "-m",
            "gunicorn",
            "--bind",
            f"{args.host}:{args.port}",
            "--workers",
            "1",
            "--threads",
            str(args.threads),
            "--timeout",
            "300",
            "--pid",
            PID_FILE,
            "--access-logfile",
            "-",
            "--error-logfile",
            "-",
            "app:create_app()",
        ],
        cwd=PROJECT_DIR,
    )

    log("Waiting for server...")
    if not wait_for_server(f"http://{args.host}:{args.port}/api/settings"):
        log("Server did not start. Check output above.")
        shutdown()

    log(f"Media upload service is running at http://{args.host}:{args.port}")
    log("Press Ctrl+C to stop the server.")

    try:
        gunicorn_proc.wait()
    except KeyboardInterrupt:
        shutdown()


if __name__ == "__main__":
    main()
