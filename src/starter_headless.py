#!/usr/bin/env python3
"""
Exam Prep Engine - Headless Launcher
Starts the FastAPI backend under uvicorn and, optionally, a loop that
processes due agent schedule entries.
"""

import sys
import socket
import argparse
import threading
import uvicorn
from pathlib import Path

# Add src to path
SRC_PATH = Path(__file__).parent
sys.path.insert(0, str(SRC_PATH))
sys.path.insert(0, str(SRC_PATH.parent))

from src.core.exceptions import ExamPrepException
from src.core.services.logging import get_logger


def find_free_port(start_port: int = 8000) -> int:
    """Find a free port starting from start_port using bind()."""
    port = start_port
    while port < 65535:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
                s.bind(("127.0.0.1", port))
                return port
        except OSError:
            port += 1
    return start_port


def run_schedule_loop(interval_seconds: int, stop: threading.Event):
    """Sweep due schedule entries until stopped."""
    from src.core.services.agent_scheduler import get_agent_scheduler

    logger = get_logger("starter")
    while not stop.wait(interval_seconds):
        try:
            processed = get_agent_scheduler().process_due()
            if processed:
                logger.info("schedule_sweep", processed=len(processed))
        except ExamPrepException as e:
            logger.error("schedule_sweep_failed", error=str(e))
        except Exception as e:
            # Keep sweeping; the next tick retries whatever is still due
            logger.exception("schedule_sweep_crashed", error=str(e))


def main():
    parser = argparse.ArgumentParser(description="Run the Exam Prep Engine API")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument(
        "--sweep-seconds",
        type=int,
        default=60,
        help="Seconds between schedule sweeps; 0 disables the sweep loop",
    )
    args = parser.parse_args()

    port = find_free_port(args.port)
    print(f"Exam Prep Engine - starting server on http://localhost:{port}")

    stop = threading.Event()
    if args.sweep_seconds > 0:
        sweeper = threading.Thread(
            target=run_schedule_loop, args=(args.sweep_seconds, stop), daemon=True
        )
        sweeper.start()

    try:
        uvicorn.run(
            "src.api.main:app",
            host="127.0.0.1",
            port=port,
            log_level="info",
            reload=False,
        )
    except KeyboardInterrupt:
        print("\nStopping...")
    finally:
        stop.set()


if __name__ == "__main__":
    main()
