"""
Run the approval expiration worker.

Usage:
    python run.py
    python run.py --interval 30   # Sweep every 30 seconds
    python run.py --once          # Single sweep, then exit
"""
import argparse
import time

from docflow.main import runtime
from docflow.scheduler.expiration_scheduler import ExpirationScheduler


def main():
    parser = argparse.ArgumentParser(description="Run the docflow approval expiration worker")
    parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between sweeps (default: EXPIRATION_SWEEP_INTERVAL_SECONDS)"
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single sweep and exit"
    )
    
    args = parser.parse_args()
    
    with runtime(with_scheduler=False) as rt:
        worker = ExpirationScheduler(rt.engine, interval_seconds=args.interval)
        if args.once:
            print(worker.run_once())
            return
        
        print(f"Starting docflow expiration worker (every {worker.interval_seconds}s)...")
        worker.start()
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            pass
        finally:
            worker.stop()


if __name__ == "__main__":
    main()
