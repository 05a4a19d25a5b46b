#!/usr/bin/env python3
"""
RowQueue - Relational job storage with queue fetching and expiration sweeping
"""
import argparse
import asyncio
import os
import sys

from bootstrap.app import Application


def create_app(env_file=".env", show_banner=True):
    """Create and return a new application instance."""
    return Application(env_file=env_file, show_banner=show_banner)

def create_env_file():
    """Create a default .env file if it doesn't exist."""
    if not os.path.exists(".env"):
        with open(".env", "w") as f:
            f.write("""# Database Configuration
# DB_URL takes precedence, e.g. sqlite+aiosqlite:///rowqueue.db
DB_URL=
DB_HOST=localhost
DB_PORT=3306
DB_NAME=rowqueue
DB_USER=root
DB_PASS=

# Queue Configuration
QUEUES=default
QUEUE_POLL_INTERVAL=15
QUEUE_POLL_MAX_INTERVAL=15
INVISIBILITY_TIMEOUT=1800

# Expiration Configuration
JOB_EXPIRATION_TIMEOUT=86400
JOB_EXPIRATION_CHECK_INTERVAL=3600
COUNTERS_AGGREGATE_INTERVAL=300
DELETE_BATCH_SIZE=1000
COUNTERS_AGGREGATE_BATCH_SIZE=1000

# Distributed Lock Configuration
LOCK_STALENESS=60
LOCK_TIMEOUT=30

# Logging Configuration
LOG_LEVEL=INFO
LOG_FORMAT=%(asctime)s - %(name)s - %(levelname)s - %(message)s
LOG_TO_FILE=false
LOG_FILE=logs/rowqueue.log
""")
        print("Created default .env file")

def migrate():
    """Create the storage tables."""
    app = create_app(show_banner=False)

    async def run_migrations():
        try:
            await app.initialize_database()
        finally:
            await app.cleanup()

    asyncio.run(run_migrations())
    print("Database tables created")

def sweep_once():
    """Run a single expiration pass and print what was removed."""
    from core.expiration_manager import ExpirationManager

    app = create_app(show_banner=False)

    async def run_sweep():
        try:
            removed = await ExpirationManager(app.options).run_exclusive()
        finally:
            await app.cleanup()
        if removed is None:
            print("Another sweeper holds the lock, nothing done")
            return
        for table, count in removed.items():
            print(f"{table}: {count} expired rows removed")

    asyncio.run(run_sweep())

def serve(queues=None, work=True, sweep=True, **worker_options):
    """Run the worker and/or the expiration manager until interrupted."""
    app = create_app()
    asyncio.run(app.serve(queues=queues, work=work, sweep=sweep, **worker_options))

def main():
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(description="RowQueue - relational job storage")
    parser.add_argument('--init', action='store_true', help="Write a default .env file")
    parser.add_argument('--migrate', action='store_true', help="Create the storage tables")
    parser.add_argument('--run', action='store_true', help="Run a queue worker and the expiration manager")
    parser.add_argument('--queue-work', action='store_true', help="Start queue worker to process background jobs")
    parser.add_argument('--sweep', action='store_true', help="Run the expiration manager loop")
    parser.add_argument('--once', action='store_true', help="With --sweep, run a single pass and exit")
    parser.add_argument('--queue', type=str, action='append',
                        help="Queue to process, repeat for several in priority order (default: QUEUES)")
    parser.add_argument('--max-jobs', type=int, help="Maximum number of jobs to process")
    parser.add_argument('--max-time', type=int, help="Maximum time in seconds to run")
    parser.add_argument('--max-tries', type=int, help="Maximum number of times to attempt a job")
    parser.add_argument('--timeout', type=int, default=60, help="Maximum seconds a job can run (default: 60)")

    args = parser.parse_args()

    if args.init:
        create_env_file()
        print("RowQueue project initialized successfully!")
        return

    if args.migrate:
        migrate()
        return

    worker_options = {
        "max_jobs": args.max_jobs,
        "max_time": args.max_time,
        "max_tries": args.max_tries,
        "timeout": args.timeout,
    }

    if args.queue_work:
        serve(queues=args.queue, work=True, sweep=False, **worker_options)
        return

    if args.sweep:
        if args.once:
            sweep_once()
        else:
            serve(work=False, sweep=True)
        return

    if args.run or not sys.argv[1:]:
        create_env_file()
        serve(queues=args.queue, **worker_options)

if __name__ == "__main__":
    main()
