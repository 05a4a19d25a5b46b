import asyncio
import logging
import logging.handlers
import os
import platform
import signal
from pathlib import Path
from typing import List, Optional

import psutil
from dotenv import load_dotenv

from core import __version__
from core.expiration_manager import ExpirationManager
from core.model import Model
from core.options import StorageOptions


class Application:
    @staticmethod
    def get_version():
        """Get the installed RowQueue version."""
        return __version__

    @staticmethod
    def print_banner():
        """Print the RowQueue banner with system information."""
        version = Application.get_version()

        system_info = platform.system()
        cpu_count = psutil.cpu_count(logical=True)
        memory = psutil.virtual_memory()
        memory_gb = round(memory.total / (1024**3), 1)

        banner = f"""
 ____               ___
|  _ \\ _____      _/ _ \\ _   _  ___ _   _  ___
| |_) / _ \\ \\ /\\ / / | | | | | |/ _ \\ | | |/ _ \\
|  _ < (_) \\ V  V /| |_| | |_| |  __/ |_| |  __/
|_| \\_\\___/ \\_/\\_/  \\__\\_\\\\__,_|\\___|\\__,_|\\___| {version}

Running on {system_info} | CPU: {cpu_count} cores | RAM: {memory_gb} GB
"""
        print(banner)

    def __init__(self, env_file=".env", show_banner=True):
        """
        Initialize a new RowQueue application.

        Args:
            env_file: The environment file to load configuration from
            show_banner: Print the startup banner
        """
        if show_banner:
            self.print_banner()

        load_dotenv(env_file)

        self._setup_logging()
        self.options = StorageOptions.from_env()
        self._setup_database()

    def _setup_logging(self):
        """Configure logging based on environment variables with file rotation support."""
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        log_to_file = os.getenv("LOG_TO_FILE", "false").lower() == "true"
        log_file = os.getenv("LOG_FILE", "logs/rowqueue.log")

        log_rotation_type = os.getenv("LOG_ROTATION_TYPE", "size").lower()  # 'size' or 'time'

        max_bytes = int(os.getenv("LOG_MAX_BYTES", "10485760"))  # 10 MB default
        backup_count = int(os.getenv("LOG_BACKUP_COUNT", "5"))

        rotation_when = os.getenv("LOG_ROTATION_WHEN", "midnight").lower()  # 'midnight', 'D', 'H', etc.
        rotation_interval = int(os.getenv("LOG_ROTATION_INTERVAL", "1"))

        date_format = os.getenv("LOG_DATE_FORMAT", "%Y-%m-%d")

        handlers = [logging.StreamHandler()]

        if log_to_file:
            log_path = Path(log_file)
            log_path.parent.mkdir(parents=True, exist_ok=True)

            try:
                if log_rotation_type == "time":
                    file_handler = logging.handlers.TimedRotatingFileHandler(
                        filename=log_file,
                        when=rotation_when,
                        interval=rotation_interval,
                        backupCount=backup_count,
                        encoding='utf-8'
                    )
                    file_handler.suffix = date_format
                else:
                    file_handler = logging.handlers.RotatingFileHandler(
                        filename=log_file,
                        maxBytes=max_bytes,
                        backupCount=backup_count,
                        encoding='utf-8'
                    )

                file_handler.setFormatter(logging.Formatter(log_format))
                handlers.append(file_handler)

            except OSError as e:
                print(f"Warning: Could not setup file logging: {e}")
                print("Falling back to console logging only")

        logging.basicConfig(
            level=getattr(logging, log_level, logging.INFO),
            format=log_format,
            handlers=handlers,
            force=True
        )

        self.logger = logging.getLogger("RowQueue.Application")

        if log_to_file:
            self.logger.info(f"Logging configured - File: {log_file}, Rotation: {log_rotation_type}")
        else:
            self.logger.info("File logging disabled - Console only")

    @staticmethod
    def database_url() -> str:
        """Build the connection string from DB_URL or the individual DB_* variables."""
        url = os.getenv("DB_URL")
        if url:
            return url

        db_host = os.getenv("DB_HOST", "localhost")
        db_port = os.getenv("DB_PORT", "3306")
        db_name = os.getenv("DB_NAME", "rowqueue")
        db_user = os.getenv("DB_USER", "root")
        db_pass = os.getenv("DB_PASS", "")

        return f"mysql+aiomysql://{db_user}:{db_pass}@{db_host}:{db_port}/{db_name}"

    def _setup_database(self):
        """Configure database connection."""
        Model.configure(self.database_url())

    async def initialize_database(self):
        """Create database tables."""
        await Model.create_tables()

    async def cleanup(self):
        """Cleanup database connections."""
        await Model.cleanup()

    async def serve(
        self,
        queues: Optional[List[str]] = None,
        work: bool = True,
        sweep: bool = True,
        **worker_options,
    ):
        """
        Run a queue worker and/or the expiration manager until a shutdown signal.

        Args:
            queues: Queue names to process (defaults to the QUEUES setting)
            work: Start a queue worker
            sweep: Start the expiration manager
            worker_options: Extra keyword arguments for QueueWorker
        """
        from core.queue.queue_worker import QueueWorker

        stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop.set)
            except NotImplementedError:
                # Signal handlers are not available on this platform's loop
                pass

        tasks = []
        worker = None
        if work:
            worker = QueueWorker(
                queues=queues,
                options=self.options,
                handle_signals=False,
                **worker_options,
            )
            tasks.append(asyncio.create_task(worker.work()))
        if sweep:
            manager = ExpirationManager(self.options)
            tasks.append(asyncio.create_task(manager.run(stop)))

        if not tasks:
            self.logger.warning("Nothing to run")
            return

        self.logger.info("Application started. Press Ctrl+C to exit.")
        stopper = asyncio.create_task(stop.wait())
        try:
            await asyncio.wait(tasks + [stopper], return_when=asyncio.FIRST_COMPLETED)
        finally:
            self.logger.info("Shutting down...")
            stop.set()
            if worker is not None:
                worker.stop()
            await asyncio.gather(*tasks, return_exceptions=True)
            stopper.cancel()
            await self.cleanup()
