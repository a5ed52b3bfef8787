"""Worker entrypoint for a standalone render worker deployment.

Runs a health check server and a worker pool against the shared job
table, without the HTTP API.
"""

import logging
import os
import signal
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

from src.config import get_settings
from src.logging_config import configure_logging
from src.models.database import Database
from src.services.artifact_publisher import ArtifactPublisher
from src.services.job_queue import JobQueue
from src.services.storage_service import create_storage_service
from src.services.worker_pool import WorkerPool
from src.tasks.render_task import RenderTask

logger = logging.getLogger(__name__)


class HealthHandler(BaseHTTPRequestHandler):
    """Simple health check handler."""

    def do_GET(self):
        if self.path == "/health" or self.path == "/":
            self.send_response(200)
            self.send_header("Content-type", "text/plain")
            self.end_headers()
            self.wfile.write(b"OK")
        else:
            self.send_response(404)
            self.end_headers()

    def log_message(self, format, *args):
        # Suppress access logs
        pass


def run_health_server(port: int) -> HTTPServer:
    server = HTTPServer(("0.0.0.0", port), HealthHandler)
    thread = threading.Thread(target=server.serve_forever, name="health-server", daemon=True)
    thread.start()
    logger.info(f"Health server running on port {port}")
    return server


def build_worker_pool() -> WorkerPool:
    settings = get_settings()
    db = Database(settings.database_url, echo=settings.database_echo)
    db.init_db()
    storage = create_storage_service(settings)
    queue = JobQueue(db, aging_s=settings.render_priority_aging_s)
    task = RenderTask(queue, ArtifactPublisher(storage), storage=storage, app_settings=settings)
    return WorkerPool(queue, task)


def main() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda signum, frame: stop.set())
    signal.signal(signal.SIGINT, lambda signum, frame: stop.set())

    server = run_health_server(int(os.environ.get("PORT", 8080)))
    pool = build_worker_pool()
    pool.start()
    try:
        while not stop.wait(1.0):
            pass
    finally:
        logger.info("Shutting down worker")
        pool.stop(timeout=60, interrupt_running=True)
        server.shutdown()


if __name__ == "__main__":
    main()
