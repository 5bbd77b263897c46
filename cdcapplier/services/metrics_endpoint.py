"""
HTTP endpoint for Prometheus metrics
Provides /metrics for Prometheus scraping and /health for liveness probes
"""

import json
import threading
import time
from typing import Optional
from http.server import HTTPServer, BaseHTTPRequestHandler
import structlog

from .metrics_service import MetricsService


class MetricsHandler(BaseHTTPRequestHandler):
    """HTTP handler for metrics endpoint"""

    def __init__(self, metrics_service: MetricsService, *args, **kwargs):
        self.metrics_service = metrics_service
        self.logger = structlog.get_logger()
        super().__init__(*args, **kwargs)

    def do_GET(self):
        """Handle GET requests"""
        if self.path == '/metrics':
            self._handle_metrics()
        elif self.path == '/health':
            self._handle_health()
        else:
            self._handle_not_found()

    def _handle_metrics(self):
        try:
            payload = self.metrics_service.get_metrics().encode('utf-8')
            self._send(200, self.metrics_service.get_content_type(), payload)
        except Exception as e:
            self.logger.error("Error serving metrics", error=str(e))
            self._handle_error()

    def _handle_health(self):
        try:
            health_status = self.metrics_service.get_health_status()

            # A partially failed pipeline still answers 200 with a warning
            http_status = 200 if health_status["status"] in ("healthy", "warning", "unknown") else 503

            payload = json.dumps(health_status, indent=2, default=str).encode('utf-8')
            self._send(http_status, 'application/json', payload)
        except Exception as e:
            self.logger.error("Error serving health check", error=str(e))
            self._handle_error()

    def _send(self, status: int, content_type: str, payload: bytes) -> None:
        self.send_response(status)
        self.send_header('Content-Type', content_type)
        self.send_header('Content-Length', str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _handle_not_found(self):
        self._send(404, 'text/plain', b'Not Found')

    def _handle_error(self):
        self._send(500, 'text/plain', b'Internal Server Error')

    def log_message(self, format, *args):
        """Override to use structlog"""
        self.logger.debug("HTTP request", message=format % args)


class MetricsEndpoint:
    """HTTP endpoint for Prometheus metrics"""

    def __init__(self, metrics_service: MetricsService, host: str = '0.0.0.0', port: int = 8080):
        self.metrics_service = metrics_service
        self.host = host
        self.port = port
        self.logger = structlog.get_logger()

        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._shutdown_requested = False
        self._shutdown_lock = threading.Lock()

        self._start_time = time.time()

        self.logger.info("Metrics endpoint initialized", host=host, port=port)

    def start(self) -> None:
        """Start the metrics HTTP server"""
        with self._shutdown_lock:
            if self._shutdown_requested:
                self.logger.warning("Cannot start metrics endpoint, shutdown already requested")
                return

        if self._server_thread and self._server_thread.is_alive():
            self.logger.warning("Metrics endpoint already running")
            return

        def handler_factory(*args, **kwargs):
            return MetricsHandler(self.metrics_service, *args, **kwargs)

        try:
            self._server = HTTPServer((self.host, self.port), handler_factory)
        except OSError as e:
            self.logger.error("Failed to start metrics endpoint", error=str(e))
            raise

        self._server.timeout = 1.0
        self._server_thread = threading.Thread(
            target=self._run_server,
            name="metrics_endpoint",
            daemon=True
        )
        self._server_thread.start()

        self.logger.info("Metrics endpoint started",
                         host=self.host,
                         port=self.port,
                         metrics_url=f"http://{self.host}:{self.port}/metrics",
                         health_url=f"http://{self.host}:{self.port}/health")

    def stop(self) -> None:
        """Stop the metrics HTTP server"""
        with self._shutdown_lock:
            self._shutdown_requested = True

        if self._server_thread and self._server_thread.is_alive():
            self._server_thread.join(timeout=5.0)
            if self._server_thread.is_alive():
                self.logger.warning("Metrics endpoint thread did not stop gracefully")

        if self._server:
            self._server.server_close()
            self._server = None

        self.logger.info("Metrics endpoint stopped")

    def _is_shutdown_requested(self) -> bool:
        with self._shutdown_lock:
            return self._shutdown_requested

    def _run_server(self) -> None:
        """Serve one request at a time so shutdown is noticed within a second"""
        last_uptime_update = 0.0
        while not self._is_shutdown_requested():
            try:
                self._server.handle_request()
            except OSError as e:
                self.logger.error("Error handling metrics request", error=str(e))

            current_time = time.time()
            if current_time - last_uptime_update >= 10.0:
                self.metrics_service.set_uptime(current_time - self._start_time)
                last_uptime_update = current_time

    def is_running(self) -> bool:
        return self._server_thread is not None and self._server_thread.is_alive()
