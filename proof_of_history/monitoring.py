# proof_of_history/monitoring.py
import time
import psutil
import socket
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app
from wsgiref.simple_server import make_server, WSGIServer
from socketserver import ThreadingMixIn
import threading
import logging

logger = logging.getLogger(__name__)

# Create a threaded WSGI server for the Prometheus metrics
class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """A WSGI server that runs in a separate thread to not block the pipeline."""
    allow_reuse_address = True
    daemon_threads = True

class PipelineMonitor:
    """Prometheus metrics for one producer/verifier pipeline."""

    def __init__(self, registry: CollectorRegistry = None):
        self.server = None
        self.thread = None

        # Each pipeline gets its own registry so several can coexist in one process
        self.registry = registry or CollectorRegistry()

        self.ticks_produced = Counter('poh_ticks_produced_total', 'Ticks produced', registry=self.registry)
        self.blocks_produced = Counter('poh_blocks_produced_total', 'Blocks handed to the verifier', registry=self.registry)
        self.blocks_verified = Counter('poh_blocks_verified_total', 'Blocks verified', registry=self.registry)
        self.ticks_verified = Counter('poh_ticks_verified_total', 'Ticks verified', registry=self.registry)
        self.chain_broken = Counter('poh_chain_broken_total', 'Verification failures', registry=self.registry)
        self.verify_latency = Histogram('poh_block_verify_seconds', 'Time to verify one block', registry=self.registry)
        self.backpressure_wait = Histogram('poh_backpressure_wait_seconds', 'Time the producer waited on a full channel', registry=self.registry)
        self.channel_depth = Gauge('poh_channel_depth', 'Blocks waiting for the verifier', registry=self.registry)
        self.verified_height = Gauge('poh_verified_height', 'Length of the verified history', registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)

    def start_server(self, host: str = "127.0.0.1", port: int = 9090):
        """Starts the Prometheus HTTP server in a daemon thread, retrying while the port is busy."""
        app = make_wsgi_app(self.registry)

        max_retries = 5
        retry_delay = 2

        for attempt in range(max_retries):
            try:
                self.server = make_server(host, port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
                self.thread.start()
                logger.info(f"Prometheus server started on http://{host}:{port}")
                return
            except OSError as e:
                if e.errno == 98:  # Address already in use
                    if attempt < max_retries - 1:
                        logger.warning(f"Port {port} in use, retrying in {retry_delay}s (attempt {attempt+1}/{max_retries})...")
                        time.sleep(retry_delay)
                    else:
                        logger.error(f"Failed to bind to port {port} after {max_retries} attempts")
                        raise
                else:
                    raise

    def stop_server(self):
        """Stops the HTTP server."""
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def update(self):
        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)

    def record_produced(self, ticks: int, wait: float, depth: int):
        self.ticks_produced.inc(ticks)
        self.blocks_produced.inc()
        self.backpressure_wait.observe(wait)
        self.channel_depth.set(depth)

    def record_verified(self, ticks: int, latency: float, height: int, depth: int):
        self.blocks_verified.inc()
        self.ticks_verified.inc(ticks)
        self.verify_latency.observe(latency)
        self.verified_height.set(height)
        self.channel_depth.set(depth)
        self.update()

    def record_broken(self):
        self.chain_broken.inc()

    def value(self, name: str) -> float:
        """Current value of a sample, 0.0 if it has not been reported."""
        return self.registry.get_sample_value(name) or 0.0
