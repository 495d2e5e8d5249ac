import time
import socket
import threading
import logging
from socketserver import ThreadingMixIn
from wsgiref.simple_server import make_server, WSGIServer

import psutil
from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry
from prometheus_client.exposition import make_wsgi_app

from flash_trader.accounts import BurnVault, LiquidityPool, Mint, Treasury
from flash_trader.crypto import short_id

logger = logging.getLogger(__name__)


class ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    """Serves metrics from a background thread."""
    allow_reuse_address = True


class LedgerMonitor:
    def __init__(self, host="127.0.0.1", port=9090):
        self.host = host
        self.port = port
        self.server = None
        self.thread = None

        # Each monitor gets its own registry so several ledgers can coexist
        self.registry = CollectorRegistry()

        self.operations = Counter(
            'ledger_operations_total', 'Operations processed',
            ['operation', 'status'], registry=self.registry)
        self.latency = Histogram(
            'ledger_operation_latency_seconds', 'Time to process an operation',
            ['operation'], registry=self.registry)
        self.compute_units = Histogram(
            'ledger_compute_units', 'Compute units consumed by successful operations',
            buckets=(5_000, 10_000, 20_000, 50_000, 100_000, 200_000), registry=self.registry)
        self.pool_balance = Gauge(
            'ledger_pool_balance', 'Liquidity pool balance', ['pool'], registry=self.registry)
        self.pool_fees = Gauge(
            'ledger_pool_fees_collected', 'Flash loan fees kept by the pool', ['pool'], registry=self.registry)
        self.treasury_balance = Gauge(
            'ledger_treasury_balance', 'Treasury balance', ['treasury'], registry=self.registry)
        self.burned = Gauge(
            'ledger_cumulative_burned', 'Tokens burned through a vault', ['vault'], registry=self.registry)
        self.supply = Gauge(
            'ledger_mint_supply', 'Circulating supply', ['mint'], registry=self.registry)
        self.cpu_usage = Gauge('system_cpu_percent', 'Current CPU usage percent', registry=self.registry)
        self.memory_usage = Gauge('system_memory_percent', 'Current memory usage percent', registry=self.registry)

    def start_server(self, max_retries=5, retry_delay=2):
        """Starts the Prometheus HTTP endpoint, retrying while the port is busy."""
        app = make_wsgi_app(self.registry)

        for attempt in range(max_retries):
            try:
                self.server = make_server(self.host, self.port, app, ThreadingWSGIServer)
                self.server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

                self.thread = threading.Thread(target=self.server.serve_forever)
                self.thread.daemon = True
                self.thread.start()
                logger.info(f"Prometheus server started on http://{self.host}:{self.port}")
                return
            except OSError as e:
                if e.errno == 98 and attempt < max_retries - 1:  # Address already in use
                    logger.warning(f"Port {self.port} in use, retrying in {retry_delay}s "
                                   f"(attempt {attempt+1}/{max_retries})...")
                    time.sleep(retry_delay)
                else:
                    logger.error(f"Failed to start metrics server on port {self.port}: {e}")
                    raise

    def stop_server(self):
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
            logger.info("Prometheus server stopped.")

    def record_operation(self, operation: str, status: str, latency: float, compute_units: int = None):
        self.operations.labels(operation=operation, status=status).inc()
        self.latency.labels(operation=operation).observe(latency)
        if compute_units is not None:
            self.compute_units.observe(compute_units)

    def observe_accounts(self, accounts):
        """Refresh balance gauges from accounts an operation just committed."""
        for account in accounts:
            label = short_id(account.identity)
            if isinstance(account, LiquidityPool):
                self.pool_balance.labels(pool=label).set(account.balance)
                self.pool_fees.labels(pool=label).set(account.fees_collected)
            elif isinstance(account, Treasury):
                self.treasury_balance.labels(treasury=label).set(account.balance)
            elif isinstance(account, BurnVault):
                self.burned.labels(vault=label).set(account.cumulative_burned)
            elif isinstance(account, Mint):
                self.supply.labels(mint=label).set(account.supply)

    def update_system_stats(self):
        self.cpu_usage.set(psutil.cpu_percent())
        self.memory_usage.set(psutil.virtual_memory().percent)
