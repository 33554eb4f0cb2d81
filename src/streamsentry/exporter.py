#!/usr/bin/env python3
"""
Streams Exporter for StreamSentry

Runs one InstanceTracker on a fixed refresh schedule and serves what it
tracks over HTTP:
    GET <webpath>metrics           Prometheus text format
    GET <webpath>instance          tracker status as JSON
    GET <webpath>jobs              job info list as JSON
    GET <webpath>jobs/{job_id}     one job as JSON
"""

import sys
import ssl
import asyncio
import logging
import argparse
import threading
from typing import Any, Dict, List, Optional

import requests
from aiohttp import web
from aiohttp.web_runner import GracefulExit

from streamsentry import __version__
from streamsentry.common.configuration_manager import ConfigurationManager, redacted
from streamsentry.common.errors import ConfigurationError, TrackerError, TrackerErrorCode
from streamsentry.monitoring.bean_source import BeanSource, RedisBeanSource
from streamsentry.monitoring.feeds import METRICS, SNAPSHOTS, http_feed_factory
from streamsentry.monitoring.metrics_sink import PrometheusMetricsSink
from streamsentry.tracker.instance_tracker import FeedFactory, InstanceTracker

logger = logging.getLogger("StreamsExporter")

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Configure root logging once for the process"""
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers
    )


class StreamsExporter:
    """
    Exporter service for one instance.

    Owns the sink, the bean source, the feeds and the tracker. The refresh
    loop runs on its own thread; HTTP handlers read the tracker under its
    lock from the executor so a slow refresh never blocks the event loop.
    """

    def __init__(self, config: Dict[str, Any],
                 sink: Optional[PrometheusMetricsSink] = None,
                 bean_source: Optional[BeanSource] = None,
                 snapshot_source_factory: Optional[FeedFactory] = None,
                 metrics_source_factory: Optional[FeedFactory] = None):
        """
        Initialize the exporter

        Args:
            config: Validated configuration (see ConfigurationManager)
            sink: Metric sink, a private PrometheusMetricsSink by default
            bean_source: Management connection, a RedisBeanSource by default
            snapshot_source_factory: Snapshot feed factory, HTTP by default
            metrics_source_factory: Metrics feed factory, HTTP by default
        """
        self.config = config
        self.domain_id = config["domain_id"]
        self.instance_id = config["instance_id"]
        self.refresh_rate = config["refresh_rate"]

        self.sink = sink or PrometheusMetricsSink()

        bean_config = config["bean_source"]
        self.bean_source = bean_source or RedisBeanSource(
            bean_config["url"],
            namespace=bean_config.get("namespace", "streams"),
            socket_timeout=bean_config.get("socket_timeout", 10.0),
        )

        self.session = requests.Session()
        feed_config = config["feeds"]
        feed_options = self._feed_options(feed_config)
        self.tracker = InstanceTracker(
            self.domain_id,
            self.instance_id,
            self.bean_source,
            self.sink,
            snapshot_source_factory or http_feed_factory(SNAPSHOTS, feed_config["snapshot_url"], **feed_options),
            metrics_source_factory or http_feed_factory(METRICS, feed_config["metrics_url"], **feed_options),
        )

        self.stopped = threading.Event()
        self.refresh_thread = None
        self.fatal_error = None  # Optional[TrackerError]
        self.loop = None  # event loop serving HTTP, set on startup

        logger.info(f"Streams Exporter initialized for instance {self.instance_id} of domain {self.domain_id}")

    def _feed_options(self, feed_config: Dict[str, Any]) -> Dict[str, Any]:
        options = {
            "session": self.session,
            "timeout": feed_config.get("timeout", 30.0),
            "verify": feed_config.get("verify", True),
        }
        if feed_config.get("username"):
            options["auth"] = (feed_config["username"], feed_config.get("password") or "")
        if feed_config.get("x509_cert"):
            options["cert"] = feed_config["x509_cert"]
        return options

    # ------------------------------------------------------------------
    # Refresh loop
    # ------------------------------------------------------------------

    def start(self):
        """Start the refresh loop thread"""
        self.stopped.clear()
        self.refresh_thread = threading.Thread(target=self._refresh_loop)
        self.refresh_thread.daemon = True
        self.refresh_thread.start()
        logger.info(f"Refresh loop started (interval: {self.refresh_rate}s)")

    def stop(self):
        """Stop the refresh loop and release every connection"""
        self.stopped.set()
        if self.refresh_thread is not None:
            self.refresh_thread.join(timeout=5.0)

        self.tracker.close()
        close = getattr(self.bean_source, "close", None)
        if close is not None:
            close()
        self.session.close()
        logger.info("Streams Exporter stopped")

    def refresh_once(self) -> bool:
        """
        Run one tracker refresh

        Returns:
            False when the tracker hit a configuration error and the loop must stop
        """
        try:
            self.tracker.refresh()
        except TrackerError as e:
            if e.code == TrackerErrorCode.CONFIGURATION_ERROR:
                logger.critical(f"Stopping refreshes, the configuration is not usable: {e}")
                self.fatal_error = e
                return False
            logger.error(f"Error refreshing instance {self.instance_id}: {e}")
        except Exception as e:
            logger.error(f"Unexpected error refreshing instance {self.instance_id}: {e}", exc_info=True)
        return True

    def _refresh_loop(self):
        """Refresh the tracker at regular intervals"""
        while not self.stopped.is_set():
            if not self.refresh_once():
                self.stopped.set()
                self.request_shutdown()
                break
            self.stopped.wait(self.refresh_rate)

    def request_shutdown(self):
        """Stop the HTTP server from any thread"""
        loop = self.loop
        if loop is None or loop.is_closed():
            return
        logger.info("Shutting down the HTTP server")
        loop.call_soon_threadsafe(_raise_graceful_exit)

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def create_app(self) -> web.Application:
        webpath = self.config["server"]["webpath"]
        app = web.Application()
        app.router.add_get(f"{webpath}metrics", self.metrics_handler)
        app.router.add_get(f"{webpath}instance", self.instance_handler)
        app.router.add_get(f"{webpath}jobs", self.jobs_handler)
        app.router.add_get(f"{webpath}jobs/{{job_id}}", self.job_handler)
        app.on_startup.append(self._on_startup)
        app.on_cleanup.append(self._on_cleanup)
        return app

    async def _on_startup(self, app: web.Application):
        self.loop = asyncio.get_running_loop()
        self.start()

    async def _on_cleanup(self, app: web.Application):
        self.loop = None
        self.stop()

    async def metrics_handler(self, request: web.Request) -> web.Response:
        return web.Response(body=self.sink.exposition(), headers={"Content-Type": self.sink.content_type})

    async def instance_handler(self, request: web.Request) -> web.Response:
        loop = asyncio.get_running_loop()
        status = await loop.run_in_executor(None, self.tracker.to_dict)
        return web.json_response(status)

    async def jobs_handler(self, request: web.Request) -> web.Response:
        loop = asyncio.get_running_loop()
        try:
            jobs = await loop.run_in_executor(None, self.tracker.get_all_job_info)
        except TrackerError as e:
            return _error_response(e)
        return web.json_response(jobs)

    async def job_handler(self, request: web.Request) -> web.Response:
        loop = asyncio.get_running_loop()
        job_id = request.match_info["job_id"]
        try:
            job = await loop.run_in_executor(None, self.tracker.get_job_info, job_id)
        except TrackerError as e:
            return _error_response(e)
        return web.json_response(job)

    def ssl_context(self) -> Optional[ssl.SSLContext]:
        server = self.config["server"]
        if server["protocol"] != "https":
            return None
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(server["certfile"], server.get("keyfile"))
        return context

    def run(self):
        """Serve until interrupted or a configuration error stops refreshes"""
        server = self.config["server"]
        logger.info(
            f"Serving {server['protocol']}://{server['host']}:{server['port']}{server['webpath']}metrics")
        web.run_app(
            self.create_app(),
            host=server["host"],
            port=server["port"],
            ssl_context=self.ssl_context(),
            print=None,
        )


def _error_response(error: TrackerError) -> web.Response:
    return web.json_response({"error": error.code.name, "message": error.message}, status=404)


def _raise_graceful_exit():
    # run_app treats GracefulExit raised on its loop like SIGTERM
    raise GracefulExit()


def build_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Map parsed command line options onto configuration paths"""
    return {
        "domain_id": args.domain,
        "instance_id": args.instance,
        "refresh_rate": args.refresh_rate,
        "bean_source": {
            "url": args.beansource_url,
            "namespace": args.namespace,
        },
        "feeds": {
            "snapshot_url": args.snapshot_url,
            "metrics_url": args.metrics_url,
            "username": args.username,
            "password": args.password,
            "x509_cert": args.x509_cert,
        },
        "server": {
            "host": args.host,
            "port": args.port,
            "webpath": args.webpath,
            "protocol": args.protocol,
            "certfile": args.certfile,
            "keyfile": args.keyfile,
        },
        "logging": {
            "level": args.log_level,
            "file": args.log_file,
        },
    }


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="StreamSentry Streams Exporter")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--config", help="Path to a YAML or JSON configuration file")
    parser.add_argument("-d", "--domain", help="Domain id (STREAMS_DOMAIN_ID)")
    parser.add_argument("-i", "--instance", help="Instance id (STREAMS_INSTANCE_ID)")
    parser.add_argument("-j", "--beansource-url", help="Bean source Redis URL (STREAMS_EXPORTER_BEANSOURCE_URL)")
    parser.add_argument("--namespace", help="Bean source key namespace")
    parser.add_argument("--snapshot-url", help="Snapshot feed URL template (STREAMS_EXPORTER_SNAPSHOT_URL)")
    parser.add_argument("--metrics-url", help="Metrics feed URL template (STREAMS_EXPORTER_METRICS_URL)")
    parser.add_argument("-u", "--username", help="Feed username (STREAMS_EXPORTER_USERNAME)")
    parser.add_argument("--password", help="Feed password (STREAMS_EXPORTER_PASSWORD)")
    parser.add_argument("-x", "--x509-cert", help="Client certificate file (STREAMS_X509CERT)")
    parser.add_argument("--host", help="Listen address (STREAMS_EXPORTER_HOST)")
    parser.add_argument("--port", type=int, help="Listen port (STREAMS_EXPORTER_PORT)")
    parser.add_argument("--webpath", help="Base path of the HTTP endpoints (STREAMS_EXPORTER_WEBPATH)")
    parser.add_argument("--protocol", help="http or https (STREAMS_EXPORTER_SERVER_PROTOCOL)")
    parser.add_argument("--certfile", help="Server certificate file (STREAMS_EXPORTER_SERVER_CERTFILE)")
    parser.add_argument("--keyfile", help="Server key file (STREAMS_EXPORTER_SERVER_KEYFILE)")
    parser.add_argument("--refresh-rate", type=int, help="Seconds between refreshes (STREAMS_EXPORTER_REFRESHRATE)")
    parser.add_argument("--log-level", help="Logging level")
    parser.add_argument("--log-file", help="Also log to this file")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    config_manager = ConfigurationManager(config_file=args.config, overrides=build_overrides(args))
    try:
        config = config_manager.load()
    except ConfigurationError as e:
        configure_logging()
        logger.error(f"Startup failed: {e.message}")
        return 1

    configure_logging(config["logging"]["level"], config["logging"]["file"])
    logger.debug(f"Configuration: {redacted(config)}")

    exporter = StreamsExporter(config)
    exporter.run()

    if exporter.fatal_error is not None:
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
