#!/usr/bin/env python3
"""
Job Feeds for StreamSentry

A feed holds the most recent payload of one of the two per-instance JSON
sources: the topology snapshot of all jobs and the metrics of all jobs.
Feeds remember when they last refreshed and whether that refresh failed, so
the exporter can report staleness independently of the tracker state.
"""

import time
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from streamsentry.common.errors import TransportError

logger = logging.getLogger("JobFeed")

SNAPSHOTS = "snapshots"
METRICS = "metrics"


class JobFeed(ABC):
    """
    Base class for SnapshotSource and MetricsSource implementations.

    Subclasses only implement fetch(); refresh bookkeeping lives here.
    """

    def __init__(self, kind: str, domain_name: str, instance_name: str):
        self.kind = kind
        self.domain_name = domain_name
        self.instance_name = instance_name

        self.payload = None  # Optional[str]
        self.last_refresh = None  # Optional[float]
        self.last_failure = None  # Optional[float]
        self.last_refresh_failed = False

        self.lock = threading.RLock()

    @abstractmethod
    def fetch(self) -> str:
        """Retrieve the current payload; raise IOError on failure"""

    def refresh(self):
        """
        Pull a fresh payload from the source

        Raises:
            IOError: the source could not be reached; the feed is marked failed
        """
        try:
            payload = self.fetch()
        except IOError as e:
            logger.warning(f"Refreshing {self.kind} for {self.instance_name} failed: {e}")
            self.mark_refresh_failed()
            raise

        with self.lock:
            self.payload = payload
            self.last_refresh = time.time()
            self.last_refresh_failed = False

    def get_payload(self) -> Optional[str]:
        with self.lock:
            return self.payload

    def is_last_refresh_failed(self) -> bool:
        with self.lock:
            return self.last_refresh_failed

    def mark_refresh_failed(self, when: Optional[float] = None):
        """Record a failed refresh (used by the tracker on reset)"""
        with self.lock:
            self.last_failure = when if when is not None else time.time()
            self.last_refresh_failed = True

    def clear(self):
        """Drop the cached payload, keeping refresh timing attributes"""
        with self.lock:
            self.payload = None

    def to_dict(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "kind": self.kind,
                "last_refresh": self.last_refresh,
                "last_failure": self.last_failure,
                "last_refresh_failed": self.last_refresh_failed,
                "has_payload": self.payload is not None,
            }


# Both collaborators share one contract
SnapshotSource = JobFeed
MetricsSource = JobFeed


class HttpJobFeed(JobFeed):
    """Feed that pulls its payload from an HTTP endpoint"""

    def __init__(self, kind: str, domain_name: str, instance_name: str, url_template: str,
                 session: Optional[requests.Session] = None,
                 timeout: float = 30.0,
                 auth: Optional[Tuple[str, str]] = None,
                 cert: Optional[str] = None,
                 verify: bool = True):
        """
        Initialize the feed

        Args:
            kind: SNAPSHOTS or METRICS
            domain_name: Domain of the monitored instance
            instance_name: Name of the monitored instance
            url_template: URL, may reference {domain} and {instance}
            session: requests session to reuse across refreshes
            timeout: Seconds before a request is abandoned
            auth: Optional (username, password) for basic auth
            cert: Optional client certificate file
            verify: Verify the server certificate
        """
        super().__init__(kind, domain_name, instance_name)
        self.url = url_template.format(domain=domain_name, instance=instance_name)
        self.session = session or requests.Session()
        self.timeout = timeout
        self.auth = auth
        self.cert = cert
        self.verify = verify

    def fetch(self) -> str:
        try:
            response = self.session.get(
                self.url,
                timeout=self.timeout,
                auth=self.auth,
                cert=self.cert,
                verify=self.verify,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise TransportError(f"GET {self.url} failed: {e}") from e

        logger.debug(f"Fetched {self.kind} for {self.instance_name} ({len(response.text)} bytes)")
        return response.text


def http_feed_factory(kind: str, url_template: str, **kwargs) -> Callable[[str, str], HttpJobFeed]:
    """Build a factory the tracker calls with (domain, instance) to create a feed"""
    def factory(domain_name: str, instance_name: str) -> HttpJobFeed:
        return HttpJobFeed(kind, domain_name, instance_name, url_template, **kwargs)
    return factory
