#!/usr/bin/env python3
"""
Error taxonomy for StreamSentry

Transport failures are recoverable and drive a tracker reset, configuration
failures are fatal for the tracker that hit them, and tracker errors report
a typed "not found" condition to callers of the accessor methods.
"""

from enum import Enum


class TrackerErrorCode(Enum):
    """Codes carried by TrackerError"""
    INSTANCE_NOT_FOUND = "instance_not_found"
    JOB_NOT_FOUND = "job_not_found"
    ALL_JOBS_NOT_AVAILABLE = "all_jobs_not_available"
    ALL_METRICS_NOT_AVAILABLE = "all_metrics_not_available"
    ALL_SNAPSHOTS_NOT_AVAILABLE = "all_snapshots_not_available"
    CONFIGURATION_ERROR = "configuration_error"
    UNSPECIFIED = "unspecified"


class TrackerError(Exception):
    """Condition reported by an instance tracker to its caller"""

    def __init__(self, code: TrackerErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.name}: {self.message}"


class TransportError(IOError):
    """Connection failure or timeout against a management endpoint"""


class EndpointNotFoundError(TransportError):
    """The managed object requested from the endpoint does not exist"""


class MalformedEndpointError(Exception):
    """Connection URL for a management endpoint could not be used"""


class ConfigurationError(Exception):
    """Invalid exporter configuration"""

    def __init__(self, message: str, errors=None):
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])
