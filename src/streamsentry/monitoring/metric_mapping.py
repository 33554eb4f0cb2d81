#!/usr/bin/env python3
"""
Metric mapping helpers for StreamSentry

Converts instance status and job/PE health values into the numeric values
exported as gauges, and builds the positional label paths used for each
object type.
"""

from enum import Enum
from typing import Optional, Tuple, Union


class InstanceStatus(Enum):
    """Status of a monitored instance"""
    STARTING = "starting"
    RUNNING = "running"
    PARTIALLY_RUNNING = "partiallyRunning"
    PARTIALLY_FAILED = "partiallyFailed"
    STOPPING = "stopping"
    STOPPED = "stopped"
    FAILED = "failed"
    UNKNOWN = "unknown"

    @classmethod
    def from_value(cls, value) -> 'InstanceStatus':
        """Tolerant conversion; unrecognized values become UNKNOWN"""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.UNKNOWN
        key = _normalize(str(value))
        for member in cls:
            if _normalize(member.name) == key:
                return member
        return cls.UNKNOWN


class Health(Enum):
    """Health of a job or processing element"""
    HEALTHY = "healthy"
    PARTIALLY_HEALTHY = "partiallyHealthy"
    PARTIALLY_UNHEALTHY = "partiallyUnhealthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"

    @classmethod
    def from_value(cls, value) -> 'Health':
        """Tolerant conversion; unrecognized values become UNKNOWN"""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.UNKNOWN
        key = _normalize(str(value))
        for member in cls:
            if _normalize(member.name) == key:
                return member
        return cls.UNKNOWN


# Statuses that mean the instance is gone until it is started again
STOPPED_STATUSES = (InstanceStatus.STOPPED, InstanceStatus.FAILED, InstanceStatus.UNKNOWN)

_PARTIAL_STATUSES = (
    InstanceStatus.STARTING,
    InstanceStatus.PARTIALLY_RUNNING,
    InstanceStatus.PARTIALLY_FAILED,
    InstanceStatus.STOPPING,
)

_PARTIAL_HEALTH = (Health.PARTIALLY_HEALTHY, Health.PARTIALLY_UNHEALTHY)


def _normalize(value: str) -> str:
    # "PARTIALLY_RUNNING", "partiallyRunning" and "partially-running" compare equal
    return value.replace("_", "").replace("-", "").lower()


def status_as_metric(status: Union[InstanceStatus, str, None]) -> float:
    """
    Quantify an instance status

    Returns:
        1.0 for running, 0.5 for transitional or partial states, 0.0 otherwise
    """
    status = InstanceStatus.from_value(status)
    if status == InstanceStatus.RUNNING:
        return 1.0
    if status in _PARTIAL_STATUSES:
        return 0.5
    return 0.0


def health_as_metric(health: Union[Health, str, None]) -> float:
    """
    Quantify a job or PE health value

    Returns:
        1.0 for healthy, 0.5 for partially healthy/unhealthy, 0.0 otherwise
    """
    health = Health.from_value(health)
    if health == Health.HEALTHY:
        return 1.0
    if health in _PARTIAL_HEALTH:
        return 0.5
    return 0.0


def is_healthy(health: Optional[str]) -> bool:
    return health is not None and health.lower() == "healthy"


def instance_labels(domain: str, instance: str) -> Tuple[str, ...]:
    return (domain, instance)


def resource_labels(domain: str, instance: str, resource: str) -> Tuple[str, ...]:
    return (domain, instance, resource)


def job_labels(domain: str, instance: str, job: str) -> Tuple[str, ...]:
    return (domain, instance, job)


def pe_labels(domain: str, instance: str, job: str, resource: str, pe_id: str) -> Tuple[str, ...]:
    return (domain, instance, job, resource, pe_id)


def operator_labels(pe_path: Tuple[str, ...], operator_name: str,
                    operator_kind: Optional[str]) -> Tuple[str, ...]:
    """Extend a PE label path with operator name and kind"""
    return pe_path + (operator_name, operator_kind or "")
