#!/usr/bin/env python3
"""
Feed payload model for StreamSentry

Both feeds (topology snapshots and metrics) deliver the same document shape:
{"jobs": [{"id", "status", "health", "name", "pes": [...]}]}. The snapshot
carries names, health and placement; the metrics feed carries only values and
positional indexes. Each payload is parsed once into a tree of immutable
value objects, and parsing reports its outcome as a Parsed or Failed value
instead of raising.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Union


@dataclass(frozen=True)
class MetricValue:
    """A single named leaf metric"""
    name: str
    value: Union[int, float]


@dataclass(frozen=True)
class Connection:
    """Connection leaving a PE output port"""
    connection_id: str
    metrics: Tuple[MetricValue, ...] = ()


@dataclass(frozen=True)
class PePort:
    """PE-level port, identified only by its position within the PE"""
    index_within_pe: str
    metrics: Tuple[MetricValue, ...] = ()
    connections: Tuple[Connection, ...] = ()


@dataclass(frozen=True)
class OperatorPort:
    """Operator-level port; name is only present in snapshots"""
    index_within_operator: str
    name: Optional[str] = None
    metrics: Tuple[MetricValue, ...] = ()


@dataclass(frozen=True)
class Operator:
    name: str
    operator_kind: Optional[str] = None
    metrics: Tuple[MetricValue, ...] = ()
    input_ports: Tuple[OperatorPort, ...] = ()
    output_ports: Tuple[OperatorPort, ...] = ()


@dataclass(frozen=True)
class ProcessingElement:
    pe_id: str
    resource: Optional[str] = None
    status: Optional[str] = None
    health: Optional[str] = None
    launch_count: Optional[int] = None
    metrics: Tuple[MetricValue, ...] = ()
    input_ports: Tuple[PePort, ...] = ()
    output_ports: Tuple[PePort, ...] = ()
    operators: Tuple[Operator, ...] = ()


@dataclass(frozen=True)
class Job:
    """
    One job entry of a feed payload.

    raw holds the job object re-serialized on its own, which is what the
    registry hands to the job's state on each refresh.
    """
    job_id: str
    name: Optional[str] = None
    status: Optional[str] = None
    health: Optional[str] = None
    instance: Optional[str] = None
    pes: Tuple[ProcessingElement, ...] = ()
    raw: str = ""


@dataclass(frozen=True)
class Parsed:
    value: Any


@dataclass(frozen=True)
class Failed:
    reason: str


ParseResult = Union[Parsed, Failed]


def _text(value) -> Optional[str]:
    return None if value is None else str(value)


def _array(obj: Dict[str, Any], key: str) -> list:
    value = obj.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise TypeError(f"'{key}' is not an array")
    return value


def _object(value) -> Dict[str, Any]:
    if not isinstance(value, dict):
        raise TypeError(f"expected an object, got {type(value).__name__}")
    return value


def _number(value) -> Union[int, float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"metric value {value!r} is not numeric")
    return value


def _metrics(obj: Dict[str, Any]) -> Tuple[MetricValue, ...]:
    metrics = []
    for entry in _array(obj, "metrics"):
        entry = _object(entry)
        metrics.append(MetricValue(name=str(entry["name"]), value=_number(entry.get("value"))))
    return tuple(metrics)


def _connection(obj) -> Connection:
    obj = _object(obj)
    return Connection(connection_id=str(obj["id"]), metrics=_metrics(obj))


def _pe_port(obj) -> PePort:
    obj = _object(obj)
    return PePort(
        index_within_pe=_text(obj.get("indexWithinPE")) or "",
        metrics=_metrics(obj),
        connections=tuple(_connection(c) for c in _array(obj, "connections")),
    )


def _operator_port(obj) -> OperatorPort:
    obj = _object(obj)
    return OperatorPort(
        index_within_operator=_text(obj.get("indexWithinOperator")) or "",
        name=_text(obj.get("name")),
        metrics=_metrics(obj),
    )


def _operator(obj) -> Operator:
    obj = _object(obj)
    return Operator(
        name=str(obj["name"]),
        operator_kind=_text(obj.get("operatorKind")),
        metrics=_metrics(obj),
        input_ports=tuple(_operator_port(p) for p in _array(obj, "inputPorts")),
        output_ports=tuple(_operator_port(p) for p in _array(obj, "outputPorts")),
    )


def _processing_element(obj) -> ProcessingElement:
    obj = _object(obj)
    launch_count = obj.get("launchCount")
    return ProcessingElement(
        pe_id=str(obj["id"]),
        resource=_text(obj.get("resource")),
        status=_text(obj.get("status")),
        health=_text(obj.get("health")),
        launch_count=None if launch_count is None else int(_number(launch_count)),
        metrics=_metrics(obj),
        input_ports=tuple(_pe_port(p) for p in _array(obj, "inputPorts")),
        output_ports=tuple(_pe_port(p) for p in _array(obj, "outputPorts")),
        operators=tuple(_operator(o) for o in _array(obj, "operators")),
    )


def build_job(obj) -> Job:
    """Build a Job from a decoded job object; raises on structural errors"""
    obj = _object(obj)
    return Job(
        job_id=str(obj["id"]),
        name=_text(obj.get("name")),
        status=_text(obj.get("status")),
        health=_text(obj.get("health")),
        instance=_text(obj.get("instance")),
        pes=tuple(_processing_element(pe) for pe in _array(obj, "pes")),
        raw=json.dumps(obj),
    )


def _decode(payload: Optional[str]):
    if payload is None:
        return Failed("no payload")
    try:
        return Parsed(json.loads(payload))
    except (TypeError, ValueError) as e:
        return Failed(f"invalid JSON: {e}")


def parse_jobs_payload(payload: Optional[str]) -> ParseResult:
    """
    Parse a whole feed payload

    Args:
        payload: JSON text of the form {"jobs": [...]}

    Returns:
        Parsed(tuple of Job) or Failed(reason)
    """
    decoded = _decode(payload)
    if isinstance(decoded, Failed):
        return decoded

    document = decoded.value
    if not isinstance(document, dict) or not isinstance(document.get("jobs"), list):
        return Failed("payload has no 'jobs' array")

    try:
        return Parsed(tuple(build_job(job) for job in document["jobs"]))
    except (KeyError, TypeError, ValueError) as e:
        return Failed(f"malformed job entry: {e!r}")


def parse_job(payload: Optional[str]) -> ParseResult:
    """Parse a single job object as stored on a JobState"""
    decoded = _decode(payload)
    if isinstance(decoded, Failed):
        return decoded

    try:
        return Parsed(build_job(decoded.value))
    except (KeyError, TypeError, ValueError) as e:
        return Failed(f"malformed job: {e!r}")
