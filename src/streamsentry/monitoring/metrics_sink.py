#!/usr/bin/env python3
"""
Metrics Sink for StreamSentry

This module defines the metric catalog contract used by the trackers and a
Prometheus-backed implementation. Every exported value is a gauge whose label
values form a positional path (domain, instance, job, resource, pe, ...), so
removing everything below a path prefix is a single cascade call.
"""

import re
import logging
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Iterable, List, Optional, Tuple

from prometheus_client import CollectorRegistry, Gauge, generate_latest, CONTENT_TYPE_LATEST

logger = logging.getLogger("MetricsSink")

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_:]")


class ObjectType(Enum):
    """Exported object types with their name prefix and ordered label names"""
    INSTANCE = ("instance", ("domainname", "instancename"))
    RESOURCE = ("resource", ("domainname", "instancename", "resource"))
    JOB = ("job", ("domainname", "instancename", "jobname"))
    PE = ("pe", ("domainname", "instancename", "jobname", "resource", "peid"))
    PE_INPUTPORT = ("pe_inputport",
                    ("domainname", "instancename", "jobname", "resource", "peid", "index"))
    PE_OUTPUTPORT = ("pe_outputport",
                     ("domainname", "instancename", "jobname", "resource", "peid", "index"))
    PE_OUTPUTPORT_CONNECTION = ("pe_outputport_connection",
                                ("domainname", "instancename", "jobname", "resource", "peid",
                                 "index", "connectionid"))
    OPERATOR = ("operator",
                ("domainname", "instancename", "jobname", "resource", "peid",
                 "operatorname", "operatorkind"))
    OPERATOR_INPUTPORT = ("operator_inputport",
                          ("domainname", "instancename", "jobname", "resource", "peid",
                           "operatorname", "operatorkind", "inputportname"))
    OPERATOR_OUTPUTPORT = ("operator_outputport",
                           ("domainname", "instancename", "jobname", "resource", "peid",
                            "operatorname", "operatorkind", "outputportname"))

    def __init__(self, prefix: str, label_names: Tuple[str, ...]):
        self.prefix = prefix
        self.label_names = label_names


# Families a job owns; its label path can collide with a resource path
JOB_OBJECT_TYPES = frozenset(t for t in ObjectType if t not in (ObjectType.INSTANCE, ObjectType.RESOURCE))


def _label_value(value) -> str:
    return "" if value is None else str(value)


class MetricsSink(ABC):
    """Catalog the trackers publish into"""

    @abstractmethod
    def create_metric_definition(self, name: str, object_type: ObjectType, help_text: str):
        """Define a metric (idempotent)"""

    @abstractmethod
    def metric(self, name: str, object_type: ObjectType, *labels):
        """Return a settable gauge handle for the given label path"""

    @abstractmethod
    def remove_all_child_metrics(self, *label_prefix, object_types: Optional[Iterable[ObjectType]] = None):
        """
        Remove every exported value whose label path starts with label_prefix

        Args:
            label_prefix: Leading label values to match
            object_types: Only consider metrics of these object types (all when None)
        """


class PrometheusMetricsSink(MetricsSink):
    """
    MetricsSink backed by prometheus_client gauges.

    Each sink owns its CollectorRegistry; nothing is registered in the
    process-wide default registry unless that registry is passed in.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()
        self.gauges = {}  # Dict[exported_name, Gauge]
        self.label_names = {}  # Dict[exported_name, Tuple[str, ...]]
        self.object_types = {}  # Dict[exported_name, ObjectType]
        self.lock = threading.RLock()

    @staticmethod
    def exported_name(name: str, object_type: ObjectType) -> str:
        """Prometheus name for a metric of the given object type"""
        return _INVALID_NAME_CHARS.sub("_", f"streams_{object_type.prefix}_{name}")

    def create_metric_definition(self, name: str, object_type: ObjectType, help_text: str) -> Gauge:
        full_name = self.exported_name(name, object_type)
        with self.lock:
            gauge = self.gauges.get(full_name)
            if gauge is None:
                gauge = Gauge(full_name, help_text,
                              labelnames=object_type.label_names,
                              registry=self.registry)
                self.gauges[full_name] = gauge
                self.label_names[full_name] = object_type.label_names
                self.object_types[full_name] = object_type
                logger.debug(f"Created metric {full_name}")
            return gauge

    def metric(self, name: str, object_type: ObjectType, *labels):
        if len(labels) != len(object_type.label_names):
            raise ValueError(
                f"{object_type.name} metric {name} expects labels {object_type.label_names}, got {labels}")
        gauge = self.create_metric_definition(
            name, object_type, f"Streams {object_type.prefix} metric: {name}")
        return gauge.labels(*[_label_value(v) for v in labels])

    def remove_all_child_metrics(self, *label_prefix, object_types: Optional[Iterable[ObjectType]] = None):
        prefix = tuple(_label_value(v) for v in label_prefix)
        types = frozenset(object_types) if object_types is not None else None
        removed = 0
        with self.lock:
            for full_name, gauge in self.gauges.items():
                if types is not None and self.object_types[full_name] not in types:
                    continue
                names = self.label_names[full_name]
                if len(names) < len(prefix):
                    continue
                stale = set()
                for family in gauge.collect():
                    for sample in family.samples:
                        values = tuple(sample.labels.get(n, "") for n in names)
                        if values[:len(prefix)] == prefix:
                            stale.add(values)
                for values in stale:
                    try:
                        gauge.remove(*values)
                        removed += 1
                    except KeyError:
                        pass
        logger.debug(f"Removed {removed} exported values under {prefix}")

    def sample_value(self, name: str, object_type: ObjectType, *labels) -> Optional[float]:
        """Current value of an exported gauge, None if it is not exported"""
        labels_dict = dict(zip(object_type.label_names, (_label_value(v) for v in labels)))
        return self.registry.get_sample_value(self.exported_name(name, object_type), labels_dict)

    def label_sets(self, name: str, object_type: ObjectType) -> List[Tuple[str, ...]]:
        """All label paths currently exported for a metric"""
        full_name = self.exported_name(name, object_type)
        with self.lock:
            gauge = self.gauges.get(full_name)
            if gauge is None:
                return []
            names = self.label_names[full_name]
            return [tuple(sample.labels.get(n, "") for n in names)
                    for family in gauge.collect() for sample in family.samples]

    def exposition(self) -> bytes:
        """Prometheus text exposition of the whole catalog"""
        return generate_latest(self.registry)