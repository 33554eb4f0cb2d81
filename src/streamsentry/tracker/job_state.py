#!/usr/bin/env python3
"""
Job State for StreamSentry

Holds the latest snapshot and metrics of one job and turns them into
exported metrics. The metrics feed identifies ports only by position and
carries no placement or health, so every refresh first rebuilds lookup
tables (PE placement/health, operator kinds, operator port names) from the
snapshot and only then walks the metrics.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from streamsentry.monitoring.metric_mapping import (
    health_as_metric,
    is_healthy,
    job_labels,
    operator_labels,
    pe_labels,
)
from streamsentry.monitoring.metrics_sink import JOB_OBJECT_TYPES, MetricsSink, ObjectType
from streamsentry.monitoring.payloads import Failed, Job, Operator, ProcessingElement, parse_job

logger = logging.getLogger("JobState")

CONGESTION_FACTOR = "congestionFactor"

# PE metrics summed into job-level metrics of the same name
SUMMED_PE_METRICS = ("nCpuMilliseconds", "nResidentMemoryConsumption", "nMemoryConsumption")

JOB_METRIC_DEFINITIONS = {
    "healthy": "Job health, 1: healthy, .5: partially healthy or unhealthy, 0: unhealthy or unknown",
    "nCpuMilliseconds": "Sum of each pe metric: nCpuMilliseconds",
    "nResidentMemoryConsumption": "Sum of each pe metric: nResidentMemoryConsumption",
    "nMemoryConsumption": "Sum of each pe metric: nMemoryConsumption",
    "avg_congestionFactor": "Average of all pe connection metric: congestionFactor",
    "max_congestionFactor": "Maximum of all pe connection metric: congestionFactor",
    "min_congestionFactor": "Minimum of all pe connection metric: congestionFactor",
    "sum_congestionFactor": "Sum of each pe connection metric: congestionFactor",
    "pecount": "Number of pes deployed for this job",
}


class PortDirection(Enum):
    INPUT = "input"
    OUTPUT = "output"


@dataclass(frozen=True)
class PeInfo:
    """Placement and health of a PE as reported by the snapshot"""
    status: Optional[str]
    health: Optional[str]
    resource: Optional[str]


@dataclass
class JobAggregates:
    """Job-level values accumulated while walking a metrics payload"""
    pe_count: int = 0
    nCpuMilliseconds: int = 0
    nResidentMemoryConsumption: int = 0
    nMemoryConsumption: int = 0
    connection_count: int = 0
    congestion_sum: int = 0
    congestion_max: int = 0
    congestion_min: Optional[int] = None  # None until a congestion value is seen

    def add_pe_metric(self, name: str, value):
        if name in SUMMED_PE_METRICS:
            setattr(self, name, getattr(self, name) + value)

    def add_congestion(self, value):
        self.congestion_sum += value
        if value > self.congestion_max:
            self.congestion_max = value
        if self.congestion_min is None or value < self.congestion_min:
            self.congestion_min = value

    @property
    def congestion_avg(self) -> float:
        if self.connection_count == 0:
            return 0
        return self.congestion_sum / self.connection_count


class JobState:
    """
    State of one job of a monitored instance.

    The registry stores raw snapshot/metrics strings on the job; refresh()
    replaces everything this job previously exported with values derived
    from those strings.
    """

    def __init__(self, job_id: str, domain_name: str, instance_name: str, sink: MetricsSink):
        self.job_id = job_id
        self.domain_name = domain_name
        self.instance_name = instance_name
        self.sink = sink

        self.snapshot = None  # Optional[str]
        self.metrics = None  # Optional[str]

        self.name = None
        self.status = None
        self.health = None
        self.instance = None

        # Lookup tables, rebuilt from each snapshot
        self.pe_info = {}  # Dict[pe_id, PeInfo]
        self.operator_kind = {}  # Dict[operator_name, kind]
        self.port_names = {
            PortDirection.INPUT: {},  # Dict[operator_name, Dict[indexWithinOperator, port_name]]
            PortDirection.OUTPUT: {},
        }

        self.aggregates = None  # Optional[JobAggregates]

        self.create_exported_metrics()

    @property
    def job_label(self) -> str:
        """Label value identifying this job in exported metrics"""
        return self.name or self.job_id

    def set_snapshot(self, snapshot: Optional[str]):
        self.snapshot = snapshot

    def set_metrics(self, metrics: Optional[str]):
        self.metrics = metrics

    def refresh(self, snapshot: Optional[str], metrics: Optional[str]):
        """
        Re-derive every exported metric of this job

        Args:
            snapshot: Raw JSON of this job's snapshot entry
            metrics: Raw JSON of this job's metrics entry
        """
        logger.debug(f"Job refresh: {self.job_id}")

        snapshot_job = None
        if snapshot is not None:
            result = parse_job(snapshot)
            if isinstance(result, Failed):
                logger.error(f"Snapshot of job {self.job_id} could not be parsed, keeping previous metrics: {result.reason}")
                return
            snapshot_job = result.value

        metrics_job = None
        if metrics is not None:
            result = parse_job(metrics)
            if isinstance(result, Failed):
                logger.error(f"Metrics of job {self.job_id} could not be parsed, skipping them: {result.reason}")
            else:
                metrics_job = result.value

        # Labels such as resource change when PEs move, so start from nothing
        self.remove_exported_metrics()
        self.create_exported_metrics()

        self.snapshot = snapshot
        self.metrics = metrics

        self.process_snapshot(snapshot_job)
        self.process_metrics(metrics_job)

    def process_snapshot(self, job: Optional[Job]):
        """Rebuild the lookup tables and export snapshot-derived metrics"""
        self.pe_info.clear()
        self.operator_kind.clear()
        for table in self.port_names.values():
            table.clear()

        if job is None:
            return

        self.instance = job.instance
        self.status = job.status
        self.health = job.health
        self.name = job.name

        logger.debug(f"Snapshot of job {self.job_label}: status {job.status}, health {job.health}")

        self.sink.metric("healthy", ObjectType.JOB, *self._job_path()).set(health_as_metric(job.health))

        for pe in job.pes:
            self.pe_info[pe.pe_id] = PeInfo(status=pe.status, health=pe.health, resource=pe.resource)
            self._map_operator_kinds_and_port_names(pe)

            if pe.launch_count is not None:
                self.sink.metric("launchCount", ObjectType.PE,
                                 *self._pe_path(pe.resource, pe.pe_id)).set(pe.launch_count)

    def _map_operator_kinds_and_port_names(self, pe: ProcessingElement):
        for operator in pe.operators:
            self.operator_kind[operator.name] = operator.operator_kind
            self.port_names[PortDirection.INPUT][operator.name] = {
                port.index_within_operator: port.name for port in operator.input_ports
            }
            self.port_names[PortDirection.OUTPUT][operator.name] = {
                port.index_within_operator: port.name for port in operator.output_ports
            }

    def process_metrics(self, job: Optional[Job]):
        """
        Export PE, port, connection and operator metrics and the job aggregates

        PEs that are not healthy are skipped entirely: while a PE relocates its
        resource is not reliable and would label the series with a stale host.
        """
        if job is None:
            return

        aggregates = JobAggregates(pe_count=len(job.pes))

        for pe in job.pes:
            info = self.pe_info.get(pe.pe_id)
            if info is None:
                logger.debug(f"Metrics for pe {pe.pe_id} of job {self.job_label} have no snapshot entry, skipping")
                continue

            logger.debug(f"Metrics, pe: {pe.pe_id} resource: {info.resource} status: {info.status} health: {info.health}")

            if not is_healthy(info.health):
                logger.info(f"Metrics, pe: {pe.pe_id} is NOT healthy, NOT setting metrics")
                continue

            pe_path = self._pe_path(info.resource, pe.pe_id)

            for metric in pe.metrics:
                aggregates.add_pe_metric(metric.name, metric.value)
                self.sink.metric(metric.name, ObjectType.PE, *pe_path).set(metric.value)

            for port in pe.input_ports:
                for metric in port.metrics:
                    self.sink.metric(metric.name, ObjectType.PE_INPUTPORT,
                                     *pe_path, port.index_within_pe).set(metric.value)

            for port in pe.output_ports:
                for metric in port.metrics:
                    self.sink.metric(metric.name, ObjectType.PE_OUTPUTPORT,
                                     *pe_path, port.index_within_pe).set(metric.value)

                for connection in port.connections:
                    aggregates.connection_count += 1
                    for metric in connection.metrics:
                        if metric.name == CONGESTION_FACTOR:
                            aggregates.add_congestion(metric.value)
                        self.sink.metric(metric.name, ObjectType.PE_OUTPUTPORT_CONNECTION,
                                         *pe_path, port.index_within_pe,
                                         connection.connection_id).set(metric.value)

            for operator in pe.operators:
                self._process_operator_metrics(pe_path, operator)

        self.aggregates = aggregates
        self._export_aggregates(aggregates)

    def _process_operator_metrics(self, pe_path: Tuple[str, ...], operator: Operator):
        operator_path = operator_labels(pe_path, operator.name, self.operator_kind.get(operator.name))

        for metric in operator.metrics:
            self.sink.metric(metric.name, ObjectType.OPERATOR, *operator_path).set(metric.value)

        for port in operator.input_ports:
            port_name = self.resolve_port_name(PortDirection.INPUT, operator.name, port.index_within_operator)
            for metric in port.metrics:
                self.sink.metric(metric.name, ObjectType.OPERATOR_INPUTPORT,
                                 *operator_path, port_name).set(metric.value)

        for port in operator.output_ports:
            port_name = self.resolve_port_name(PortDirection.OUTPUT, operator.name, port.index_within_operator)
            for metric in port.metrics:
                self.sink.metric(metric.name, ObjectType.OPERATOR_OUTPUTPORT,
                                 *operator_path, port_name).set(metric.value)

    def resolve_port_name(self, direction: PortDirection, operator_name: str, index: str) -> str:
        """Snapshot name of an operator port, or its index when the snapshot does not know it"""
        names = self.port_names[direction].get(operator_name)
        if names:
            name = names.get(index)
            if name is not None:
                return name
        return index

    def _export_aggregates(self, aggregates: JobAggregates):
        path = self._job_path()
        self.sink.metric("pecount", ObjectType.JOB, *path).set(aggregates.pe_count)
        for name in SUMMED_PE_METRICS:
            self.sink.metric(name, ObjectType.JOB, *path).set(getattr(aggregates, name))
        self.sink.metric("sum_congestionFactor", ObjectType.JOB, *path).set(aggregates.congestion_sum)
        self.sink.metric("avg_congestionFactor", ObjectType.JOB, *path).set(aggregates.congestion_avg)
        self.sink.metric("max_congestionFactor", ObjectType.JOB, *path).set(aggregates.congestion_max)
        congestion_min = aggregates.congestion_min if aggregates.congestion_min is not None else 0
        self.sink.metric("min_congestionFactor", ObjectType.JOB, *path).set(congestion_min)

    def _job_path(self) -> Tuple[str, ...]:
        return job_labels(self.domain_name, self.instance_name, self.job_label)

    def _pe_path(self, resource: Optional[str], pe_id: str) -> Tuple[str, ...]:
        return pe_labels(self.domain_name, self.instance_name, self.job_label, resource, pe_id)

    def create_exported_metrics(self):
        # PE, port, connection and operator metrics are created as they are discovered
        for name, help_text in JOB_METRIC_DEFINITIONS.items():
            self.sink.create_metric_definition(name, ObjectType.JOB, help_text)

    def remove_exported_metrics(self):
        logger.debug(f"Removing exported metrics of job {self.job_label}")
        self.sink.remove_all_child_metrics(self.domain_name, self.instance_name, self.job_label,
                                           object_types=JOB_OBJECT_TYPES)

    def close(self):
        """Remove everything this job exported"""
        self.remove_exported_metrics()

    def get_job_info(self) -> Dict[str, Any]:
        return {
            "id": self.job_id,
            "name": self.name,
            "status": self.status,
            "health": self.health,
            "instance": self.instance or self.instance_name,
            "snapshot": self.snapshot,
            "metrics": self.metrics,
        }

    def __str__(self) -> str:
        return f"Job name: {self.name} Metrics: {self.metrics} Snapshot: {self.snapshot}"
