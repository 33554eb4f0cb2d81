#!/usr/bin/env python3
"""
Instance Tracker for StreamSentry

Keeps the exported view of one monitored instance eventually consistent with
the instance itself.

Initialization
    * Look up the instance through the bean source
    * Subscribe to instance notifications
    * Create (or clear) the snapshot and metrics feeds
Refresh
    * Export resource metrics
    * Pull the snapshot of all jobs and reconcile the job registry
    * Pull the metrics of all jobs and hand each job its entry
    * Let every job re-derive its exported metrics
Notifications
    * Status changes and deletion of the instance reset and clear the tracker

Scheduled refreshes, notifications and accessors are serialized by a single
lock per tracker.
"""

import time
import logging
import threading
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from streamsentry.common.errors import (
    EndpointNotFoundError,
    MalformedEndpointError,
    TrackerError,
    TrackerErrorCode,
    TransportError,
)
from streamsentry.monitoring.bean_source import (
    BeanSource,
    Notification,
    NotificationFilter,
    NotificationType,
)
from streamsentry.monitoring.feeds import JobFeed
from streamsentry.monitoring.metric_mapping import (
    STOPPED_STATUSES,
    InstanceStatus,
    instance_labels,
    resource_labels,
    status_as_metric,
)
from streamsentry.monitoring.metrics_sink import MetricsSink, ObjectType
from streamsentry.monitoring.payloads import Failed, parse_jobs_payload
from streamsentry.tracker.job_registry import JobRegistry

logger = logging.getLogger("InstanceTracker")

STATUS_ATTRIBUTE = "Status"

INSTANCE_METRIC_DEFINITIONS = {
    "status": "Instance status, 1: running, .5: partially up, 0: stopped, failed, unknown",
    "jobCount": "Number of jobs currently deployed into the streams instance",
}

FeedFactory = Callable[[str, str], JobFeed]


class TrackerState(Enum):
    UNINITIALIZED = "uninitialized"
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


@dataclass
class InstanceInfo:
    """What the tracker knows about its instance"""
    instance_name: str
    exists: bool = False
    available: bool = False
    status: InstanceStatus = InstanceStatus.UNKNOWN
    start_time: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.name
        return data


class InstanceTracker:
    """
    Tracks one instance of a domain.

    Transport failures never escape refresh(): they reset the tracker and
    the next scheduled refresh starts over with init().
    """

    def __init__(self, domain_name: str, instance_name: str,
                 bean_source: BeanSource,
                 sink: MetricsSink,
                 snapshot_source_factory: FeedFactory,
                 metrics_source_factory: FeedFactory):
        """
        Initialize the tracker; nothing is fetched until init() or refresh()

        Args:
            domain_name: Domain the instance belongs to
            instance_name: Name of the instance to track
            bean_source: Management connection for the domain
            sink: Metric catalog to publish into
            snapshot_source_factory: Called with (domain, instance) to create the snapshot feed
            metrics_source_factory: Called with (domain, instance) to create the metrics feed
        """
        logger.debug(f"** Initializing InstanceTracker for: {instance_name}")
        self.domain_name = domain_name
        self.bean_source = bean_source
        self.sink = sink
        self.snapshot_source_factory = snapshot_source_factory
        self.metrics_source_factory = metrics_source_factory

        self.instance_info = InstanceInfo(instance_name=instance_name)
        self.instance_path = instance_labels(domain_name, instance_name)
        self.initialized = False

        self.jobs_available = False
        self.metrics_available = False
        self.snapshots_available = False

        self.snapshot_source = None  # Optional[JobFeed]
        self.metrics_source = None  # Optional[JobFeed]

        self.instance_resource_metrics = {}  # Dict[resource, Dict[metric, value]]
        self.instance_resource_metrics_last_updated = None

        self.job_registry = JobRegistry(domain_name, instance_name, sink)

        self.notification_filter = NotificationFilter()
        self.notification_filter.enable_type(NotificationType.ATTRIBUTE_CHANGE)
        self.notification_filter.enable_type(NotificationType.INSTANCE_DELETED)

        self.lock = threading.RLock()

        self.bean_source.add_interruption_listener(self.bean_source_interrupted)

    @property
    def instance_name(self) -> str:
        return self.instance_info.instance_name

    @property
    def state(self) -> TrackerState:
        with self.lock:
            if not self.initialized:
                return TrackerState.UNINITIALIZED
            if self.instance_info.available:
                return TrackerState.AVAILABLE
            return TrackerState.UNAVAILABLE

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def init(self):
        """
        Look up the instance and prepare the tracker for refreshes

        Raises:
            TrackerError: the bean source URL is malformed (CONFIGURATION_ERROR)
        """
        with self.lock:
            logger.debug(f"init() for instance {self.instance_name}")
            self.initialized = True

            try:
                descriptor = self.bean_source.get_instance_descriptor(self.domain_name, self.instance_name)

                if descriptor is None:
                    logger.warning(
                        f"Instance '{self.instance_name}' not found.  Continuing assuming it will be created in the future")
                    self.instance_info.exists = False
                    self.reset_tracker()
                    return

                self.instance_info.exists = True
                self.instance_info.status = InstanceStatus.from_value(descriptor.status)
                self.instance_info.start_time = descriptor.start_time

                if descriptor.start_time is None:
                    logger.warning(
                        f"Instance '{self.instance_name}' found, but is not started.  "
                        f"Current Status: {self.instance_info.status.name}")
                    self.reset_tracker()
                    return

                logger.info(f"Instance '{self.instance_name}' found, Status: {self.instance_info.status.name}")
                self.instance_info.available = True
                self.jobs_available = False
                self.metrics_available = False

                self._subscribe()

            except EndpointNotFoundError:
                logger.warning(
                    f"Instance '{self.instance_name}' not found when initializing.  "
                    f"Continuing assuming it will be created in the future")
                self.instance_info.exists = False
                self.reset_tracker()
                return
            except MalformedEndpointError as e:
                self.reset_tracker()
                raise TrackerError(TrackerErrorCode.CONFIGURATION_ERROR,
                                   f"Invalid bean source URL when initializing instance: {e}") from e
            except TransportError as e:
                logger.warning(
                    f"Transport error when initializing instance, continuing to wait for reconnect: {e}")
                self.reset_tracker()
                return

            self.snapshot_source = self._init_feed(self.snapshot_source, self.snapshot_source_factory, "snapshots")
            self.metrics_source = self._init_feed(self.metrics_source, self.metrics_source_factory, "metrics")

            self.create_exported_instance_metrics()

    def _subscribe(self):
        instance_ref = (self.domain_name, self.instance_name)
        # Drop any earlier subscription so notifications are not delivered twice
        try:
            self.bean_source.unsubscribe(instance_ref, self.handle_notification)
        except TransportError as e:
            logger.debug(f"Ignoring failure to remove previous subscription: {e}")
        self.bean_source.subscribe(instance_ref, self.notification_filter, self.handle_notification)

    def _init_feed(self, feed: Optional[JobFeed], factory: FeedFactory, kind: str) -> Optional[JobFeed]:
        # Reuse an existing feed so its refresh timing attributes survive
        if feed is not None:
            feed.clear()
            return feed
        try:
            return factory(self.domain_name, self.instance_name)
        except IOError as e:
            logger.warning(f"IO error when initializing all job {kind}, resetting the tracker: {e}")
            self.reset_tracker()
            return None

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    def refresh(self):
        """
        Bring the exported metrics up to date with the instance

        Called by the scheduler. Transport failures reset the tracker and are
        retried on the next call.
        """
        with self.lock:
            logger.debug(f"** INSTANCE Refresh: {self.instance_name}")
            logger.debug(
                f"    current state: available: {self.instance_info.available}, jobsAvailable: {self.jobs_available}, "
                f"metricsAvailable: {self.metrics_available}, snapshotsAvailable: {self.snapshots_available}")
            started = time.time()

            if not self.instance_info.available:
                self.init()

            # A failing step resets the tracker but the rest of this cycle still runs
            if self.instance_info.available:
                self._update_instance_resource_metrics()
                self._update_all_job_snapshots()
                self._update_all_job_metrics()
                self.job_registry.refresh_all()
            else:
                logger.debug(f"Instance refresh: instance {self.instance_name} is not available")

            logger.debug(f"InstanceTracker({self.instance_name}) Refresh Time (ms): {(time.time() - started) * 1000:.0f}")

    def _update_instance_resource_metrics(self):
        previous = self.instance_resource_metrics

        try:
            current = self.bean_source.get_resource_metrics(self.domain_name, self.instance_name)
        except MalformedEndpointError as e:
            self.reset_tracker()
            raise TrackerError(TrackerErrorCode.CONFIGURATION_ERROR,
                               f"Invalid bean source URL when retrieving resource metrics: {e}") from e
        except TransportError as e:
            logger.warning(f"Retrieving resource metrics failed, resetting the tracker: {e}")
            self.reset_tracker()
            return

        self.instance_resource_metrics = {resource: dict(metrics) for resource, metrics in current.items()}
        self.instance_resource_metrics_last_updated = time.time()

        for resource_name in previous:
            if resource_name not in self.instance_resource_metrics:
                logger.debug(f"Resource {resource_name} is gone, removing its metrics")
                self.sink.remove_all_child_metrics(*resource_labels(self.domain_name, self.instance_name, resource_name),
                                                   object_types=(ObjectType.RESOURCE,))

        for resource_name, metrics in self.instance_resource_metrics.items():
            for metric_name, value in metrics.items():
                try:
                    value = float(value)
                except (TypeError, ValueError):
                    logger.warning(f"Ignoring non-numeric resource metric {metric_name}={value!r} of {resource_name}")
                    continue
                self.sink.metric(metric_name, ObjectType.RESOURCE,
                                 *resource_labels(self.domain_name, self.instance_name, resource_name)).set(value)

    def _update_all_job_snapshots(self):
        if self.snapshot_source is None:
            logger.error("Attempted to update snapshots but did not have a snapshot source available")
            return

        started = time.time()
        try:
            self.snapshot_source.refresh()
        except IOError as e:
            logger.error(f"Updating all snapshots received an IO error, resetting the tracker: {e}")
            self.reset_tracker()
            return

        if self.snapshot_source.is_last_refresh_failed():
            logger.debug("updateAllJobSnapshots, last snapshot refresh failed")
            return

        payload = self.snapshot_source.get_payload()
        if payload is None:
            return

        result = parse_jobs_payload(payload)
        if isinstance(result, Failed):
            logger.error(f"Snapshot payload could not be parsed, skipping this cycle: {result.reason}")
            return

        reconciled = self.job_registry.reconcile(result.value)
        self.snapshots_available = True
        self.jobs_available = True
        self._publish_job_count()

        logger.debug(
            f"Snapshots reconciled in {(time.time() - started) * 1000:.0f} ms: "
            f"{len(reconciled.added)} added, {len(reconciled.updated)} updated, {len(reconciled.removed)} removed")

    def _update_all_job_metrics(self):
        if self.metrics_source is None:
            logger.error("Attempted to update metrics but did not have a metrics source available")
            return

        try:
            self.metrics_source.refresh()
        except IOError as e:
            logger.error(f"Updating all metrics received an IO error, resetting the tracker: {e}")
            self.reset_tracker()
            return

        if self.metrics_source.is_last_refresh_failed():
            logger.debug("updateAllJobMetrics, last metrics refresh failed")
            return

        payload = self.metrics_source.get_payload()
        if payload is None:
            return

        result = parse_jobs_payload(payload)
        if isinstance(result, Failed):
            logger.error(f"Metrics payload could not be parsed, skipping this cycle: {result.reason}")
            return

        self.job_registry.dispatch_metrics(result.value)
        self.metrics_available = True

    # ------------------------------------------------------------------
    # Reset / clear
    # ------------------------------------------------------------------

    def reset_tracker(self):
        """
        Mark the tracker unavailable so the next refresh re-initializes it

        Used after any error that may have invalidated the tracked state.
        """
        with self.lock:
            self.instance_info.available = False
            self.jobs_available = False
            self.metrics_available = False
            self.snapshots_available = False

            failed_at = time.time()
            for feed in (self.metrics_source, self.snapshot_source):
                if feed is not None:
                    feed.mark_refresh_failed(failed_at)

            self.remove_exported_instance_metrics()
            self.create_exported_instance_metrics()

    def clear_tracker(self):
        """Drop everything known about the instance; used once it is stopped or deleted"""
        with self.lock:
            self.instance_resource_metrics = {}
            self.remove_exported_instance_metrics()
            self.create_exported_instance_metrics()
            if self.metrics_source is not None:
                self.metrics_source.clear()
            if self.snapshot_source is not None:
                self.snapshot_source.clear()
            self.job_registry.clear()

    def bean_source_interrupted(self, bean_source: BeanSource):
        logger.debug("***** Instance tracker bean source interrupted, resetting the tracker...")
        self.reset_tracker()

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def handle_notification(self, notification: Notification):
        """Apply an instance notification; never raises"""
        try:
            with self.lock:
                logger.debug(f"Instance ({self.instance_name}) notification: {notification}")

                if notification.type == NotificationType.ATTRIBUTE_CHANGE:
                    if notification.attribute == STATUS_ATTRIBUTE:
                        self._handle_status_change(notification)
                elif notification.type == NotificationType.INSTANCE_DELETED:
                    logger.info(
                        f"Instance ({self.instance_name}) deleted from domain, resetting the tracker and "
                        f"waiting for the instance to be recreated")
                    self.instance_info.exists = False
                    self.instance_info.start_time = None
                    self.reset_tracker()
                    self.clear_tracker()
                else:
                    logger.debug(f"Ignoring notification of type {notification.type.name}")
        except Exception as e:
            logger.error(f"Instance ({self.instance_name}) notification handler caught exception: {e}", exc_info=True)

    def _handle_status_change(self, notification: Notification):
        old_status = InstanceStatus.from_value(notification.old_value)
        new_status = InstanceStatus.from_value(notification.new_value)
        logger.info(f"Instance ({self.instance_name}) status changed from: {old_status.name} to: {new_status.name}")
        self.instance_info.status = new_status

        if new_status in STOPPED_STATUSES:
            logger.info(
                f"Instance ({self.instance_name}) status reflects a not available status ({new_status.name}), "
                f"the tracker will reset and reinitialize when the instance is available")
            self.instance_info.start_time = None
            self.reset_tracker()
            self.clear_tracker()

        self._publish_status()

    # ------------------------------------------------------------------
    # Exported instance metrics
    # ------------------------------------------------------------------

    def create_exported_instance_metrics(self):
        for name, help_text in INSTANCE_METRIC_DEFINITIONS.items():
            self.sink.create_metric_definition(name, ObjectType.INSTANCE, help_text)
        self._publish_status()
        self.sink.metric("jobCount", ObjectType.INSTANCE, *self.instance_path).set(0)

    def remove_exported_instance_metrics(self):
        self.sink.remove_all_child_metrics(*self.instance_path)

    def _publish_status(self):
        self.sink.metric("status", ObjectType.INSTANCE, *self.instance_path).set(
            status_as_metric(self.instance_info.status))

    def _publish_job_count(self):
        self.sink.metric("jobCount", ObjectType.INSTANCE, *self.instance_path).set(
            len(self.job_registry))

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def _verify_instance_exists(self, code: TrackerErrorCode = TrackerErrorCode.INSTANCE_NOT_FOUND):
        if not self.instance_info.exists:
            raise TrackerError(code, f"The instance {self.instance_name} does not exist.")

    def get_instance_info(self) -> InstanceInfo:
        with self.lock:
            return replace(self.instance_info)

    def get_instance_resource_metrics(self) -> Dict[str, Dict[str, Any]]:
        with self.lock:
            self._verify_instance_exists()
            return {resource: dict(metrics) for resource, metrics in self.instance_resource_metrics.items()}

    def get_all_job_info(self) -> List[Dict[str, Any]]:
        with self.lock:
            self._verify_instance_exists(TrackerErrorCode.ALL_JOBS_NOT_AVAILABLE)
            if not self.jobs_available:
                return []
            return self.job_registry.get_job_info()

    def get_job_info(self, job_id: str) -> Dict[str, Any]:
        with self.lock:
            job = self.job_registry.get_job(job_id)
            if job is None:
                raise TrackerError(TrackerErrorCode.JOB_NOT_FOUND, f"Job id {job_id} does not exist")
            return job.get_job_info()

    def get_snapshot_source(self) -> JobFeed:
        with self.lock:
            self._verify_instance_exists(TrackerErrorCode.ALL_SNAPSHOTS_NOT_AVAILABLE)
            if self.snapshot_source is None:
                raise TrackerError(TrackerErrorCode.ALL_SNAPSHOTS_NOT_AVAILABLE,
                                   "The snapshot source does not exist. Snapshots have never been retrieved.")
            return self.snapshot_source

    def get_metrics_source(self) -> JobFeed:
        with self.lock:
            self._verify_instance_exists(TrackerErrorCode.ALL_METRICS_NOT_AVAILABLE)
            if self.metrics_source is None:
                raise TrackerError(TrackerErrorCode.ALL_METRICS_NOT_AVAILABLE,
                                   "The metrics source does not exist. Metrics have never been retrieved.")
            return self.metrics_source

    def to_dict(self) -> Dict[str, Any]:
        with self.lock:
            return {
                "domain": self.domain_name,
                "instance": self.instance_info.to_dict(),
                "state": self.state.value,
                "jobs_available": self.jobs_available,
                "metrics_available": self.metrics_available,
                "snapshots_available": self.snapshots_available,
                "job_count": len(self.job_registry),
                "instance_resource_metrics_last_updated": self.instance_resource_metrics_last_updated,
                "snapshots": self.snapshot_source.to_dict() if self.snapshot_source else None,
                "metrics": self.metrics_source.to_dict() if self.metrics_source else None,
            }

    def close(self):
        """Unsubscribe and remove everything exported for the instance"""
        with self.lock:
            try:
                self.bean_source.unsubscribe((self.domain_name, self.instance_name), self.handle_notification)
            except TransportError as e:
                logger.warning(f"Failed to unsubscribe from instance {self.instance_name}: {e}")
            self.bean_source.remove_interruption_listener(self.bean_source_interrupted)
            self.remove_exported_instance_metrics()

    def __str__(self) -> str:
        with self.lock:
            lines = [
                f"Domain: {self.domain_name}",
                f"Instance: {self.instance_name}, status: {self.instance_info.status.name}, "
                f"instanceStartTime: {_format_time(self.instance_info.start_time)}",
                f"instanceAvailable: {self.instance_info.available}",
                f"jobMapAvailable: {self.jobs_available}",
                f"jobMetricsAvailable: {self.metrics_available}",
                f"jobSnapshotsAvailable: {self.snapshots_available}",
                f"instanceResourceMetricsLastUpdated: {_format_time(self.instance_resource_metrics_last_updated)}",
            ]
            if self.jobs_available:
                lines.append(str(self.job_registry))
            return "\n".join(lines)


def _format_time(timestamp: Optional[float]) -> str:
    if timestamp is None:
        return "null"
    return time.strftime("%Y %m %d %H:%M:%S", time.localtime(timestamp))
