"""
In-process collaborators and payload builders shared by the test suites
"""

import json

from streamsentry.monitoring.bean_source import BeanSource, InstanceDescriptor
from streamsentry.monitoring.feeds import JobFeed

DOMAIN = "StreamsDomain"
INSTANCE = "StreamsInstance"
START_TIME = 1700000000.0


class FakeBeanSource(BeanSource):
    """BeanSource answering from attributes the test sets"""

    def __init__(self, descriptor=None, resource_metrics=None):
        super().__init__()
        self.descriptor = descriptor
        self.resource_metrics = resource_metrics or {}
        self.descriptor_error = None
        self.resource_error = None
        self.subscriptions = []  # (instance_ref, filter, handler)
        self.unsubscribe_calls = 0

    def get_instance_descriptor(self, domain_name, instance_name):
        if self.descriptor_error is not None:
            raise self.descriptor_error
        return self.descriptor

    def subscribe(self, instance_ref, notification_filter, handler):
        self.subscriptions.append((instance_ref, notification_filter, handler))

    def unsubscribe(self, instance_ref, handler):
        self.unsubscribe_calls += 1
        self.subscriptions = [s for s in self.subscriptions if s[2] != handler]

    def get_resource_metrics(self, domain_name, instance_name):
        if self.resource_error is not None:
            raise self.resource_error
        return {resource: dict(metrics) for resource, metrics in self.resource_metrics.items()}

    def notify(self, notification):
        for _, notification_filter, handler in list(self.subscriptions):
            if notification_filter.is_enabled(notification):
                handler(notification)

    def interrupt(self):
        self._notify_interrupted()


def running_descriptor(status="running"):
    return InstanceDescriptor(name=INSTANCE, status=status, start_time=START_TIME)


class FakeFeed(JobFeed):
    """Feed returning whatever its factory currently holds"""

    def __init__(self, kind, domain_name, instance_name, factory):
        super().__init__(kind, domain_name, instance_name)
        self.factory = factory
        self.fetch_count = 0

    def fetch(self):
        self.fetch_count += 1
        if self.factory.error is not None:
            raise self.factory.error
        return self.factory.payload


class FakeFeedFactory:
    """Feed factory; tests set payload or error to drive every feed it created"""

    def __init__(self, kind):
        self.kind = kind
        self.payload = None
        self.error = None
        self.created = []

    def __call__(self, domain_name, instance_name):
        feed = FakeFeed(self.kind, domain_name, instance_name, self)
        self.created.append(feed)
        return feed


# ----------------------------------------------------------------------
# Payload builders
# ----------------------------------------------------------------------

def metric(name, value):
    return {"name": name, "value": value}


def snapshot_operator(name, kind, input_names=(), output_names=()):
    return {
        "name": name,
        "operatorKind": kind,
        "inputPorts": [{"indexWithinOperator": i, "name": n} for i, n in enumerate(input_names)],
        "outputPorts": [{"indexWithinOperator": i, "name": n} for i, n in enumerate(output_names)],
    }


def snapshot_pe(pe_id, resource="host1", health="healthy", status="running", operators=(), launch_count=1):
    return {
        "id": pe_id,
        "resource": resource,
        "health": health,
        "status": status,
        "launchCount": launch_count,
        "operators": list(operators),
    }


def snapshot_job(job_id, name=None, health="healthy", status="running", pes=()):
    job = {"id": job_id, "health": health, "status": status, "instance": INSTANCE, "pes": list(pes)}
    if name is not None:
        job["name"] = name
    return job


def connection(connection_id, congestion):
    return {"id": connection_id, "metrics": [metric("congestionFactor", congestion)]}


def metrics_pe_port(index, metrics=(), connections=()):
    return {"indexWithinPE": index, "metrics": list(metrics), "connections": list(connections)}


def metrics_operator_port(index, metrics=()):
    return {"indexWithinOperator": index, "metrics": list(metrics)}


def metrics_operator(name, metrics=(), input_ports=(), output_ports=()):
    return {
        "name": name,
        "metrics": list(metrics),
        "inputPorts": list(input_ports),
        "outputPorts": list(output_ports),
    }


def metrics_pe(pe_id, metrics=(), input_ports=(), output_ports=(), operators=()):
    return {
        "id": pe_id,
        "metrics": list(metrics),
        "inputPorts": list(input_ports),
        "outputPorts": list(output_ports),
        "operators": list(operators),
    }


def metrics_job(job_id, pes=()):
    return {"id": job_id, "pes": list(pes)}


def jobs_payload(*jobs):
    return json.dumps({"jobs": list(jobs)})


def raw(job):
    return json.dumps(job)
