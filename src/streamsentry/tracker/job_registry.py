#!/usr/bin/env python3
"""
Job Registry for StreamSentry

Keyed collection of JobState objects for one instance. After every
successful snapshot reconciliation the registry holds exactly the jobs the
snapshot listed: unknown jobs are added, listed jobs get their new snapshot,
and jobs the snapshot no longer lists are removed together with everything
they exported.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from streamsentry.monitoring.metrics_sink import MetricsSink
from streamsentry.monitoring.payloads import Job
from streamsentry.tracker.job_state import JobState

logger = logging.getLogger("JobRegistry")


@dataclass
class ReconcileResult:
    """Job ids touched by one reconciliation"""
    added: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)


class JobRegistry:
    """Jobs of one instance, keyed by job id"""

    def __init__(self, domain_name: str, instance_name: str, sink: MetricsSink):
        self.domain_name = domain_name
        self.instance_name = instance_name
        self.sink = sink
        self.jobs = {}  # Dict[job_id, JobState]

    def __len__(self) -> int:
        return len(self.jobs)

    def __contains__(self, job_id: str) -> bool:
        return job_id in self.jobs

    def job_ids(self) -> List[str]:
        return list(self.jobs.keys())

    def get_job(self, job_id: str) -> Optional[JobState]:
        return self.jobs.get(job_id)

    def job_name_index(self) -> Dict[str, str]:
        """Job name to job id, for jobs whose snapshot supplied a name"""
        return {job.name: job_id for job_id, job in self.jobs.items() if job.name is not None}

    def add_job(self, job_id: str, snapshot: Optional[str] = None) -> JobState:
        """Track a new job"""
        logger.debug(f"Adding job {job_id} to the registry of {self.instance_name}")
        job = JobState(job_id, self.domain_name, self.instance_name, self.sink)
        job.set_snapshot(snapshot)
        self.jobs[job_id] = job
        return job

    def remove_job(self, job_id: str) -> bool:
        """Stop tracking a job and remove its exported metrics"""
        job = self.jobs.pop(job_id, None)
        if job is None:
            return False
        logger.debug(f"Removing job {job_id} from the registry of {self.instance_name}")
        job.close()
        return True

    def clear(self):
        for job_id in list(self.jobs.keys()):
            self.remove_job(job_id)

    def reconcile(self, jobs: Iterable[Job]) -> ReconcileResult:
        """
        Make the registry match a snapshot payload

        Args:
            jobs: Jobs listed by the latest snapshot

        Returns:
            ReconcileResult with the ids added, updated and removed
        """
        result = ReconcileResult()
        leftover = set(self.jobs.keys())

        for snapshot_job in jobs:
            job = self.jobs.get(snapshot_job.job_id)
            if job is not None:
                job.set_snapshot(snapshot_job.raw)
                leftover.discard(snapshot_job.job_id)
                result.updated.append(snapshot_job.job_id)
                logger.debug(f"Updated snapshot for job {snapshot_job.job_id}")
            else:
                logger.warning(f"Received snapshot for job {snapshot_job.job_id} that is not in the registry, adding it")
                self.add_job(snapshot_job.job_id, snapshot_job.raw)
                result.added.append(snapshot_job.job_id)

        if leftover:
            logger.warning("There are jobs in the registry that the snapshot no longer lists, removing them")
            for job_id in leftover:
                logger.warning(f"Job {job_id} was not in the snapshot, removing it from the registry")
                self.remove_job(job_id)
                result.removed.append(job_id)

        return result

    def dispatch_metrics(self, jobs: Iterable[Job]) -> List[str]:
        """
        Store each job's metrics entry on its JobState

        Returns:
            Ids present in the metrics payload but not in the registry
        """
        unknown = []
        for metrics_job in jobs:
            job = self.jobs.get(metrics_job.job_id)
            if job is not None:
                job.set_metrics(metrics_job.raw)
            else:
                logger.warning(
                    f"Received metrics for job {metrics_job.job_id} that is not in the registry, "
                    f"the next snapshot should rectify this, report an issue if it persists")
                unknown.append(metrics_job.job_id)
        return unknown

    def refresh_all(self):
        """Ask every job to re-derive its exported metrics"""
        logger.debug(f"Refreshing {len(self.jobs)} jobs of {self.instance_name}")
        for job_id in list(self.jobs.keys()):
            job = self.jobs[job_id]
            job.refresh(job.snapshot, job.metrics)

    def get_job_info(self) -> List[Dict]:
        return [job.get_job_info() for job in self.jobs.values()]

    def __str__(self) -> str:
        return "\n".join(f"Job {job_id}: {job}" for job_id, job in self.jobs.items())
