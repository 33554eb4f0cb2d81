import unittest

from streamsentry.monitoring.metrics_sink import ObjectType, PrometheusMetricsSink
from streamsentry.tracker.job_state import JobState, PortDirection

from support import (
    DOMAIN,
    INSTANCE,
    connection,
    metric,
    metrics_job,
    metrics_operator,
    metrics_operator_port,
    metrics_pe,
    metrics_pe_port,
    raw,
    snapshot_job,
    snapshot_operator,
    snapshot_pe,
)

JOB_NAME = "app::Main"


class TestJobState(unittest.TestCase):
    def setUp(self):
        self.sink = PrometheusMetricsSink()
        self.job = JobState("7", DOMAIN, INSTANCE, self.sink)

    def job_value(self, name):
        return self.sink.sample_value(name, ObjectType.JOB, DOMAIN, INSTANCE, JOB_NAME)

    def pe_value(self, name, resource, pe_id):
        return self.sink.sample_value(name, ObjectType.PE, DOMAIN, INSTANCE, JOB_NAME, resource, pe_id)

    def refresh(self, snapshot, metrics):
        self.job.refresh(raw(snapshot), raw(metrics) if metrics is not None else None)

    def test_pe_metrics_are_summed_into_job(self):
        snapshot = snapshot_job("7", name=JOB_NAME, pes=[
            snapshot_pe("1", resource="host1"),
            snapshot_pe("2", resource="host2"),
        ])
        metrics = metrics_job("7", pes=[
            metrics_pe("1", metrics=[metric("nCpuMilliseconds", 100), metric("nMemoryConsumption", 10)]),
            metrics_pe("2", metrics=[metric("nCpuMilliseconds", 200), metric("nMemoryConsumption", 30)]),
        ])

        self.refresh(snapshot, metrics)

        self.assertEqual(self.job_value("healthy"), 1.0)
        self.assertEqual(self.job_value("pecount"), 2.0)
        self.assertEqual(self.job_value("nCpuMilliseconds"), 300.0)
        self.assertEqual(self.job_value("nMemoryConsumption"), 40.0)
        self.assertEqual(self.pe_value("nCpuMilliseconds", "host2", "2"), 200.0)
        self.assertEqual(self.pe_value("launchCount", "host1", "1"), 1.0)

    def test_unhealthy_pe_is_skipped(self):
        snapshot = snapshot_job("7", name=JOB_NAME, health="partiallyHealthy", pes=[
            snapshot_pe("1", resource="host1"),
            snapshot_pe("2", resource="host2", health="unhealthy"),
        ])
        metrics = metrics_job("7", pes=[
            metrics_pe("1", metrics=[metric("nCpuMilliseconds", 100)]),
            metrics_pe("2", metrics=[metric("nCpuMilliseconds", 200)], output_ports=[
                metrics_pe_port(0, connections=[connection("c9", 50)]),
            ]),
        ])

        self.refresh(snapshot, metrics)

        self.assertEqual(self.job_value("healthy"), 0.5)
        self.assertIsNone(self.pe_value("nCpuMilliseconds", "host2", "2"))
        self.assertEqual(self.job_value("nCpuMilliseconds"), 100.0)
        self.assertEqual(self.job_value("pecount"), 2.0)
        self.assertEqual(self.job_value("max_congestionFactor"), 0.0)

    def test_congestion_aggregates(self):
        snapshot = snapshot_job("7", name=JOB_NAME, pes=[snapshot_pe("1"), snapshot_pe("2")])
        metrics = metrics_job("7", pes=[
            metrics_pe("1", output_ports=[
                metrics_pe_port(0, connections=[connection("c1", 10), connection("c2", 20)]),
            ]),
            metrics_pe("2", output_ports=[
                metrics_pe_port(0, connections=[connection("c3", 30)]),
            ]),
        ])

        self.refresh(snapshot, metrics)

        self.assertEqual(self.job_value("sum_congestionFactor"), 60.0)
        self.assertEqual(self.job_value("avg_congestionFactor"), 20.0)
        self.assertEqual(self.job_value("max_congestionFactor"), 30.0)
        self.assertEqual(self.job_value("min_congestionFactor"), 10.0)
        self.assertEqual(self.job.aggregates.connection_count, 3)
        self.assertEqual(
            self.sink.sample_value("congestionFactor", ObjectType.PE_OUTPUTPORT_CONNECTION,
                                   DOMAIN, INSTANCE, JOB_NAME, "host1", "1", "0", "c2"),
            20.0)

    def test_no_connections_exports_zero(self):
        snapshot = snapshot_job("7", name=JOB_NAME, pes=[snapshot_pe("1")])
        metrics = metrics_job("7", pes=[metrics_pe("1")])

        self.refresh(snapshot, metrics)

        for name in ("sum_congestionFactor", "avg_congestionFactor",
                     "max_congestionFactor", "min_congestionFactor"):
            self.assertEqual(self.job_value(name), 0.0, name)
        self.assertIsNone(self.job.aggregates.congestion_min)

    def test_operator_port_names_come_from_snapshot(self):
        snapshot = snapshot_job("7", name=JOB_NAME, pes=[
            snapshot_pe("1", operators=[
                snapshot_operator("filter", "spl.relational::Filter", input_names=["In"], output_names=["Kept"]),
            ]),
        ])
        metrics = metrics_job("7", pes=[
            metrics_pe("1", operators=[
                metrics_operator(
                    "filter",
                    metrics=[metric("nTuplesProcessed", 5)],
                    input_ports=[metrics_operator_port(0, [metric("nTuplesProcessed", 5)]),
                                 metrics_operator_port(3, [metric("nTuplesProcessed", 1)])],
                    output_ports=[metrics_operator_port(0, [metric("nTuplesSubmitted", 4)])],
                ),
            ]),
        ])

        self.refresh(snapshot, metrics)

        operator_path = (DOMAIN, INSTANCE, JOB_NAME, "host1", "1", "filter", "spl.relational::Filter")
        self.assertEqual(self.sink.sample_value("nTuplesProcessed", ObjectType.OPERATOR, *operator_path), 5.0)
        self.assertEqual(
            self.sink.sample_value("nTuplesProcessed", ObjectType.OPERATOR_INPUTPORT, *operator_path, "In"), 5.0)
        self.assertEqual(
            self.sink.sample_value("nTuplesProcessed", ObjectType.OPERATOR_INPUTPORT, *operator_path, "3"), 1.0)
        self.assertEqual(
            self.sink.sample_value("nTuplesSubmitted", ObjectType.OPERATOR_OUTPUTPORT, *operator_path, "Kept"), 4.0)

    def test_resolve_port_name_falls_back_to_index(self):
        self.assertEqual(self.job.resolve_port_name(PortDirection.INPUT, "unknown", "2"), "2")

    def test_refresh_drops_series_of_relocated_pe(self):
        metrics = metrics_job("7", pes=[metrics_pe("1", metrics=[metric("nCpuMilliseconds", 100)])])
        self.refresh(snapshot_job("7", name=JOB_NAME, pes=[snapshot_pe("1", resource="host1")]), metrics)
        self.refresh(snapshot_job("7", name=JOB_NAME, pes=[snapshot_pe("1", resource="host2")]), metrics)

        self.assertIsNone(self.pe_value("nCpuMilliseconds", "host1", "1"))
        self.assertEqual(self.pe_value("nCpuMilliseconds", "host2", "1"), 100.0)

    def test_pe_without_snapshot_entry_is_skipped(self):
        snapshot = snapshot_job("7", name=JOB_NAME, pes=[snapshot_pe("1")])
        metrics = metrics_job("7", pes=[
            metrics_pe("1", metrics=[metric("nCpuMilliseconds", 100)]),
            metrics_pe("2", metrics=[metric("nCpuMilliseconds", 900)]),
        ])

        self.refresh(snapshot, metrics)

        self.assertEqual(self.job_value("nCpuMilliseconds"), 100.0)
        self.assertEqual(self.job_value("pecount"), 2.0)

    def test_unparseable_snapshot_keeps_previous_metrics(self):
        self.refresh(snapshot_job("7", name=JOB_NAME), None)
        self.job.refresh("{broken", None)
        self.assertEqual(self.job_value("healthy"), 1.0)

    def test_job_label_falls_back_to_id(self):
        self.refresh(snapshot_job("7"), None)
        self.assertEqual(self.job.job_label, "7")
        self.assertEqual(self.sink.sample_value("healthy", ObjectType.JOB, DOMAIN, INSTANCE, "7"), 1.0)

    def test_close_removes_everything(self):
        snapshot = snapshot_job("7", name=JOB_NAME, pes=[snapshot_pe("1")])
        metrics = metrics_job("7", pes=[metrics_pe("1", metrics=[metric("nCpuMilliseconds", 100)])])
        self.refresh(snapshot, metrics)

        self.job.close()

        self.assertIsNone(self.job_value("healthy"))
        self.assertIsNone(self.pe_value("nCpuMilliseconds", "host1", "1"))

    def test_job_info(self):
        self.refresh(snapshot_job("7", name=JOB_NAME, status="running"), None)
        info = self.job.get_job_info()
        self.assertEqual(info["id"], "7")
        self.assertEqual(info["name"], JOB_NAME)
        self.assertEqual(info["status"], "running")
        self.assertIsNone(info["metrics"])


if __name__ == "__main__":
    unittest.main()
