import unittest

from streamsentry.monitoring.metric_mapping import (
    Health,
    InstanceStatus,
    STOPPED_STATUSES,
    health_as_metric,
    is_healthy,
    operator_labels,
    pe_labels,
    status_as_metric,
)


class TestStatusMapping(unittest.TestCase):
    def test_running_is_one(self):
        self.assertEqual(status_as_metric(InstanceStatus.RUNNING), 1.0)
        self.assertEqual(status_as_metric("running"), 1.0)

    def test_transitional_states_are_half(self):
        for status in ("starting", "partiallyRunning", "partiallyFailed", "stopping"):
            self.assertEqual(status_as_metric(status), 0.5, status)

    def test_stopped_failed_unknown_are_zero(self):
        for status in ("stopped", "failed", "unknown", None, "somethingElse"):
            self.assertEqual(status_as_metric(status), 0.0, status)

    def test_from_value_accepts_enum_names(self):
        self.assertEqual(InstanceStatus.from_value("PARTIALLY_RUNNING"), InstanceStatus.PARTIALLY_RUNNING)
        self.assertEqual(InstanceStatus.from_value("partially-failed"), InstanceStatus.PARTIALLY_FAILED)
        self.assertEqual(InstanceStatus.from_value("bogus"), InstanceStatus.UNKNOWN)

    def test_stopped_statuses(self):
        self.assertIn(InstanceStatus.UNKNOWN, STOPPED_STATUSES)
        self.assertNotIn(InstanceStatus.STOPPING, STOPPED_STATUSES)


class TestHealthMapping(unittest.TestCase):
    def test_health_values(self):
        self.assertEqual(health_as_metric("healthy"), 1.0)
        self.assertEqual(health_as_metric("partiallyHealthy"), 0.5)
        self.assertEqual(health_as_metric("partiallyUnhealthy"), 0.5)
        self.assertEqual(health_as_metric("unhealthy"), 0.0)
        self.assertEqual(health_as_metric(None), 0.0)
        self.assertEqual(health_as_metric(Health.UNKNOWN), 0.0)

    def test_is_healthy_ignores_case(self):
        self.assertTrue(is_healthy("HEALTHY"))
        self.assertTrue(is_healthy("healthy"))
        self.assertFalse(is_healthy("partiallyHealthy"))
        self.assertFalse(is_healthy(None))


class TestLabels(unittest.TestCase):
    def test_operator_labels_extend_pe_path(self):
        pe_path = pe_labels("d", "i", "job", "host1", "3")
        self.assertEqual(operator_labels(pe_path, "op", "spl.relational::Filter"),
                         ("d", "i", "job", "host1", "3", "op", "spl.relational::Filter"))

    def test_missing_operator_kind_is_empty(self):
        self.assertEqual(operator_labels(("d",), "op", None), ("d", "op", ""))


if __name__ == "__main__":
    unittest.main()
