"""
Windowed health signals.
"""

from verdict.core.health import HealthMonitor, classify


class FakeClock:
    def __init__(self):
        self.now = 10_000.0

    def __call__(self):
        return self.now


class TestClassify:

    def test_higher_is_worse(self):
        assert classify(0.01, 0.05, 0.15) == "healthy"
        assert classify(0.05, 0.05, 0.15) == "degraded"
        assert classify(0.2, 0.05, 0.15) == "critical"

    def test_lower_is_worse(self):
        assert classify(0.9, 0.8, 0.6, higher_is_worse=False) == "healthy"
        assert classify(0.7, 0.8, 0.6, higher_is_worse=False) == "degraded"
        assert classify(0.5, 0.8, 0.6, higher_is_worse=False) == "critical"

    def test_no_data_is_healthy(self):
        assert classify(None, 0.05, 0.15) == "healthy"


class TestHealthMonitor:

    def test_empty_monitor_healthy(self):
        status = HealthMonitor().status()

        assert status["status"] == "healthy"
        assert status["action_required"] is False
        assert status["total_decisions"] == 0

    def test_failure_rate_critical(self):
        monitor = HealthMonitor()
        for _ in range(8):
            monitor.record_decision()
        for _ in range(2):
            monitor.record_decision(failed=True)

        signals = {s.name: s for s in monitor.signals()}

        assert signals["decision_failure_rate"].value == 0.2
        assert signals["decision_failure_rate"].status == "critical"
        assert monitor.status()["status"] == "critical"

    def test_refusal_rate_degraded(self):
        monitor = HealthMonitor()
        for _ in range(5):
            monitor.record_decision()
        for _ in range(5):
            monitor.record_decision(refused=True)

        signals = {s.name: s for s in monitor.signals()}
        assert signals["refusal_rate"].status == "degraded"

    def test_review_queue_signal(self):
        signals = {s.name: s for s in HealthMonitor().signals(pending_reviews=25)}
        assert signals["review_queue_size"].status == "critical"

    def test_assurance_success_rate(self):
        monitor = HealthMonitor()
        monitor.record_assurance(True)
        monitor.record_assurance(False)

        signals = {s.name: s for s in monitor.signals()}
        assert signals["assurance_success_rate"].value == 0.5
        assert signals["assurance_success_rate"].status == "critical"

    def test_old_events_leave_window(self):
        clock = FakeClock()
        monitor = HealthMonitor(window_sec=60, clock=clock)
        monitor.record_decision(failed=True)

        clock.now += 61

        assert monitor.counters() == {}
        assert monitor.status()["status"] == "healthy"
