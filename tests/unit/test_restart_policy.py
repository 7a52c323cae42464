"""
Unit tests for restart policy evaluation and the restart monitor.
"""
import time

import pytest

from stackup.MANAGERS.restart_monitor import RestartMonitor
from stackup.MANAGERS.service_orchestrator import ServiceOrchestrator
from stackup.MODELS.running_instance import InstanceState
from stackup.MODELS.service_definition import RestartPolicyCondition


def started(make_config, runtime, condition, max_retries=0, max_restarts=5):
    config = make_config({"worker": {"restart_policy": {"condition": condition, "max_retries": max_retries}}})
    orchestrator = ServiceOrchestrator(config, runtime, max_restarts=max_restarts, poll_interval=0, start_timeout=5)
    assert orchestrator.up().ok
    return orchestrator, orchestrator.instances["worker"]


def crash(runtime, orchestrator, instance, exit_code):
    runtime.exit_container(instance.container_id, exit_code)
    return orchestrator.poll_instances()["worker"]


class TestApplyRestartPolicy:
    """Tests for ServiceOrchestrator.apply_restart_policy through poll_instances."""

    def test_on_failure_clean_exit_is_not_restarted(self, make_config, runtime):
        orchestrator, instance = started(make_config, runtime, "on-failure")
        assert crash(runtime, orchestrator, instance, 0) == InstanceState.EXITED
        assert instance.restart_count == 0
        assert runtime.started_services() == ["worker"]

    def test_on_failure_error_exit_is_restarted(self, make_config, runtime):
        orchestrator, instance = started(make_config, runtime, "onFailure")
        assert crash(runtime, orchestrator, instance, 1) == InstanceState.STARTING
        assert instance.restart_count == 1
        assert runtime.started_services() == ["worker", "worker"]
        # The next reconciliation sees it running again
        assert orchestrator.poll_instances()["worker"] == InstanceState.RUNNING

    @pytest.mark.parametrize("condition", ["never", "no"])
    def test_never(self, make_config, runtime, condition):
        orchestrator, instance = started(make_config, runtime, condition)
        assert crash(runtime, orchestrator, instance, 1) == InstanceState.EXITED
        assert instance.exit_code == 1

    @pytest.mark.parametrize("condition", ["always", "unless-stopped"])
    def test_always_restarts_clean_exit(self, make_config, runtime, condition):
        orchestrator, instance = started(make_config, runtime, condition)
        assert crash(runtime, orchestrator, instance, 0) == InstanceState.STARTING
        assert instance.restart_count == 1

    def test_operator_stop_is_never_restarted(self, make_config, runtime):
        orchestrator, instance = started(make_config, runtime, "always")
        instance.stopped_by_operator = True
        assert orchestrator.apply_restart_policy(instance, 0) is False
        assert instance.state == InstanceState.EXITED

    def test_policy_ceiling(self, make_config, runtime):
        """max_retries bounds the restarts; the instance then fails for good."""
        orchestrator, instance = started(make_config, runtime, "on-failure", max_retries=2)
        assert crash(runtime, orchestrator, instance, 1) == InstanceState.STARTING
        assert crash(runtime, orchestrator, instance, 1) == InstanceState.STARTING
        assert crash(runtime, orchestrator, instance, 1) == InstanceState.FAILED
        assert instance.restart_count == 2
        assert "2 restart attempts" in instance.error

    def test_operator_ceiling(self, make_config, runtime):
        orchestrator, instance = started(make_config, runtime, "always", max_restarts=1)
        assert crash(runtime, orchestrator, instance, 3) == InstanceState.STARTING
        assert crash(runtime, orchestrator, instance, 3) == InstanceState.FAILED

    def test_condition_aliases(self):
        assert RestartPolicyCondition("unlessStopped") == RestartPolicyCondition.UNLESS_STOPPED
        assert RestartPolicyCondition("on_failure") == RestartPolicyCondition.ON_FAILURE
        assert RestartPolicyCondition(False) == RestartPolicyCondition.NO
        with pytest.raises(ValueError):
            RestartPolicyCondition("sometimes")


class TestRestartMonitor:
    """Tests for RestartMonitor."""

    def test_reports_failure_once(self, make_config, runtime):
        orchestrator, instance = started(make_config, runtime, "no")
        failures = []
        monitor = RestartMonitor(orchestrator, on_failure=failures.append)

        instance.state = InstanceState.FAILED
        monitor.check_once()
        monitor.check_once()
        assert failures == ["worker"]

    def test_restarts_in_background(self, make_config, runtime):
        orchestrator, instance = started(make_config, runtime, "always")
        monitor = RestartMonitor(orchestrator, interval=0.01)
        runtime.exit_container(instance.container_id, 1)

        monitor.start()
        try:
            assert monitor.running
            for _ in range(500):
                if instance.restart_count:
                    break
                time.sleep(0.01)
        finally:
            monitor.stop()
        assert not monitor.running
        assert instance.restart_count == 1
