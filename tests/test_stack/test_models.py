"""
Tests for stack models

Tests the per-attempt service state machine and result reporting.
"""

import pytest

from indexer_toolkit.core.exceptions import InvalidStateTransition, ValidationFailure
from indexer_toolkit.stack.models import (
    AttemptResult,
    RuleOutcome,
    RunAttempt,
    ServiceInstance,
    ServiceState,
    ServiceStatus,
    ValidationRule,
)
from indexer_toolkit.validation.comparators import AtMost, Equals


class TestServiceInstance:
    """Tests for the ServiceInstance state machine"""

    def test_starts_pending(self, make_spec):
        """Test that a new instance is pending and not started"""
        instance = ServiceInstance(spec=make_spec("a"), attempt=1)

        assert instance.state == ServiceState.PENDING
        assert not instance.was_started
        assert instance.is_stopped
        assert instance.transitions[0][0] == ServiceState.PENDING

    def test_happy_path(self, make_spec):
        """Test pending -> starting -> healthy"""
        instance = ServiceInstance(spec=make_spec("a"), attempt=1)
        instance.transition(ServiceState.STARTING)
        instance.transition(ServiceState.HEALTHY)

        assert instance.state == ServiceState.HEALTHY
        assert instance.is_terminal
        assert instance.started_at is not None
        assert instance.healthy_at >= instance.started_at
        assert [state for state, _ in instance.transitions] == [
            ServiceState.PENDING,
            ServiceState.STARTING,
            ServiceState.HEALTHY,
        ]

    def test_failure_records_error(self, make_spec):
        """Test that failing keeps the error"""
        instance = ServiceInstance(spec=make_spec("a"), attempt=1)
        instance.transition(ServiceState.STARTING)
        instance.transition(ServiceState.FAILED, "probe never succeeded")

        assert instance.error == "probe never succeeded"
        assert instance.status().error == "probe never succeeded"

    @pytest.mark.parametrize(
        "path",
        [
            [ServiceState.HEALTHY],
            [ServiceState.STARTING, ServiceState.PENDING],
            [ServiceState.STARTING, ServiceState.HEALTHY, ServiceState.FAILED],
            [ServiceState.STARTING, ServiceState.FAILED, ServiceState.STARTING],
        ],
    )
    def test_illegal_transitions(self, make_spec, path):
        """Test that edges outside the state machine are rejected"""
        instance = ServiceInstance(spec=make_spec("a"), attempt=1)
        with pytest.raises(InvalidStateTransition):
            for state in path:
                instance.transition(state)

    def test_stopped_after_start(self, make_spec):
        """Test is_stopped once started"""
        instance = ServiceInstance(spec=make_spec("a"), attempt=1)
        instance.transition(ServiceState.STARTING)
        assert not instance.is_stopped

        instance.mark_stopped()
        assert instance.is_stopped

    def test_status_elapsed(self, make_spec):
        """Test that elapsed time is reported once terminal"""
        instance = ServiceInstance(spec=make_spec("a"), attempt=1)
        instance.transition(ServiceState.STARTING)
        assert instance.status().elapsed_seconds is None

        instance.transition(ServiceState.HEALTHY)
        status = instance.status()
        assert isinstance(status, ServiceStatus)
        assert status.elapsed_seconds >= 0
        assert status.to_dict()["state"] == "healthy"


class TestRunAttempt:
    """Tests for RunAttempt failure reporting"""

    def test_failure_descriptions(self):
        """Test that failed services and rules are both described"""
        rule = ValidationRule(target="graph-node", query="store_connection_error_count", expected=0, comparator=AtMost())
        attempt = RunAttempt(
            index=1,
            result=AttemptResult.FAILURE,
            failed_services=["ipfs"],
            service_status={"ipfs": ServiceStatus(name="ipfs", state=ServiceState.FAILED, error="timed out")},
            rule_outcomes=[RuleOutcome(rule=rule, passed=False, observed=3.0)],
        )

        lines = attempt.failure_descriptions()

        assert lines[0] == "service ipfs: timed out"
        assert "store_connection_error_count" in lines[1]
        assert "3.0" in lines[1]

    def test_error_used_when_nothing_specific(self):
        """Test the fallback to the attempt error"""
        attempt = RunAttempt(index=2, result=AttemptResult.FAILURE, error=ValidationFailure(["x"]))
        assert attempt.failure_descriptions() == [attempt.error.message]

    def test_rule_label(self):
        """Test generated and explicit rule labels"""
        rule = ValidationRule(target="store", query="server_encoding", expected="UTF8", comparator=Equals())
        named = ValidationRule(target="store", query="lc_collate", expected="C", comparator=Equals(), name="collation")

        assert rule.label == "store.server_encoding equals 'UTF8'"
        assert named.label == "collation"

    def test_to_dict(self):
        """Test JSON-ready attempt output"""
        attempt = RunAttempt(index=1, result=AttemptResult.FAILURE, destroyed_state=["volume:x"])
        data = attempt.to_dict()

        assert data["index"] == 1
        assert data["result"] == "failure"
        assert data["destroyed_state"] == ["volume:x"]
