"""
Tests for the failure taxonomy policy table.
"""

import pytest

from vigil.monitoring.failures import (
    FAILURE_POLICY,
    Assignee,
    FailureType,
    Severity,
    TypedFailure,
    classify_failure,
)


class TestClassification:
    def test_every_type_has_a_policy(self):
        assert set(FAILURE_POLICY) == set(FailureType)

    @pytest.mark.parametrize("failure_type,severity,assignee", [
        (FailureType.CONNECTION_LOST, Severity.CRITICAL, Assignee.AUTO_FIX),
        (FailureType.PROCESSING_FAILURE, Severity.HIGH, Assignee.AUTO_FIX),
        (FailureType.CONSTRAINT_FAILURE, Severity.MEDIUM, Assignee.AUTO_FIX),
        (FailureType.STALLED_WORKFLOW, Severity.MEDIUM, Assignee.AUTO_FIX),
        (FailureType.STAGE_BYPASS, Severity.HIGH, Assignee.HUMAN_REVIEW),
        (FailureType.MISSING_ATTRIBUTION, Severity.HIGH, Assignee.HUMAN_REVIEW),
        (FailureType.DUPLICATE_VISUAL_EFFECT, Severity.HIGH, Assignee.HUMAN_REVIEW),
        (FailureType.MODE_MISMATCH, Severity.MEDIUM, Assignee.AUTO_FIX),
        (FailureType.EDIT_NOT_HIGHLIGHTED, Severity.MEDIUM, Assignee.HUMAN_REVIEW),
    ])
    def test_policy_values(self, failure_type, severity, assignee):
        assert classify_failure(failure_type) == (severity, assignee)

    def test_string_value_accepted(self):
        assert classify_failure("STAGE_BYPASS") == (Severity.HIGH, Assignee.HUMAN_REVIEW)

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            classify_failure("NOT_A_FAILURE")


class TestTypedFailure:
    def test_create_derives_severity_and_assignee(self):
        """
        GIVEN a failure type only
        WHEN a TypedFailure is created
        THEN severity and assignee come from the policy table
        """
        failure = TypedFailure.create(
            monitor="ai_attribution",
            failure_type=FailureType.MISSING_ATTRIBUTION,
            message="no author",
            timestamp=10.0,
        )

        assert failure.severity == Severity.HIGH
        assert failure.assignee == Assignee.HUMAN_REVIEW
        assert failure.needs_review
        assert failure.id.startswith("ai_attribution_")
        assert failure.context == {}

    def test_ids_are_unique(self):
        first = TypedFailure.create("m", FailureType.STALLED_WORKFLOW, "x", 0.0)
        second = TypedFailure.create("m", FailureType.STALLED_WORKFLOW, "x", 0.0)
        assert first.id != second.id

    def test_failures_are_immutable(self):
        failure = TypedFailure.create("m", FailureType.STALLED_WORKFLOW, "x", 0.0)
        with pytest.raises(Exception):
            failure.message = "changed"
