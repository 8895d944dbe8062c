"""Tests for StatefulSet rollout status inspection."""

from __future__ import annotations

import itertools

import pytest
from k8s_mock import make_statefulset
from kubernetes_asyncio.client import V1StatefulSetStatus

from chi_operator.status import desired_replicas, has_reached_generation, status_string


def _with_status(
    generation: int = 3,
    observed: int | None = 3,
    ready: int | None = 1,
    current: int | None = 1,
    updated: int | None = 1,
    current_revision: str = "rev-b",
    update_revision: str = "rev-b",
    replicas: int = 1,
):
    sts = make_statefulset("chi-demo-0-0", replicas=replicas)
    sts.metadata.generation = generation
    sts.status = V1StatefulSetStatus(
        replicas=replicas,
        observed_generation=observed,
        ready_replicas=ready,
        current_replicas=current,
        updated_replicas=updated,
        current_revision=current_revision,
        update_revision=update_revision,
    )
    return sts


class TestHasReachedGeneration:
    """Tests for has_reached_generation."""

    def test_converged(self) -> None:
        """Test fully rolled out target generation."""
        assert has_reached_generation(_with_status(), 3) is True

    def test_none_statefulset(self) -> None:
        """Test missing object never counts as converged."""
        assert has_reached_generation(None, 1) is False

    def test_missing_status(self) -> None:
        """Test freshly created object without status."""
        sts = make_statefulset("chi-demo-0-0")
        sts.metadata.generation = 1
        assert has_reached_generation(sts, 1) is False

    def test_observed_generation_lagging(self) -> None:
        """Test controller has not yet observed the new generation."""
        assert has_reached_generation(_with_status(observed=2), 3) is False

    def test_waiting_for_other_generation(self) -> None:
        """Test readiness of an earlier rollout is not mistaken for the target."""
        assert has_reached_generation(_with_status(generation=3, observed=3), 4) is False

    def test_partial_readiness(self) -> None:
        """Test replicas not ready yet."""
        assert has_reached_generation(_with_status(ready=None), 3) is False
        assert has_reached_generation(_with_status(ready=0), 3) is False

    def test_not_updated(self) -> None:
        """Test replica still on the previous template."""
        assert has_reached_generation(_with_status(updated=0), 3) is False

    def test_revision_mismatch(self) -> None:
        """Test rolling update still in progress."""
        assert has_reached_generation(_with_status(current_revision="rev-a"), 3) is False

    def test_multiple_replicas(self) -> None:
        """Test counters are compared against spec.replicas."""
        assert has_reached_generation(
            _with_status(replicas=3, ready=3, current=3, updated=3), 3
        ) is True
        assert has_reached_generation(
            _with_status(replicas=3, ready=2, current=3, updated=3), 3
        ) is False

    @pytest.mark.parametrize(
        ("observed", "ready", "current", "updated", "current_revision"),
        list(
            itertools.product(
                [None, 2, 3],
                [None, 0, 1],
                [None, 0, 1],
                [None, 0, 1],
                ["rev-a", "rev-b"],
            )
        ),
    )
    def test_matches_convergence_definition(
        self,
        observed: int | None,
        ready: int | None,
        current: int | None,
        updated: int | None,
        current_revision: str,
    ) -> None:
        """Test every status combination against the convergence definition."""
        sts = _with_status(
            observed=observed,
            ready=ready,
            current=current,
            updated=updated,
            current_revision=current_revision,
        )
        expected = (
            observed == 3
            and (ready or 0) == 1
            and (current or 0) == 1
            and (updated or 0) == 1
            and current_revision == "rev-b"
        )
        assert has_reached_generation(sts, 3) is expected


class TestHelpers:
    """Tests for status helpers."""

    def test_desired_replicas_defaults_to_one(self) -> None:
        sts = make_statefulset("chi-demo-0-0")
        sts.spec.replicas = None
        assert desired_replicas(sts) == 1

    def test_status_string(self) -> None:
        text = status_string(_with_status(ready=None).status)
        assert "ObservedGeneration:3" in text
        assert "ReadyReplicas:0" in text
        assert "UpdateRevision:rev-b" in text

    def test_status_string_without_status(self) -> None:
        assert status_string(None) == "<no status>"
