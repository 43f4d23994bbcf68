"""Tests for result aggregation."""

from rook.aggregate import HostNotice, HostSummary, ResultAggregator
from rook.types import HostTarget, Outcome, Phase, ResolvedAction, ResolvedPlan, ResultEvent


def plan(host, count):
    actions = tuple(ResolvedAction(i, "note", f"step {i}") for i in range(count))
    return ResolvedPlan(HostTarget(host, host), actions)


def finished(host, index, outcome, error=None):
    return ResultEvent(host, index, Phase.FINISHED, outcome, error=error)


class TestHostSummary:
    def test_counts_outcomes(self):
        summary = HostSummary("web1", total=3)
        summary.record(finished("web1", 0, Outcome.CHANGED))
        summary.record(finished("web1", 1, Outcome.UNCHANGED))
        summary.record(finished("web1", 2, Outcome.CHANGED))

        assert summary.changed == 2
        assert summary.unchanged == 1
        assert summary.finished == 3
        assert summary.success

    def test_duplicate_result_ignored(self):
        summary = HostSummary("web1", total=1)
        summary.record(finished("web1", 0, Outcome.CHANGED))
        summary.record(finished("web1", 0, Outcome.FAILED))
        assert summary.failed == 0
        assert summary.outcomes == {0: Outcome.CHANGED}

    def test_unfinished_host_is_not_successful(self):
        summary = HostSummary("web1", total=2)
        summary.record(finished("web1", 0, Outcome.CHANGED))
        assert not summary.success

    def test_skipped_and_cancelled_are_not_success(self):
        for outcome in (Outcome.SKIPPED, Outcome.CANCELLED, Outcome.FAILED):
            summary = HostSummary("web1", total=1)
            summary.record(finished("web1", 0, outcome))
            assert not summary.success

    def test_to_dict(self):
        summary = HostSummary("web1", total=1, connection_error="refused")
        data = summary.to_dict()
        assert data["host"] == "web1"
        assert data["success"] is False
        assert data["connection_error"] == "refused"


class TestResultAggregator:
    """Tests for ResultAggregator."""

    def test_listeners_see_every_event(self):
        aggregator = ResultAggregator({"web1": plan("web1", 1)})
        seen = []
        aggregator.add_listener(seen.append)

        events = [
            ResultEvent("web1", 0, Phase.STARTED),
            ResultEvent("web1", 0, Phase.OUTPUT, output="hi"),
            finished("web1", 0, Outcome.UNCHANGED),
        ]
        for event in events:
            aggregator.consume(event)

        assert seen == events
        assert aggregator.summary().success

    def test_summary_over_hosts(self):
        aggregator = ResultAggregator({"web1": plan("web1", 2), "web2": plan("web2", 2)}, name="deploy")
        aggregator.consume(finished("web1", 0, Outcome.FAILED, "boom"))
        aggregator.consume(finished("web1", 1, Outcome.SKIPPED))
        aggregator.consume(finished("web2", 0, Outcome.CHANGED))
        aggregator.consume(finished("web2", 1, Outcome.UNCHANGED))

        result = aggregator.summary()
        assert result.name == "deploy"
        assert not result.success
        assert result.exit_code == 1
        assert result.failed_hosts == ["web1"]
        assert result.totals() == {"unchanged": 1, "changed": 1, "failed": 1, "skipped": 1, "cancelled": 0}

    def test_host_notice(self):
        aggregator = ResultAggregator({"web1": plan("web1", 1)})
        seen = []
        aggregator.add_listener(seen.append)

        aggregator.consume(HostNotice("web1", "Connection refused"))

        assert seen == []
        assert aggregator.summary().hosts["web1"].connection_error == "Connection refused"

    def test_cancelled_outcome_marks_run(self):
        aggregator = ResultAggregator({"web1": plan("web1", 1)})
        aggregator.consume(finished("web1", 0, Outcome.CANCELLED, "run cancelled"))
        result = aggregator.summary()
        assert result.cancelled
        assert result.to_dict()["cancelled"] is True

    def test_empty_run_succeeds(self):
        result = ResultAggregator({}).summary()
        assert result.success
        assert result.exit_code == 0
