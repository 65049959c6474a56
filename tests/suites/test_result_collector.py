from track_orchestrator.services.orchestrator.models import (
    CallStats,
    ItemOutcome,
    ItemResult,
    JobUnitResult,
    UnitError,
)
from track_orchestrator.services.orchestrator.result_collector import (
    ResultCollector,
    merge_unit_results,
    summarize,
)


def _item(item_id, outcome, duration_ms=0.0):
    return ItemResult(item_id=item_id, outcome=outcome, duration_ms=duration_ms)


def _unit(unit_id, *outcomes, circuit_broken=False, duration_ms=10.0):
    items = tuple(_item(f"{unit_id}-r{i}", outcome, 100.0) for i, outcome in enumerate(outcomes, start=1))
    return JobUnitResult(unit_id=unit_id, items=items, circuit_broken=circuit_broken, duration_ms=duration_ms)


S, F, K, C = ItemOutcome.SUCCESS, ItemOutcome.FAILURE, ItemOutcome.SKIPPED, ItemOutcome.CANCELLED


def test_summary_counts_outcomes_separately():
    units = [
        _unit("AQU", S, S, F),
        _unit("BEL", F, F, K, K, circuit_broken=True),
        _unit("SAR", S, C),
    ]

    summary = summarize(units, CallStats(total_calls=7, successful_calls=3, failed_calls=4, retries=1))

    assert summary.total_items == 10
    assert (summary.successful, summary.failed, summary.skipped, summary.cancelled) == (3, 3, 2, 1)
    assert summary.total_calls == 7
    assert summary.retries == 1
    # Only attempted items count in the average
    assert summary.avg_time_per_item_ms == 100.0
    assert summary.units_complete == 2
    assert summary.units_circuit_broken == 1
    assert summary.units_failed == 0
    assert summary.duration_ms == 30.0


def test_unit_without_success_counts_as_failed():
    summary = merge_unit_results([_unit("GP", F, F)])
    assert summary.units_failed == 1
    assert summary.units_complete == 0
    assert summary.total_calls == 0


def test_empty_summary():
    summary = summarize([])
    assert summary.total_items == 0
    assert summary.avg_time_per_item_ms == 0.0


def test_collector_builds_aggregate_result():
    collector = ResultCollector("job-1", total_items=6)
    collector.add(_unit("AQU", S, F))
    collector.add(_unit("BEL", S, S))
    collector.merge_call_stats(CallStats(total_calls=2, successful_calls=1, failed_calls=1))
    collector.merge_call_stats(CallStats(total_calls=2, successful_calls=2))
    collector.add_error(UnitError("Job timed out after 50ms", "JOB_TIMEOUT"))

    result = collector.result()

    assert result.job_id == "job-1"
    assert [unit.unit_id for unit in result.units] == ["AQU", "BEL"]
    assert result.summary.total_items == 6
    assert result.summary.successful == 3
    assert result.summary.total_calls == 4
    assert result.errors[0].code == "JOB_TIMEOUT"
    assert result.completed_at >= result.started_at

    # Duration is frozen once the result is built
    assert collector.result().summary.duration_ms == result.summary.duration_ms


def test_collector_queries():
    collector = ResultCollector("job-2", total_items=4)
    collector.add(_unit("AQU", S, F))
    collector.add(_unit("BEL", S, K))

    assert [item.item_id for item in collector.successful_item_results()] == ["AQU-r1", "BEL-r1"]
    assert [item.item_id for item in collector.failed_item_results()] == ["AQU-r2"]
    assert set(collector.results_by_unit()) == {"AQU", "BEL"}

    stats = collector.get_stats()
    assert stats["processed"] == 4
    assert stats["success_rate"] == round(2 / 3, 4)
    assert stats["skipped"] == 1


def test_to_dict_is_json_friendly():
    collector = ResultCollector("job-3", total_items=1)
    collector.add(_unit("AQU", S))

    data = collector.result().to_dict()

    assert data["job_id"] == "job-3"
    assert data["units"][0]["items"][0]["outcome"] == "success"
    assert data["summary"]["successful"] == 1
