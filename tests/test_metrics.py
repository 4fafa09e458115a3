import json

from devloop.metrics import (
    Metrics,
    MetricsRecorder,
    format_duration,
    format_metrics_summary,
    load_metrics,
)


def test_fresh_metrics(tmp_path):
    metrics = load_metrics(tmp_path / "metrics.json")
    assert metrics.cycles_completed == 0
    assert metrics.task_success_rate == 100
    assert metrics.average_cycle_duration_ms == 0
    assert metrics.last_activity_time is not None


def test_recorder_persists_each_event(tmp_path):
    path = tmp_path / "metrics.json"
    recorder = MetricsRecorder(path)
    recorder.record_cycle_completed(60_000)
    recorder.record_cycle_completed(120_000)
    recorder.record_cycle_timeout()
    recorder.record_task_completed()
    recorder.record_task_completed()
    recorder.record_task_completed()
    recorder.record_task_failed()
    recorder.record_task_skipped(0)
    recorder.record_retry()
    recorder.record_idea_processed()

    raw = json.loads(path.read_text())
    assert raw["cyclesCompleted"] == 2
    assert raw["cyclesTimedOut"] == 1
    assert raw["tasksCompleted"] == 3
    assert raw["tasksFailed"] == 1
    assert raw["tasksSkipped"] == 0
    assert raw["totalRetries"] == 1
    assert raw["ideasProcessed"] == 1
    assert raw["totalCycleDurationMs"] == 180_000
    assert raw["firstRunTime"]

    reloaded = MetricsRecorder(path).metrics
    assert reloaded.average_cycle_duration_ms == 90_000
    assert reloaded.task_success_rate == 75


def test_invalid_fields_are_dropped(tmp_path):
    path = tmp_path / "metrics.json"
    path.write_text(json.dumps({"cyclesCompleted": "many", "tasksCompleted": 4, "tasksFailed": -1}))
    metrics = load_metrics(path)
    assert metrics.cycles_completed == 0
    assert metrics.tasks_completed == 4
    assert metrics.tasks_failed == 0


def test_corrupt_file_starts_fresh(tmp_path):
    path = tmp_path / "metrics.json"
    path.write_text("{{{")
    assert load_metrics(path).tasks_completed == 0


def test_reset(tmp_path):
    recorder = MetricsRecorder(tmp_path / "metrics.json")
    recorder.record_task_failed()
    recorder.reset()
    assert recorder.metrics.tasks_failed == 0
    assert recorder.metrics.first_run_time is not None


def test_format_duration():
    assert format_duration(5_400) == "5s"
    assert format_duration(125_000) == "2m 5s"
    assert format_duration(3_900_000) == "1h 5m"


def test_summary_text():
    metrics = Metrics(cycles_completed=1, total_cycle_duration_ms=61_000, tasks_completed=1, tasks_skipped=1)
    summary = format_metrics_summary(metrics)
    assert "Cycles: 1 completed, 0 timed out" in summary
    assert "1 skipped (50% success)" in summary
    assert "Avg cycle duration: 1m 1s" in summary
    assert "Avg cycle duration: N/A" in format_metrics_summary(Metrics())
