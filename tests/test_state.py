import json
from datetime import datetime, timedelta, timezone

from devloop.state import (
    LoopState,
    Phase,
    cycle_elapsed_seconds,
    load_state,
    record_failure,
    reset_retries,
    save_state,
    start_new_cycle,
)


def test_missing_file_gives_defaults(tmp_path):
    state = load_state(tmp_path / "state.json")
    assert state.cycle == 1
    assert state.phase == Phase.INIT
    assert state.task_index == 0
    assert state.session_id is None


def test_round_trip_uses_camel_case(tmp_path):
    path = tmp_path / "state.json"
    state = LoopState(cycle=4, phase=Phase.BUILD, task_index=2, session_id="ses_1")
    state.pin_idea(tmp_path / "ideas" / "a.md", "a.md")
    save_state(path, state)

    raw = json.loads(path.read_text())
    assert raw["taskIndex"] == 2
    assert raw["sessionId"] == "ses_1"
    assert raw["currentIdeaFilename"] == "a.md"
    assert raw["lastUpdate"] is not None

    loaded = load_state(path)
    assert loaded.cycle == 4
    assert loaded.phase == Phase.BUILD
    assert loaded.has_idea
    assert loaded.last_update is not None


def test_invalid_fields_fall_back_individually(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(
        json.dumps(
            {
                "cycle": 0,
                "phase": "dancing",
                "taskIndex": 3,
                "sessionId": "ses_9",
                "retryCount": -2,
                "lastErrorTime": "not a date",
            }
        )
    )
    state = load_state(path)
    assert state.cycle == 1
    assert state.phase == Phase.INIT
    assert state.task_index == 3
    assert state.session_id == "ses_9"
    assert state.retry_count == 0
    assert state.last_error_time is None


def test_corrupt_file_gives_defaults(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json")
    assert load_state(path) == LoopState()
    path.write_text("[1, 2]")
    assert load_state(path) == LoopState()


def test_start_new_cycle_resets_per_cycle_fields():
    state = LoopState(
        cycle=2,
        phase=Phase.EVAL,
        task_index=5,
        session_id="ses",
        retry_count=2,
        cycle_start_time=datetime.now(timezone.utc),
    )
    state.pin_idea("/x/idea.md", "idea.md")
    start_new_cycle(state)
    assert state.cycle == 3
    assert state.phase == Phase.PLAN
    assert state.task_index == 0
    assert state.session_id is None
    assert state.retry_count == 0
    assert state.cycle_start_time is None
    assert not state.has_idea


def test_failure_bookkeeping():
    state = LoopState()
    assert record_failure(state) == 1
    assert record_failure(state) == 2
    assert state.last_error_time is not None
    reset_retries(state)
    assert state.retry_count == 0
    assert state.last_error_time is None


def test_cycle_elapsed_seconds():
    now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
    state = LoopState()
    assert cycle_elapsed_seconds(state, now) is None
    state.cycle_start_time = now - timedelta(minutes=5)
    assert cycle_elapsed_seconds(state, now) == 300
