"""History recording: ordering and append-only storage"""
import pytest

from docflow.domain.enums import HistoryKind
from docflow.domain.errors import ConcurrencyError
from docflow.engine.history_recorder import HistoryRecorder
from docflow.repositories.history_repo import HistoryRepository


@pytest.fixture
def recorder(repos, clock):
    return HistoryRecorder(repos["history_repo"], clock)


def test_sequences_increase_per_instance(recorder):
    first = recorder.record_committed("WFI-1", "draft", "review", "submit", "alice")
    second = recorder.record_committed("WFI-1", "review", "draft", "return", "mia")
    other = recorder.record_committed("WFI-2", "draft", "review", "submit", "alice")

    assert (first.sequence, second.sequence, other.sequence) == (1, 2, 1)
    assert [r.history_id for r in recorder.query_by_instance("WFI-1")] == [first.history_id, second.history_id]


def test_timestamps_never_go_backwards(recorder, clock):
    first = recorder.record_committed("WFI-1", "draft", "review", "submit", "alice")
    clock.rewind(minutes=5)
    second = recorder.record_committed("WFI-1", "review", "draft", "return", "mia")

    assert second.timestamp == first.timestamp
    assert second.sequence == 2


def test_abandoned_record_keeps_state_and_reason(recorder):
    record = recorder.record_abandoned(
        "WFI-1", "review", "approve", "mia", reason="REJECTED", comments="Wrong letterhead"
    )

    assert record.kind == HistoryKind.TRANSITION_ABANDONED
    assert record.from_state_id == record.to_state_id == "review"
    assert record.metadata["reason"] == "REJECTED"
    assert record.comments == "Wrong letterhead"


def test_query_after_sequence_and_stream(recorder):
    for n in range(5):
        recorder.record_committed("WFI-1", "draft", "review", f"t{n}", "alice")

    assert [r.sequence for r in recorder.query_by_instance("WFI-1", after_sequence=3)] == [4, 5]
    assert [r.sequence for r in recorder.query_by_instance("WFI-1", limit=2)] == [1, 2]
    assert sum(1 for _ in recorder.stream_by_instance("WFI-1")) == 5


def test_duplicate_sequence_is_a_concurrency_error(recorder, repos):
    record = recorder.record_committed("WFI-1", "draft", "review", "submit", "alice")
    clash = record.model_copy(update={"history_id": "WFH-other"})

    with pytest.raises(ConcurrencyError):
        repos["history_repo"].append(clash)


def test_repository_has_no_mutation_path():
    public = {name for name in dir(HistoryRepository) if not name.startswith("_")}
    assert not any(name.startswith(("update", "delete", "remove", "replace")) for name in public)
