import pytest

from errors import InvalidTransition
from processing_status import ProcessingStatus, can_transition, check_transition, is_terminal, progress_for


@pytest.mark.parametrize("current,target", [
    ("pending", "processing"),
    ("pending", "failed"),
    ("processing", "completed"),
    ("processing", "failed"),
    ("failed", "pending"),
])
def test_allowed_transitions(current, target):
    assert can_transition(ProcessingStatus(current), ProcessingStatus(target))


@pytest.mark.parametrize("current,target", [
    ("completed", "pending"),
    ("completed", "failed"),
    ("failed", "completed"),
    ("pending", "completed"),
])
def test_rejected_transitions(current, target):
    with pytest.raises(InvalidTransition):
        check_transition(ProcessingStatus(current), ProcessingStatus(target))


def test_progress_is_derived_from_status():
    assert progress_for(ProcessingStatus.PENDING).progress == 10
    assert progress_for(ProcessingStatus.PROCESSING).current_step == "background-removal"
    assert progress_for(ProcessingStatus.COMPLETED).progress == 100
    assert progress_for(ProcessingStatus.FAILED).progress == 0


def test_terminal_states():
    assert is_terminal(ProcessingStatus.COMPLETED)
    assert is_terminal(ProcessingStatus.FAILED)
    assert not is_terminal(ProcessingStatus.PROCESSING)
