import pytest

from forgeline.controller import apply_message, replay
from forgeline.providers import AssistantMessage, ContentBlock, ErrorMessage, ResultMessage, SystemMessage
from forgeline.state import FeatureStatus as S

STREAM = [
    SystemMessage(session_id="s1"),
    AssistantMessage(content=[ContentBlock(text="working")]),
    ResultMessage(result="done"),
]


def test_result_moves_implementation_to_verification():
    assert replay(S.IN_PROGRESS, STREAM) == S.VERIFICATION


def test_replaying_a_stream_lands_on_the_same_status():
    once = replay(S.IN_PROGRESS, STREAM)
    assert replay(once, STREAM) == once


def test_result_during_planning_does_not_change_status():
    assert replay(S.PLANNING, STREAM) == S.PLANNING


@pytest.mark.parametrize("status", [S.PLANNING, S.IN_PROGRESS, S.VERIFICATION])
def test_errors_fail_active_phases(status):
    assert apply_message(status, ErrorMessage(error="boom")) == S.FAILED
    assert apply_message(status, ResultMessage(subtype="error", result="max turns")) == S.FAILED


@pytest.mark.parametrize("status", [S.BACKLOG, S.VERIFIED, S.CANCELLED, S.FAILED])
def test_errors_leave_settled_features_alone(status):
    assert apply_message(status, ErrorMessage(error="late")) == status


def test_status_strings_are_accepted():
    assert apply_message("in_progress", ResultMessage()) == S.VERIFICATION
