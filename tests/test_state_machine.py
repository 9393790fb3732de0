import pytest
from app.services.state_machine import (
    FollowupStatus,
    InvalidTransitionError,
    approve_for_send,
    can_transition,
    complete,
    fail,
    retry,
    transition,
)


class TestValidTransitions:
    def test_analysis_to_send(self):
        result = transition(FollowupStatus.SCHEDULED_FOR_ANALYSIS, FollowupStatus.SCHEDULED_FOR_SEND)
        assert result == FollowupStatus.SCHEDULED_FOR_SEND

    def test_analysis_to_completed(self):
        result = transition(FollowupStatus.SCHEDULED_FOR_ANALYSIS, FollowupStatus.COMPLETED)
        assert result == FollowupStatus.COMPLETED

    def test_send_to_failed(self):
        result = transition(FollowupStatus.SCHEDULED_FOR_SEND, FollowupStatus.FAILED)
        assert result == FollowupStatus.FAILED

    def test_accepts_stored_string(self):
        assert transition("scheduled_for_send", FollowupStatus.COMPLETED) == FollowupStatus.COMPLETED


class TestInvalidTransitions:
    def test_send_back_to_analysis(self):
        with pytest.raises(InvalidTransitionError):
            transition(FollowupStatus.SCHEDULED_FOR_SEND, FollowupStatus.SCHEDULED_FOR_ANALYSIS)

    def test_completed_is_terminal(self):
        with pytest.raises(InvalidTransitionError):
            transition(FollowupStatus.COMPLETED, FollowupStatus.SCHEDULED_FOR_SEND)

    def test_failed_is_terminal(self):
        with pytest.raises(InvalidTransitionError):
            transition(FollowupStatus.FAILED, FollowupStatus.FAILED)


class TestHelperFunctions:
    def test_approve_for_send(self):
        assert approve_for_send(FollowupStatus.SCHEDULED_FOR_ANALYSIS) == FollowupStatus.SCHEDULED_FOR_SEND

    def test_approve_twice_is_a_retry(self):
        assert approve_for_send(FollowupStatus.SCHEDULED_FOR_SEND) == FollowupStatus.SCHEDULED_FOR_SEND

    def test_complete_from_either_active_state(self):
        assert complete(FollowupStatus.SCHEDULED_FOR_ANALYSIS) == FollowupStatus.COMPLETED
        assert complete(FollowupStatus.SCHEDULED_FOR_SEND) == FollowupStatus.COMPLETED

    def test_complete_completed_fails(self):
        with pytest.raises(InvalidTransitionError):
            complete(FollowupStatus.COMPLETED)

    def test_fail(self):
        assert fail("scheduled_for_analysis") == FollowupStatus.FAILED

    def test_retry_keeps_state(self):
        assert retry(FollowupStatus.SCHEDULED_FOR_ANALYSIS) == FollowupStatus.SCHEDULED_FOR_ANALYSIS
        assert retry("scheduled_for_send") == FollowupStatus.SCHEDULED_FOR_SEND

    def test_retry_from_terminal_fails(self):
        with pytest.raises(InvalidTransitionError):
            retry(FollowupStatus.FAILED)


class TestCanTransition:
    def test_returns_bool(self):
        assert can_transition(FollowupStatus.SCHEDULED_FOR_ANALYSIS, FollowupStatus.FAILED) is True
        assert can_transition(FollowupStatus.COMPLETED, FollowupStatus.FAILED) is False


class TestErrorMessage:
    def test_names_both_states(self):
        with pytest.raises(InvalidTransitionError) as exc_info:
            complete(FollowupStatus.FAILED)
        assert "failed -> completed" in str(exc_info.value)
