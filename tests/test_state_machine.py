import pytest

from cadence.services.state_machine import (
    RUNNING_STATUSES,
    FollowUpStatus,
    InvalidTransitionError,
    can_transition,
    cancel,
    complete,
    convert,
    fail,
    is_terminal,
    pause,
    resume,
    transition,
)


class TestValidTransitions:
    def test_active_to_paused(self):
        assert transition(FollowUpStatus.ACTIVE, FollowUpStatus.PAUSED) == FollowUpStatus.PAUSED

    def test_paused_to_active(self):
        assert transition(FollowUpStatus.PAUSED, FollowUpStatus.ACTIVE) == FollowUpStatus.ACTIVE

    def test_active_to_completed(self):
        assert transition(FollowUpStatus.ACTIVE, FollowUpStatus.COMPLETED) == FollowUpStatus.COMPLETED

    @pytest.mark.parametrize("state", list(FollowUpStatus))
    def test_any_state_except_failed_can_fail(self, state):
        assert can_transition(state, FollowUpStatus.FAILED) is (state != FollowUpStatus.FAILED)


class TestInvalidTransitions:
    def test_paused_cannot_complete(self):
        with pytest.raises(InvalidTransitionError):
            transition(FollowUpStatus.PAUSED, FollowUpStatus.COMPLETED)

    def test_completed_cannot_convert(self):
        with pytest.raises(InvalidTransitionError):
            transition(FollowUpStatus.COMPLETED, FollowUpStatus.CONVERTED)

    def test_cancelled_cannot_resume(self):
        with pytest.raises(InvalidTransitionError):
            transition(FollowUpStatus.CANCELLED, FollowUpStatus.ACTIVE)

    def test_same_state(self):
        with pytest.raises(InvalidTransitionError):
            transition(FollowUpStatus.ACTIVE, FollowUpStatus.ACTIVE)

    def test_error_message_names_states(self):
        with pytest.raises(InvalidTransitionError) as exc:
            transition(FollowUpStatus.CONVERTED, FollowUpStatus.PAUSED)
        assert "CONVERTED -> PAUSED" in str(exc.value)


class TestHelperFunctions:
    def test_convert_from_active_and_paused(self):
        assert convert(FollowUpStatus.ACTIVE) == FollowUpStatus.CONVERTED
        assert convert(FollowUpStatus.PAUSED) == FollowUpStatus.CONVERTED

    def test_convert_twice_fails(self):
        with pytest.raises(InvalidTransitionError):
            convert(FollowUpStatus.CONVERTED)

    def test_cancel(self):
        assert cancel(FollowUpStatus.PAUSED) == FollowUpStatus.CANCELLED

    def test_pause_and_resume(self):
        assert resume(pause(FollowUpStatus.ACTIVE)) == FollowUpStatus.ACTIVE

    def test_complete_from_paused_fails(self):
        with pytest.raises(InvalidTransitionError):
            complete(FollowUpStatus.PAUSED)

    def test_fail_from_failed_fails(self):
        with pytest.raises(InvalidTransitionError):
            fail(FollowUpStatus.FAILED)


class TestStatusGroups:
    def test_running_statuses(self):
        assert RUNNING_STATUSES == {FollowUpStatus.ACTIVE, FollowUpStatus.PAUSED}

    def test_terminal(self):
        assert is_terminal(FollowUpStatus.CONVERTED)
        assert not is_terminal(FollowUpStatus.PAUSED)
