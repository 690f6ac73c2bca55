from calldesk.states import CallState


class TestCallState:
    def test_lifecycle_only_moves_forward(self):
        assert CallState.RINGING.can_advance_to(CallState.ANSWERED)
        assert CallState.ANSWERED.can_advance_to(CallState.IN_PROGRESS)
        assert CallState.RINGING.can_advance_to(CallState.ENDING)
        assert not CallState.IN_PROGRESS.can_advance_to(CallState.ANSWERED)
        assert not CallState.ANSWERED.can_advance_to(CallState.ANSWERED)
        assert not CallState.ENDING.can_advance_to(CallState.IN_PROGRESS)

    def test_live_states(self):
        assert not CallState.RINGING.is_live
        assert CallState.ANSWERED.is_live
        assert CallState.IN_PROGRESS.is_live
        assert not CallState.ENDING.is_live

    def test_terminal(self):
        assert CallState.ENDING.is_terminal
        assert not CallState.RINGING.is_terminal
