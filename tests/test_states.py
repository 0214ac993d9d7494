"""Tests for the per-job settlement state machine."""

import pytest

from sharepay.settlement import InvalidTransition, SettlementRun, Stage


class TestSettlementRun:
    def test_full_path(self):
        run = SettlementRun("job-1", 7)
        for stage in (Stage.SHARES_REQUESTED, Stage.KEY_RECONSTRUCTED, Stage.SUBMITTED, Stage.FINALIZED):
            run.advance(stage)
        assert run.history == [
            Stage.LOCKED,
            Stage.SHARES_REQUESTED,
            Stage.KEY_RECONSTRUCTED,
            Stage.SUBMITTED,
            Stage.FINALIZED,
        ]

    def test_no_skipping(self):
        run = SettlementRun("job-1", 7)
        with pytest.raises(InvalidTransition):
            run.advance(Stage.KEY_RECONSTRUCTED)
        with pytest.raises(InvalidTransition):
            run.advance(Stage.FINALIZED)

    @pytest.mark.parametrize("steps", [0, 1, 2])
    def test_fail_before_submission(self, steps):
        run = SettlementRun("job-1", 7)
        order = [Stage.SHARES_REQUESTED, Stage.KEY_RECONSTRUCTED]
        for stage in order[:steps]:
            run.advance(stage)
        before = run.stage
        assert run.fail() is before
        assert run.stage is Stage.FAILED

    def test_no_failure_after_submission(self):
        run = SettlementRun.resume("job-1", 7, Stage.KEY_RECONSTRUCTED)
        run.advance(Stage.SUBMITTED)
        with pytest.raises(InvalidTransition):
            run.fail()

    def test_terminal_states(self):
        run = SettlementRun("job-1", 7)
        run.fail()
        with pytest.raises(InvalidTransition):
            run.advance(Stage.SHARES_REQUESTED)
        with pytest.raises(InvalidTransition):
            run.fail()
        with pytest.raises(InvalidTransition):
            SettlementRun.resume("job-1", 7, Stage.FINALIZED)
