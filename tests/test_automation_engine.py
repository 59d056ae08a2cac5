"""
Test suite for the automation mode engine
"""
import pytest

from topicflow.processors.automation_engine import (
    GATED_STAGES,
    evaluate_item,
    passes_quality_gate,
    stage_permissions,
    transition,
)
from topicflow.utils.models import (
    AutomationMode,
    AutomationState,
    CommandKind,
    HoldReason,
    ModeCommand,
    Stage,
)

ALL_STATES = [
    AutomationState(mode=mode, holiday=holiday)
    for mode in AutomationMode
    for holiday in (False, True)
]

ALL_COMMANDS = [ModeCommand(kind=CommandKind.SET_MODE, mode=mode) for mode in AutomationMode] + [
    ModeCommand(kind=CommandKind.ENTER_HOLIDAY),
    ModeCommand(kind=CommandKind.EXIT_HOLIDAY),
]


class TestTransitions:
    """Test the transition function"""

    def test_transition_is_total(self):
        """Every (state, command) pair has a next state."""
        for state in ALL_STATES:
            for command in ALL_COMMANDS:
                assert isinstance(transition(state, command), AutomationState)

    def test_permissions_defined_for_every_state(self):
        """Test every state maps to a defined subset of stages"""
        for state in ALL_STATES:
            permitted = stage_permissions(state)
            assert permitted is not None
            assert permitted <= set(Stage)

    def test_holiday_keeps_stored_mode(self):
        """Test holiday keeps the stored mode and exiting restores it"""
        state = AutomationState(mode=AutomationMode.AUTO_ILLUSTRATE)
        on_holiday = transition(state, ModeCommand.parse("holiday"))
        assert on_holiday.holiday is True
        assert on_holiday.mode == AutomationMode.AUTO_ILLUSTRATE
        assert on_holiday.effective_mode == "holiday"

        back = transition(on_holiday, ModeCommand(kind=CommandKind.EXIT_HOLIDAY))
        assert back == state

    def test_set_mode_leaves_holiday(self):
        """Test setting a base mode also leaves holiday"""
        state = AutomationState(mode=AutomationMode.MANUAL, holiday=True)
        new_state = transition(state, ModeCommand.parse("auto_simplify"))
        assert new_state == AutomationState(mode=AutomationMode.AUTO_SIMPLIFY, holiday=False)

    def test_exit_holiday_when_not_on_holiday_is_noop(self):
        """Test exiting holiday off holiday leaves the state unchanged"""
        state = AutomationState(mode=AutomationMode.AUTO_GATHER)
        assert transition(state, ModeCommand(kind=CommandKind.EXIT_HOLIDAY)) == state

    def test_parse_rejects_unknown_label(self):
        """Test unknown mode labels are rejected"""
        with pytest.raises(ValueError):
            ModeCommand.parse("turbo")


class TestStagePermissions:
    """Test per-mode stage sets"""

    @pytest.mark.parametrize(
        "mode,expected",
        [
            (AutomationMode.MANUAL, set()),
            (AutomationMode.AUTO_GATHER, {Stage.GATHER}),
            (AutomationMode.AUTO_SIMPLIFY, {Stage.GATHER, Stage.SIMPLIFY}),
            (AutomationMode.AUTO_ILLUSTRATE, {Stage.GATHER, Stage.SIMPLIFY, Stage.ILLUSTRATE}),
        ],
    )
    def test_mode_stage_sets(self, mode, expected):
        """Test the stage set each base mode permits"""
        assert stage_permissions(AutomationState(mode=mode)) == expected

    def test_modes_are_increasingly_autonomous(self):
        """Test each mode permits strictly more than the one before"""
        sets = [stage_permissions(AutomationState(mode=m)) for m in AutomationMode]
        for lower, higher in zip(sets, sets[1:]):
            assert lower < higher

    @pytest.mark.parametrize("mode", list(AutomationMode))
    def test_holiday_only_gathers(self, mode):
        """Test holiday permits gathering only, whatever the stored mode"""
        assert stage_permissions(AutomationState(mode=mode, holiday=True)) == {Stage.GATHER}


class TestQualityGate:
    """Test per-item gating"""

    def test_below_threshold_is_held_in_auto_illustrate(self):
        """Threshold 60, confidence 55: held for review, not published."""
        decision = evaluate_item(
            AutomationState(mode=AutomationMode.AUTO_ILLUSTRATE), confidence=55, quality_threshold=60
        )
        assert decision.held is True
        assert decision.hold_reason == HoldReason.QUALITY_GATE
        assert Stage.ILLUSTRATE not in decision.permitted
        assert Stage.SIMPLIFY not in decision.permitted

    def test_at_threshold_passes(self):
        """Test confidence equal to the threshold passes the gate"""
        decision = evaluate_item(
            AutomationState(mode=AutomationMode.AUTO_ILLUSTRATE), confidence=60, quality_threshold=60
        )
        assert decision.held is False
        assert decision.permitted == {Stage.GATHER, Stage.SIMPLIFY, Stage.ILLUSTRATE}

    @pytest.mark.parametrize("state", ALL_STATES)
    def test_low_confidence_held_in_every_state(self, state):
        """Test low confidence is held whatever the mode"""
        decision = evaluate_item(state, confidence=10, quality_threshold=60)
        assert decision.held is True
        assert not (decision.permitted & GATED_STAGES)

    def test_unresolved_item_fails_gate(self):
        """Test an item without a confidence never passes the gate"""
        assert passes_quality_gate(None, 0) is False
        assert passes_quality_gate(0, 0) is True
