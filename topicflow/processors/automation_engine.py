"""
Automation mode state machine and stage gating.

The engine is a Mealy machine over ``AutomationState`` (stored base mode plus
the holiday flag). ``transition`` is total over every (state, command) pair,
and the permitted stage set is a pure function of the state and, per item,
of its originality confidence against the topic's quality threshold.
"""
from typing import FrozenSet, Optional

from topicflow.utils.models import (
    AutomationMode,
    AutomationState,
    CommandKind,
    HoldReason,
    ItemDecision,
    ModeCommand,
    Stage,
)

# Stages each base mode runs without an editor
MODE_STAGES = {
    AutomationMode.MANUAL: frozenset(),
    AutomationMode.AUTO_GATHER: frozenset({Stage.GATHER}),
    AutomationMode.AUTO_SIMPLIFY: frozenset({Stage.GATHER, Stage.SIMPLIFY}),
    AutomationMode.AUTO_ILLUSTRATE: frozenset({Stage.GATHER, Stage.SIMPLIFY, Stage.ILLUSTRATE}),
}

# Holiday keeps ingestion running and freezes everything publication-facing
HOLIDAY_STAGES = frozenset({Stage.GATHER})

# Stages that require the quality gate to pass
GATED_STAGES = frozenset({Stage.SIMPLIFY, Stage.ILLUSTRATE})


def transition(state: AutomationState, command: ModeCommand) -> AutomationState:
    """Apply an editor command to an automation state."""
    if command.kind == CommandKind.SET_MODE:
        if command.mode is None:
            raise ValueError("set_mode requires a mode")
        # Picking a base mode leaves holiday
        return AutomationState(mode=command.mode, holiday=False)
    if command.kind == CommandKind.ENTER_HOLIDAY:
        return AutomationState(mode=state.mode, holiday=True)
    if command.kind == CommandKind.EXIT_HOLIDAY:
        return AutomationState(mode=state.mode, holiday=False)
    raise ValueError(f"Unknown command: {command.kind}")


def stage_permissions(state: AutomationState) -> FrozenSet[Stage]:
    """Stages allowed to run unattended for a topic, before per-item gating."""
    if state.holiday:
        return HOLIDAY_STAGES
    return MODE_STAGES[state.mode]


def passes_quality_gate(confidence: Optional[int], quality_threshold: int) -> bool:
    return confidence is not None and confidence >= quality_threshold


def evaluate_item(state: AutomationState, confidence: Optional[int], quality_threshold: int) -> ItemDecision:
    """Permitted unattended stages for one item.

    Content below the threshold keeps only ungated stages and is flagged for
    manual review whatever the mode.
    """
    permitted = stage_permissions(state)
    if passes_quality_gate(confidence, quality_threshold):
        return ItemDecision(permitted=permitted)
    return ItemDecision(
        permitted=permitted - GATED_STAGES,
        held=True,
        hold_reason=HoldReason.QUALITY_GATE,
    )

