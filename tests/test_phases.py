"""Tests for foundry.phases module."""

from __future__ import annotations

import copy

import pytest

from foundry.conditions import CONDITION_READY, get_condition
from foundry.exceptions import ValidationError
from foundry.models import ConditionStatus, Phase, new_virtual_machine
from foundry.phases import (
    is_running,
    is_terminal,
    is_transitioning,
    transition_to_creating,
    transition_to_failed,
    transition_to_running,
    transition_to_stopped,
    transition_to_stopping,
)

TRANSITIONS = {
    transition_to_creating: {Phase.PENDING},
    transition_to_running: {Phase.CREATING, Phase.STOPPED},
    transition_to_stopping: {Phase.RUNNING},
    transition_to_stopped: {Phase.STOPPING, Phase.RUNNING},
}

TARGETS = {
    transition_to_creating: Phase.CREATING,
    transition_to_running: Phase.RUNNING,
    transition_to_stopping: Phase.STOPPING,
    transition_to_stopped: Phase.STOPPED,
}


def _vm_in(phase):
    vm = new_virtual_machine("a")
    vm.set_phase(phase)
    return vm


class TestTransitionTable:
    @pytest.mark.parametrize("transition", list(TRANSITIONS), ids=lambda fn: fn.__name__)
    def test_allowed_sources(self, transition):
        for phase in TRANSITIONS[transition]:
            vm = _vm_in(phase)
            transition(vm)
            assert vm.phase == TARGETS[transition]

    @pytest.mark.parametrize("transition", list(TRANSITIONS), ids=lambda fn: fn.__name__)
    def test_illegal_sources_raise_without_mutation(self, transition):
        for phase in set(Phase) - TRANSITIONS[transition]:
            vm = _vm_in(phase)
            before = copy.deepcopy(vm)
            with pytest.raises(ValidationError, match=f"from phase {phase.value}"):
                transition(vm)
            assert vm == before

    def test_unset_phase_is_rejected(self):
        vm = new_virtual_machine("a")
        vm.status.phase = None
        with pytest.raises(ValidationError, match="<unset>"):
            transition_to_creating(vm)


class TestConditionsOnTransition:
    def test_creating_marks_ready_false(self):
        vm = _vm_in(Phase.PENDING)
        transition_to_creating(vm)
        cond = get_condition(vm, CONDITION_READY)
        assert cond.status == ConditionStatus.FALSE
        assert cond.reason == "Creating"

    def test_running_marks_ready_and_syncs_generation(self):
        vm = _vm_in(Phase.CREATING)
        vm.metadata.generation = 5
        transition_to_running(vm)
        cond = get_condition(vm, CONDITION_READY)
        assert cond.status == ConditionStatus.TRUE
        assert cond.reason == "VMReady"
        assert vm.status.observed_generation == 5

    def test_stop_reasons(self):
        vm = _vm_in(Phase.RUNNING)
        transition_to_stopping(vm)
        assert get_condition(vm, CONDITION_READY).reason == "Stopping"
        transition_to_stopped(vm)
        assert get_condition(vm, CONDITION_READY).reason == "Stopped"


class TestFailed:
    @pytest.mark.parametrize("phase", list(Phase))
    def test_reachable_from_every_phase(self, phase):
        vm = _vm_in(phase)
        transition_to_failed(vm, "Boom", "it broke")
        assert vm.phase == Phase.FAILED
        cond = get_condition(vm, CONDITION_READY)
        assert cond.status == ConditionStatus.FALSE
        assert cond.reason == "Boom"
        assert cond.message == "it broke"


class TestPredicates:
    def test_is_terminal(self):
        assert is_terminal(Phase.STOPPED)
        assert is_terminal(Phase.FAILED)
        assert not is_terminal(Phase.RUNNING)
        assert not is_terminal(None)

    def test_is_running(self):
        assert is_running(Phase.RUNNING)
        assert not is_running(Phase.STOPPING)

    def test_is_transitioning(self):
        assert is_transitioning(Phase.CREATING)
        assert is_transitioning(Phase.STOPPING)
        assert not is_transitioning(Phase.PENDING)
