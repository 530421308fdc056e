"""Phase state machine for VirtualMachine lifecycle.

    Pending -> Creating -> Running -> Stopping -> Stopped
                              |                     ^
                              +---------------------+  (forced stop)
    Stopped -> Running (restart); any -> Failed.

Guarded transitions raise ``ValidationError`` and leave the VM untouched.
"""

from __future__ import annotations

from typing import Optional

from foundry.conditions import CONDITION_READY, set_condition
from foundry.exceptions import ValidationError
from foundry.models import ConditionStatus, Phase, VirtualMachine


def _require(vm: VirtualMachine, target: Phase, *allowed: Phase) -> None:
    current = vm.phase
    if current not in allowed:
        shown = current.value if current else "<unset>"
        raise ValidationError(f"cannot transition to {target.value} from phase {shown}")


def transition_to_creating(vm: VirtualMachine) -> None:
    _require(vm, Phase.CREATING, Phase.PENDING)
    vm.set_phase(Phase.CREATING)
    set_condition(vm, CONDITION_READY, ConditionStatus.FALSE, "Creating", "VM creation in progress")


def transition_to_running(vm: VirtualMachine) -> None:
    _require(vm, Phase.RUNNING, Phase.CREATING, Phase.STOPPED)
    vm.set_phase(Phase.RUNNING)
    set_condition(vm, CONDITION_READY, ConditionStatus.TRUE, "VMReady", "VM is running and accessible")
    vm.update_observed_generation()


def transition_to_stopping(vm: VirtualMachine) -> None:
    _require(vm, Phase.STOPPING, Phase.RUNNING)
    vm.set_phase(Phase.STOPPING)
    set_condition(vm, CONDITION_READY, ConditionStatus.FALSE, "Stopping", "VM shutdown in progress")


def transition_to_stopped(vm: VirtualMachine) -> None:
    _require(vm, Phase.STOPPED, Phase.STOPPING, Phase.RUNNING)
    vm.set_phase(Phase.STOPPED)
    set_condition(vm, CONDITION_READY, ConditionStatus.FALSE, "Stopped", "VM has been stopped")


def transition_to_failed(vm: VirtualMachine, reason: str, message: str) -> None:
    """Unconditionally move the VM to Failed."""
    vm.set_phase(Phase.FAILED)
    set_condition(vm, CONDITION_READY, ConditionStatus.FALSE, reason, message)


def is_terminal(phase: Optional[Phase]) -> bool:
    return phase in (Phase.STOPPED, Phase.FAILED)


def is_running(phase: Optional[Phase]) -> bool:
    return phase == Phase.RUNNING


def is_transitioning(phase: Optional[Phase]) -> bool:
    return phase in (Phase.CREATING, Phase.STOPPING)
