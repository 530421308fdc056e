"""Condition ledger for VirtualMachine status.

Conditions are keyed by type. Setting a condition that already exists updates
it in place; ``last_transition_time`` only moves when the status value does.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Optional

from foundry.models import Condition, ConditionStatus, Phase, VirtualMachine, now

CONDITION_READY = "Ready"
CONDITION_STORAGE_PROVISIONED = "StorageProvisioned"
CONDITION_NETWORK_CONFIGURED = "NetworkConfigured"
CONDITION_CLOUD_INIT_READY = "CloudInitReady"


def set_condition(
    vm: VirtualMachine,
    cond_type: str,
    status: ConditionStatus,
    reason: str,
    message: str,
) -> None:
    timestamp = now()
    existing = get_condition(vm, cond_type)
    if existing is not None:
        if existing.status != status:
            previous = existing.last_transition_time
            if previous is not None and timestamp <= previous:
                timestamp = previous + timedelta(microseconds=1)
            existing.last_transition_time = timestamp
        existing.status = status
        existing.reason = reason
        existing.message = message
        existing.observed_generation = vm.generation
        return

    vm.status.conditions.append(
        Condition(
            type=cond_type,
            status=status,
            observed_generation=vm.generation,
            last_transition_time=timestamp,
            reason=reason,
            message=message,
        )
    )


def get_condition(vm: VirtualMachine, cond_type: str) -> Optional[Condition]:
    for cond in vm.status.conditions:
        if cond.type == cond_type:
            return cond
    return None


def is_condition_true(vm: VirtualMachine, cond_type: str) -> bool:
    cond = get_condition(vm, cond_type)
    return cond is not None and cond.status == ConditionStatus.TRUE


def is_condition_false(vm: VirtualMachine, cond_type: str) -> bool:
    cond = get_condition(vm, cond_type)
    return cond is not None and cond.status == ConditionStatus.FALSE


def remove_condition(vm: VirtualMachine, cond_type: str) -> None:
    vm.status.conditions = [cond for cond in vm.status.conditions if cond.type != cond_type]


def mark_ready(vm: VirtualMachine) -> None:
    """Record that every provisioning step succeeded and the VM is running."""
    set_condition(vm, CONDITION_READY, ConditionStatus.TRUE, "VMReady", "VM is running and accessible")
    set_condition(
        vm,
        CONDITION_STORAGE_PROVISIONED,
        ConditionStatus.TRUE,
        "StorageReady",
        "All storage volumes created successfully",
    )
    set_condition(vm, CONDITION_NETWORK_CONFIGURED, ConditionStatus.TRUE, "NetworkReady", "Network interfaces configured")
    set_condition(
        vm,
        CONDITION_CLOUD_INIT_READY,
        ConditionStatus.TRUE,
        "CloudInitReady",
        "Cloud-init ISO created and attached",
    )
    vm.set_phase(Phase.RUNNING)
    vm.update_observed_generation()


def mark_storage_provisioned(vm: VirtualMachine) -> None:
    set_condition(
        vm,
        CONDITION_STORAGE_PROVISIONED,
        ConditionStatus.TRUE,
        "StorageCreated",
        "All storage volumes created successfully",
    )


def mark_storage_failed(vm: VirtualMachine, err: BaseException) -> None:
    set_condition(vm, CONDITION_STORAGE_PROVISIONED, ConditionStatus.FALSE, "StorageFailed", str(err))
    vm.set_phase(Phase.FAILED)


def mark_network_configured(vm: VirtualMachine) -> None:
    set_condition(vm, CONDITION_NETWORK_CONFIGURED, ConditionStatus.TRUE, "NetworkReady", "Network interfaces configured")


def mark_network_failed(vm: VirtualMachine, err: BaseException) -> None:
    set_condition(vm, CONDITION_NETWORK_CONFIGURED, ConditionStatus.FALSE, "NetworkFailed", str(err))
    vm.set_phase(Phase.FAILED)


def mark_cloud_init_ready(vm: VirtualMachine) -> None:
    set_condition(
        vm,
        CONDITION_CLOUD_INIT_READY,
        ConditionStatus.TRUE,
        "CloudInitGenerated",
        "Cloud-init ISO created and attached",
    )


def mark_cloud_init_failed(vm: VirtualMachine, err: BaseException) -> None:
    set_condition(vm, CONDITION_CLOUD_INIT_READY, ConditionStatus.FALSE, "CloudInitFailed", str(err))
    vm.set_phase(Phase.FAILED)


def mark_failed(vm: VirtualMachine, reason: str, message: str) -> None:
    set_condition(vm, CONDITION_READY, ConditionStatus.FALSE, reason, message)
    vm.set_phase(Phase.FAILED)
