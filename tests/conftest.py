"""Shared test fixtures."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from foundry.constants import API_GROUP_VERSION
from foundry.models import VirtualMachine, apply_defaults

SSH_KEY = "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIGrfAbCdEfGhIjKlMnOpQrStUvWxYz0123456789abcd admin@example"
PASSWORD_HASH = "$6$rounds=4096$saltsalt$3MEaFEKLi5pCU2jc0FvLqBtM6lEvQkUyY1v9uqs6zWJr2iDtk5J0qV5x1qZhE2C7n5m9n8y0q8qJZQJ2Zo1Yx."


def vm_document(**spec_overrides) -> dict:
    spec = {
        "vcpus": 2,
        "memoryGiB": 4,
        "bootDisk": {"sizeGB": 20, "image": "ubuntu-24.04.qcow2"},
        "dataDisks": [{"device": "vdb", "sizeGB": 50}],
        "networkInterfaces": [
            {
                "ip": "10.250.250.10/24",
                "gateway": "10.250.250.1",
                "bridge": "br0",
                "dnsServers": ["1.1.1.1", "8.8.8.8"],
                "defaultRoute": True,
            }
        ],
        "cloudInit": {
            "fqdn": "web01.example.com",
            "sshAuthorizedKeys": [SSH_KEY],
            "passwordHash": PASSWORD_HASH,
        },
    }
    spec.update(spec_overrides)
    return {
        "apiVersion": API_GROUP_VERSION,
        "kind": "VirtualMachine",
        "metadata": {"name": "web01"},
        "spec": spec,
    }


@pytest.fixture
def vm_doc() -> dict:
    """Return a complete VirtualMachine document as parsed from YAML."""
    return vm_document()


@pytest.fixture
def sample_vm(vm_doc) -> VirtualMachine:
    """Return a defaulted VirtualMachine in phase Pending."""
    vm = VirtualMachine.from_dict(vm_doc)
    vm.metadata.generation = 1
    apply_defaults(vm)
    return vm


@pytest.fixture
def mock_domain():
    """A libvirt domain double that keeps one metadata element in memory."""
    domain = MagicMock()
    state = {"xml": None}

    def _set_metadata(kind, xml, key, uri, flags):
        state["xml"] = xml
        return 0

    def _metadata(kind, uri, flags):
        if state["xml"] is None:
            raise RuntimeError("metadata not found")
        return state["xml"]

    domain.setMetadata.side_effect = _set_metadata
    domain.metadata.side_effect = _metadata
    domain.state = state
    return domain
