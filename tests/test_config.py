"""Tests for foundry.config module."""

from __future__ import annotations

import pytest
import yaml

from foundry.config import load_from_file, load_from_yaml, save_to_file, validate_spec
from foundry.exceptions import EncodingError, ValidationError
from foundry.models import Phase, VirtualMachine


def _yaml(doc: dict) -> str:
    return yaml.safe_dump(doc, sort_keys=False)


class TestLoadFromYaml:
    def test_valid_document(self, vm_doc):
        vm = load_from_yaml(_yaml(vm_doc))
        assert vm.name == "web01"
        assert vm.phase == Phase.PENDING
        assert vm.spec.cpu_mode == "host-model"
        assert vm.spec.storage_pool == "foundry-vms"
        assert vm.spec.boot_disk.image_pool == "foundry-images"
        assert vm.spec.boot_disk.format == "qcow2"
        assert vm.spec.autostart is True

    def test_normalizes_name(self, vm_doc):
        vm_doc["metadata"]["name"] = "Web01"
        assert load_from_yaml(_yaml(vm_doc)).name == "web01"

    def test_invalid_yaml(self):
        with pytest.raises(EncodingError, match="failed to unmarshal YAML"):
            load_from_yaml("spec: [unterminated")

    def test_not_a_mapping(self):
        with pytest.raises(EncodingError, match="not a mapping"):
            load_from_yaml("- a\n- b\n")

    def test_missing_api_version(self, vm_doc):
        del vm_doc["apiVersion"]
        with pytest.raises(ValidationError, match="apiVersion"):
            load_from_yaml(_yaml(vm_doc))

    def test_wrong_api_version(self, vm_doc):
        vm_doc["apiVersion"] = "foundry.cofront.xyz/v2"
        with pytest.raises(ValidationError, match="unsupported apiVersion"):
            load_from_yaml(_yaml(vm_doc))

    def test_wrong_kind(self, vm_doc):
        vm_doc["kind"] = "Pod"
        with pytest.raises(ValidationError, match="unsupported kind"):
            load_from_yaml(_yaml(vm_doc))


class TestFiles:
    def test_save_then_load(self, tmp_path, sample_vm):
        path = tmp_path / "web01.yaml"
        save_to_file(sample_vm, path)
        assert load_from_file(path) == sample_vm

    def test_save_sets_api_version(self, tmp_path):
        vm = VirtualMachine()
        path = tmp_path / "vm.yaml"
        save_to_file(vm, path)
        data = yaml.safe_load(path.read_text())
        assert data["apiVersion"] == "foundry.cofront.xyz/v1alpha1"
        assert data["kind"] == "VirtualMachine"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ValidationError, match="failed to read file"):
            load_from_file(tmp_path / "nope.yaml")


class TestValidateSpec:
    def _expect(self, vm, match):
        with pytest.raises(ValidationError, match=match):
            validate_spec(vm)

    def test_valid(self, sample_vm):
        validate_spec(sample_vm)

    @pytest.mark.parametrize("name", ["", "-web", "web-", "Web01", "web.01"])
    def test_bad_names(self, sample_vm, name):
        sample_vm.metadata.name = name
        self._expect(sample_vm, "metadata.name")

    def test_resources(self, sample_vm):
        sample_vm.spec.vcpus = 0
        self._expect(sample_vm, "vcpus")
        sample_vm.spec.vcpus = 2
        sample_vm.spec.memory_gib = 0
        self._expect(sample_vm, "memoryGiB")

    def test_cpu_mode(self, sample_vm):
        sample_vm.spec.cpu_mode = "custom"
        self._expect(sample_vm, "cpuMode")

    def test_boot_disk_image_or_empty(self, sample_vm):
        sample_vm.spec.boot_disk.image = ""
        self._expect(sample_vm, "either 'image' or 'empty: true'")
        sample_vm.spec.boot_disk.empty = True
        validate_spec(sample_vm)
        sample_vm.spec.boot_disk.image = "ubuntu.qcow2"
        self._expect(sample_vm, "cannot specify both")

    def test_boot_disk_format(self, sample_vm):
        sample_vm.spec.boot_disk.format = "vmdk"
        self._expect(sample_vm, "bootDisk.format")

    def test_duplicate_data_disk(self, sample_vm):
        sample_vm.spec.data_disks.append(type(sample_vm.spec.data_disks[0])(device="vdb", size_gb=10))
        self._expect(sample_vm, "duplicated")

    def test_requires_interface(self, sample_vm):
        sample_vm.spec.network_interfaces = []
        self._expect(sample_vm, "at least one interface")

    @pytest.mark.parametrize(
        "ip, match",
        [
            ("10.0.0.5", "CIDR notation"),
            ("10.0.0.500/24", "invalid ip/cidr"),
            ("2001:db8::5/64", "IPv4"),
        ],
    )
    def test_interface_ip(self, sample_vm, ip, match):
        sample_vm.spec.network_interfaces[0].ip = ip
        self._expect(sample_vm, match)

    def test_interface_gateway_and_dns(self, sample_vm):
        iface = sample_vm.spec.network_interfaces[0]
        iface.gateway = "gateway"
        self._expect(sample_vm, "gateway")
        iface.gateway = "10.250.250.1"
        iface.dns_servers = ["dns.example.com"]
        self._expect(sample_vm, "dnsServers")

    def test_duplicate_ip(self, sample_vm):
        iface = sample_vm.spec.network_interfaces[0]
        sample_vm.spec.network_interfaces.append(type(iface)(ip=iface.ip, gateway=iface.gateway, bridge="br1"))
        self._expect(sample_vm, "duplicated")

    def test_cloud_init_fqdn(self, sample_vm):
        sample_vm.spec.cloud_init.fqdn = "web01"
        self._expect(sample_vm, "fqdn")

    def test_cloud_init_ssh_key(self, sample_vm):
        sample_vm.spec.cloud_init.ssh_authorized_keys = ["not-a-key"]
        self._expect(sample_vm, "sshAuthorizedKeys")

    def test_cloud_init_password_hash(self, sample_vm):
        sample_vm.spec.cloud_init.password_hash = "plaintext-password"
        self._expect(sample_vm, "passwordHash")
