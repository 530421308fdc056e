"""Tests for foundry.cli module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import yaml

from foundry import cli
from foundry.exceptions import FoundryError
from foundry.models import Phase, VMInfo
from foundry.storage import VolumeInfo


@pytest.fixture
def vm_file(tmp_path, vm_doc) -> Path:
    path = tmp_path / "web01.yaml"
    path.write_text(yaml.safe_dump(vm_doc, sort_keys=False))
    return path


@pytest.fixture
def manager():
    mgr = MagicMock()
    with patch("foundry.cli._manager") as factory:
        factory.return_value.__enter__.return_value = mgr
        yield mgr


class TestOfflineCommands:
    def test_validate(self, vm_file):
        with patch("foundry.cli.log") as mock_log:
            assert cli.main(["validate", str(vm_file)]) == 0
        mock_log.assert_called_once_with("SUCCESS", f"{vm_file}: VirtualMachine web01 is valid")

    def test_validate_failure_returns_1(self, tmp_path, vm_doc):
        vm_doc["spec"]["vcpus"] = 0
        path = tmp_path / "bad.yaml"
        path.write_text(yaml.safe_dump(vm_doc))
        with patch("foundry.cli.log") as mock_log:
            assert cli.main(["validate", str(path)]) == 1
        level, message = mock_log.call_args[0]
        assert level == "ERROR"
        assert "spec.vcpus" in message

    def test_render_domain(self, vm_file, capsys):
        assert cli.main(["render-domain", str(vm_file)]) == 0
        out = capsys.readouterr().out
        assert out.startswith('<domain type="kvm">')
        assert "<name>web01</name>" in out

    def test_cloud_init(self, vm_file, tmp_path):
        output = tmp_path / "seed.iso"
        with patch("foundry.cloudinit.run") as mock_run:
            assert cli.main(["cloud-init", str(vm_file), "-o", str(output)]) == 0
        cmd = mock_run.call_args[0][0]
        assert cmd[cmd.index("-output") + 1] == str(output)

    def test_detect_image(self, tmp_path, capsys):
        image = tmp_path / "disk.img"
        image.write_bytes(b"QFI\xfb" + b"\x00" * 16)
        assert cli.main(["detect-image", str(image)]) == 0
        assert capsys.readouterr().out.strip() == "qcow2"

    def test_detect_image_invalid(self, tmp_path):
        image = tmp_path / "disk.img"
        image.write_bytes(b"\x00" * 1024)
        with patch("foundry.cli.log"):
            assert cli.main(["detect-image", str(image)]) == 1

    def test_hash_password(self, capsys, monkeypatch):
        monkeypatch.delenv("FOUNDRY_PASSWORD", raising=False)
        with patch("foundry.cli.hash_password", return_value="$2b$12$hash") as mock_hash:
            assert cli.main(["hash-password", "--password", "s3cret"]) == 0
        mock_hash.assert_called_once_with("s3cret")
        assert capsys.readouterr().out.strip() == "$2b$12$hash"

    def test_hash_password_prompt_mismatch(self, monkeypatch):
        monkeypatch.delenv("FOUNDRY_PASSWORD", raising=False)
        with patch("foundry.cli.getpass.getpass", side_effect=["one", "two"]), patch("foundry.cli.log") as mock_log:
            assert cli.main(["hash-password"]) == 1
        mock_log.assert_called_once_with("ERROR", "Passwords do not match")

    def test_hash_password_from_env(self, capsys, monkeypatch):
        monkeypatch.setenv("FOUNDRY_PASSWORD", "from-env")
        with patch("foundry.cli.hash_password", return_value="$2b$12$env") as mock_hash:
            assert cli.main(["hash-password"]) == 0
        mock_hash.assert_called_once_with("from-env")

    def test_requires_command(self):
        with pytest.raises(SystemExit):
            cli.main([])


class TestLibvirtCommands:
    def test_create_prints_status(self, vm_file, manager, capsys):
        def _create(vm):
            vm.set_phase(Phase.RUNNING)
            return vm

        manager.create.side_effect = _create
        assert cli.main(["create", str(vm_file)]) == 0
        data = yaml.safe_load(capsys.readouterr().out)
        assert data["metadata"]["name"] == "web01"
        assert data["status"]["phase"] == "Running"

    def test_get(self, manager, sample_vm, capsys):
        manager.get.return_value = sample_vm
        assert cli.main(["get", "web01"]) == 0
        manager.get.assert_called_once_with("web01")
        assert "name: web01" in capsys.readouterr().out

    def test_stop_force(self, manager):
        assert cli.main(["stop", "web01", "--force", "--timeout", "30"]) == 0
        manager.stop.assert_called_once_with("web01", force=True, timeout=30.0)

    def test_destroy(self, manager):
        assert cli.main(["destroy", "web01"]) == 0
        manager.destroy.assert_called_once_with("web01")

    def test_import_image_defaults_name(self, manager, capsys):
        manager.import_image.return_value = "ubuntu.qcow2"
        assert cli.main(["import-image", "/srv/ubuntu.img"]) == 0
        manager.import_image.assert_called_once_with("/srv/ubuntu.img", "ubuntu.img")
        assert capsys.readouterr().out.strip() == "ubuntu.qcow2"

    def test_manager_error_returns_1(self, manager):
        manager.destroy.side_effect = FoundryError("VM web01 not found")
        with patch("foundry.cli.log") as mock_log:
            assert cli.main(["destroy", "web01"]) == 1
        mock_log.assert_called_once_with("ERROR", "VM web01 not found")

    def test_uri_is_passed(self, manager):
        with patch("foundry.cli._manager") as factory:
            factory.return_value.__enter__.return_value = manager
            cli.main(["--uri", "qemu:///session", "destroy", "web01"])
        factory.assert_called_once_with("qemu:///session")


class TestListingCommands:
    def test_list(self, manager, capsys):
        manager.list.return_value = [
            VMInfo(name="db01", state="shutoff", autostart=False, vcpus=4, memory_mib=8192),
            VMInfo(name="web01", state="running", autostart=True, vcpus=2, memory_mib=4096),
        ]
        assert cli.main(["list"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].split() == ["NAME", "STATE", "AUTOSTART", "CPUS", "MEMORY"]
        assert lines[1].split() == ["db01", "shutoff", "no", "4", "8192", "MiB"]
        assert lines[2].split() == ["web01", "running", "yes", "2", "4096", "MiB"]
        assert lines[1].index("shutoff") == lines[0].index("STATE")

    def test_list_empty(self, manager, capsys):
        manager.list.return_value = []
        assert cli.main(["list"]) == 0
        assert capsys.readouterr().out.strip() == "No VMs found"

    def test_image_list(self, manager, capsys):
        manager.list_images.return_value = [
            VolumeInfo(
                name="ubuntu.qcow2",
                pool="foundry-images",
                format="qcow2",
                path="/var/lib/foundry/images/ubuntu.qcow2",
                capacity=10 * 1024**3,
            )
        ]
        assert cli.main(["image-list"]) == 0
        lines = capsys.readouterr().out.splitlines()
        assert lines[0].split() == ["NAME", "FORMAT", "SIZE", "(GB)", "PATH"]
        assert lines[1].split() == ["ubuntu.qcow2", "qcow2", "10.00", "/var/lib/foundry/images/ubuntu.qcow2"]

    def test_image_list_empty(self, manager, capsys):
        manager.list_images.return_value = []
        assert cli.main(["image-list"]) == 0
        assert capsys.readouterr().out.strip() == "No images found"

    def test_image_info(self, manager, capsys):
        manager.image_info.return_value = VolumeInfo(
            name="alpine.raw",
            pool="foundry-images",
            format="raw",
            path="/var/lib/foundry/images/alpine.raw",
            capacity=1024**3,
            allocation=512 * 1024**2,
        )
        assert cli.main(["image-info", "alpine.raw"]) == 0
        manager.image_info.assert_called_once_with("alpine.raw")
        out = capsys.readouterr().out
        assert "Format:     raw" in out
        assert "Capacity:   1.00 GB (1073741824 bytes)" in out
        assert "Allocation: 0.50 GB (536870912 bytes)" in out

    def test_image_delete(self, manager):
        assert cli.main(["image-delete", "alpine.raw"]) == 0
        manager.delete_image.assert_called_once_with("alpine.raw")

    def test_image_delete_missing(self, manager):
        manager.delete_image.side_effect = FoundryError("image ghost not found")
        with patch("foundry.cli.log") as mock_log:
            assert cli.main(["image-delete", "ghost"]) == 1
        mock_log.assert_called_once_with("ERROR", "image ghost not found")
