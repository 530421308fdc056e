"""CLI entry points for Foundry."""

from __future__ import annotations

import argparse
import getpass
import sys
from pathlib import Path
from typing import List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from foundry.cloudinit import build_seed_files, write_iso
from foundry.config import load_from_file
from foundry.constants import LIBVIRT_URI
from foundry.domain import render_domain_xml
from foundry.exceptions import FoundryError
from foundry.models import VirtualMachine
from foundry.storage import detect_image_format
from foundry.utils import ensure_directory, get_env, hash_password, log


def _manager(uri: str):
    # Imported lazily so offline commands work without the libvirt bindings.
    from foundry.vm import VMManager

    return VMManager(uri)


def _print_vm(vm: VirtualMachine) -> None:
    print(yaml.safe_dump(vm.to_dict(), sort_keys=False, default_flow_style=False), end="")


def cmd_validate(args: argparse.Namespace) -> int:
    vm = load_from_file(args.file)
    log("SUCCESS", f"{args.file}: VirtualMachine {vm.name} is valid")
    return 0


def cmd_render_domain(args: argparse.Namespace) -> int:
    vm = load_from_file(args.file)
    print(render_domain_xml(vm))
    return 0


def cmd_cloud_init(args: argparse.Namespace) -> int:
    vm = load_from_file(args.file)
    output = Path(args.output)
    ensure_directory(output.parent)
    write_iso(build_seed_files(vm), output)
    log("SUCCESS", f"Wrote cloud-init seed for {vm.name} to {output}")
    return 0


def cmd_detect_image(args: argparse.Namespace) -> int:
    print(detect_image_format(args.path).value)
    return 0


def cmd_hash_password(args: argparse.Namespace) -> int:
    password = args.password or get_env("FOUNDRY_PASSWORD")
    if password is None:
        password = getpass.getpass("Password: ")
        if password != getpass.getpass("Confirm: "):
            log("ERROR", "Passwords do not match")
            return 1
    if not password:
        log("ERROR", "Password must not be empty")
        return 1
    print(hash_password(password))
    return 0


def cmd_create(args: argparse.Namespace) -> int:
    vm = load_from_file(args.file)
    with _manager(args.uri) as mgr:
        vm = mgr.create(vm)
    _print_vm(vm)
    return 0


def cmd_get(args: argparse.Namespace) -> int:
    with _manager(args.uri) as mgr:
        vm = mgr.get(args.name)
    _print_vm(vm)
    return 0


def cmd_start(args: argparse.Namespace) -> int:
    with _manager(args.uri) as mgr:
        mgr.start(args.name)
    return 0


def cmd_stop(args: argparse.Namespace) -> int:
    with _manager(args.uri) as mgr:
        mgr.stop(args.name, force=args.force, timeout=args.timeout)
    return 0


def cmd_destroy(args: argparse.Namespace) -> int:
    with _manager(args.uri) as mgr:
        mgr.destroy(args.name)
    return 0


def cmd_import_image(args: argparse.Namespace) -> int:
    name = args.name or Path(args.path).name
    with _manager(args.uri) as mgr:
        imported = mgr.import_image(args.path, name)
    print(imported)
    return 0


def _print_table(headers: List[str], rows: List[List[str]]) -> None:
    widths = [max(len(str(cell)) for cell in column) for column in zip(headers, *rows)]
    for row in [headers] + rows:
        print("  ".join(str(cell).ljust(width) for cell, width in zip(row, widths)).rstrip())


def cmd_list(args: argparse.Namespace) -> int:
    with _manager(args.uri) as mgr:
        vms = mgr.list()
    if not vms:
        print("No VMs found")
        return 0
    rows = [
        [vm.name, vm.state, "yes" if vm.autostart else "no", str(vm.vcpus), f"{vm.memory_mib} MiB"]
        for vm in vms
    ]
    _print_table(["NAME", "STATE", "AUTOSTART", "CPUS", "MEMORY"], rows)
    return 0


def cmd_image_list(args: argparse.Namespace) -> int:
    with _manager(args.uri) as mgr:
        images = mgr.list_images()
    if not images:
        print("No images found")
        return 0
    rows = [[image.name, image.format, f"{image.capacity_gb:.2f}", image.path] for image in images]
    _print_table(["NAME", "FORMAT", "SIZE (GB)", "PATH"], rows)
    return 0


def cmd_image_info(args: argparse.Namespace) -> int:
    with _manager(args.uri) as mgr:
        image = mgr.image_info(args.name)
    print(f"Image:      {image.name}")
    print(f"Pool:       {image.pool}")
    print(f"Format:     {image.format}")
    print(f"Capacity:   {image.capacity_gb:.2f} GB ({image.capacity} bytes)")
    print(f"Allocation: {image.allocation_gb:.2f} GB ({image.allocation} bytes)")
    print(f"Path:       {image.path}")
    return 0


def cmd_image_delete(args: argparse.Namespace) -> int:
    with _manager(args.uri) as mgr:
        mgr.delete_image(args.name)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="foundry", description="Foundry declarative libvirt VM manager")
    parser.add_argument("--uri", default=LIBVIRT_URI, help=f"libvirt connection URI (default: {LIBVIRT_URI})")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")
    sub.required = True

    p = sub.add_parser("validate", help="Load and validate a VirtualMachine file")
    p.add_argument("file")
    p.set_defaults(func=cmd_validate)

    p = sub.add_parser("render-domain", help="Print the libvirt domain XML for a VirtualMachine file")
    p.add_argument("file")
    p.set_defaults(func=cmd_render_domain)

    p = sub.add_parser("cloud-init", help="Build the cloud-init seed ISO for a VirtualMachine file")
    p.add_argument("file")
    p.add_argument("-o", "--output", default="seed.iso", help="Output ISO path (default: seed.iso)")
    p.set_defaults(func=cmd_cloud_init)

    p = sub.add_parser("detect-image", help="Print the format (qcow2 or raw) of a bootable disk image")
    p.add_argument("path")
    p.set_defaults(func=cmd_detect_image)

    p = sub.add_parser("hash-password", help="Print a crypt hash usable as cloudInit.passwordHash")
    p.add_argument("--password", default=None, help="Password to hash (default: FOUNDRY_PASSWORD env, else prompted)")
    p.set_defaults(func=cmd_hash_password)

    p = sub.add_parser("create", help="Provision and start a VM from a VirtualMachine file")
    p.add_argument("file")
    p.set_defaults(func=cmd_create)

    p = sub.add_parser("get", help="Print the stored VirtualMachine for a VM")
    p.add_argument("name")
    p.set_defaults(func=cmd_get)

    p = sub.add_parser("start", help="Start a stopped VM")
    p.add_argument("name")
    p.set_defaults(func=cmd_start)

    p = sub.add_parser("stop", help="Shut a VM down")
    p.add_argument("name")
    p.add_argument("--force", action="store_true", help="Power off immediately instead of a guest shutdown")
    p.add_argument(
        "--timeout",
        type=float,
        default=float(get_env("FOUNDRY_STOP_TIMEOUT", "120")),
        help="Seconds to wait for a graceful shutdown (default: FOUNDRY_STOP_TIMEOUT or 120)",
    )
    p.set_defaults(func=cmd_stop)

    p = sub.add_parser("destroy", help="Power off a VM and delete its volumes and definition")
    p.add_argument("name")
    p.set_defaults(func=cmd_destroy)

    p = sub.add_parser("import-image", help="Validate a local disk image and upload it to the images pool")
    p.add_argument("path")
    p.add_argument("--name", default=None, help="Volume name (default: file name)")
    p.set_defaults(func=cmd_import_image)

    p = sub.add_parser("list", help="List all libvirt domains with state, autostart, CPUs and memory")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("image-list", help="List the images in the images pool")
    p.set_defaults(func=cmd_image_list)

    p = sub.add_parser("image-info", help="Show details of an image in the images pool")
    p.add_argument("name")
    p.set_defaults(func=cmd_image_info)

    p = sub.add_parser("image-delete", help="Delete an image from the images pool")
    p.add_argument("name")
    p.set_defaults(func=cmd_image_delete)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return args.func(args)
    except FoundryError as exc:
        log("ERROR", str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
