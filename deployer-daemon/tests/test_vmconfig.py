"""Tests for VM configuration building."""

from vmdeployerd.lib.dataclasses import HypervisorNode, NumaNode, VmTemplate
from vmdeployerd.lib.vmconfig import (
    build_vm_config,
    upgrade_disk_options,
    upgrade_net_options,
)


NODE = HypervisorNode(name="hv1", weight=1, suffix="a")
NUMA1 = NumaNode(id=1, phy_cores=frozenset([8, 9]))
TEMPLATE = VmTemplate(name="small", cpu=4, memory=4096, disk=30)


def test_upgrade_disk_options():
    assert upgrade_disk_options("local:vm-1-disk-0,size=8G") == "local:vm-1-disk-0,size=8G,aio=native"
    assert upgrade_disk_options("local:vm-1-disk-0,aio=io_uring") == "local:vm-1-disk-0,aio=io_uring"
    assert upgrade_disk_options("") == ""


def test_upgrade_net_options():
    assert upgrade_net_options("virtio=AA,bridge=vmbr0") == "virtio=AA,bridge=vmbr0,queues=2"
    assert upgrade_net_options("virtio=AA,queues=4") == "virtio=AA,queues=4"


def test_build_vm_config():
    fields = build_vm_config(TEMPLATE, NODE, NUMA1, "8-9")
    assert fields == {
        "cpu": "x86-64-v3",
        "sockets": 1,
        "cores": 4,
        "memory": 4096,
        "numa": 1,
        "affinity": "8-9",
        "numa0": "cpus=0-3,memory=4096,hostnodes=1,policy=bind",
    }


def test_build_vm_config_hugepages_and_model():
    node = HypervisorNode(name="hv1", weight=1, suffix="a", hugepages=True)
    template = VmTemplate(name="cp", cpu=2, memory=2048, disk=20, cpu_model="host")
    fields = build_vm_config(template, node, NUMA1, "")
    assert fields["hugepages"] == 2
    assert fields["cpu"] == "host"
    assert "affinity" not in fields


def test_build_vm_config_device_hints():
    current = {
        "virtio0": "local:vm-1-disk-0,aio=threads",
        "net0": "virtio=AA,bridge=vmbr0",
        "scsi0": "local:vm-1-disk-1",
    }
    fields = build_vm_config(TEMPLATE, NODE, NUMA1, "8-9", current_config=current)
    assert "virtio0" not in fields
    assert fields["net0"] == "virtio=AA,bridge=vmbr0,queues=2"
    assert "scsi0" not in fields
