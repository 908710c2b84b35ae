"""Shared fixtures for the vmdeployerd tests."""

import random

import pytest

from vmdeployerd.lib.dataclasses import (
    BaseTemplate,
    ClusterConfig,
    HypervisorNode,
    NumaNode,
    VmTemplate,
)
from vmdeployerd.lib.exceptions import NotFoundError, RemoteOperationError
from vmdeployerd.lib.provision import Provisioner


class FakeProxmox:
    """In-memory stand-in for ProxmoxSession that records every call."""

    def __init__(self):
        self.calls = []
        self.next_id = 100
        self.failing_clones = set()
        self.task_results = {}
        self.vms = {}
        self.current_config = {
            "virtio0": "local-lvm:vm-100-disk-0,size=8G",
            "net0": "virtio=AA:BB:CC:DD:EE:FF,bridge=vmbr0",
        }

    def called(self, name):
        return [call for call in self.calls if call[0] == name]

    def get_next_id(self):
        self.calls.append(("get_next_id",))
        vmid = self.next_id
        self.next_id += 1
        return vmid

    def clone_vm(self, node, template_id, newid, name):
        self.calls.append(("clone_vm", node, template_id, newid, name))
        if newid in self.failing_clones:
            raise RemoteOperationError("clone refused", status_code=500)
        return f"UPID:{node}:clone:{newid}"

    def get_vm_config(self, node, vmid):
        self.calls.append(("get_vm_config", node, vmid))
        return dict(self.current_config)

    def configure_vm(self, node, vmid, fields):
        self.calls.append(("configure_vm", node, vmid, fields))
        return f"UPID:{node}:config:{vmid}"

    def resize_disk(self, node, vmid, disk, size_gib):
        self.calls.append(("resize_disk", node, vmid, disk, size_gib))
        return ""

    def start_vm(self, node, vmid):
        self.calls.append(("start_vm", node, vmid))
        return f"UPID:{node}:start:{vmid}"

    def reset_vm(self, node, vmid):
        self.calls.append(("reset_vm", node, vmid))
        return f"UPID:{node}:reset:{vmid}"

    def stop_vm(self, node, vmid, method="shutdown"):
        self.calls.append(("stop_vm", node, vmid, method))
        return f"UPID:{node}:stop:{vmid}"

    def delete_vm(self, node, vmid):
        self.calls.append(("delete_vm", node, vmid))
        return f"UPID:{node}:delete:{vmid}"

    def find_vm_by_name(self, node, name):
        self.calls.append(("find_vm_by_name", node, name))
        try:
            return self.vms[node][name]
        except KeyError:
            raise NotFoundError(f"VM with name {name} not found on node {node}")

    def get_task_status(self, node, upid):
        self.calls.append(("get_task_status", node, upid))
        return {"status": "stopped", "exitstatus": self.task_results.get(upid, "OK")}

    def get_network_interfaces(self, node, vmid):
        self.calls.append(("get_network_interfaces", node, vmid))
        return [
            {
                "name": "lo",
                "ip-addresses": [{"ip-address-type": "ipv4", "ip-address": "127.0.0.1"}],
            },
            {
                "name": "eth0",
                "ip-addresses": [
                    {"ip-address-type": "ipv6", "ip-address": "fe80::1"},
                    {"ip-address-type": "ipv4", "ip-address": f"10.0.0.{vmid % 256}"},
                ],
            },
        ]


class FakeRegistrar:
    def __init__(self):
        self.registered = []

    def register(self, ip, substitutions, deadline=None):
        self.registered.append((ip, substitutions))


@pytest.fixture
def cluster():
    hv1 = HypervisorNode(
        name="hv1",
        weight=1,
        suffix="a",
        ht=True,
        hugepages=True,
        numa=(
            NumaNode(id=0, phy_cores=frozenset(range(0, 4)), ht_cores=frozenset(range(16, 20))),
        ),
        base_templates=(BaseTemplate(name="tmpl-a", id=9000),),
    )
    hv2 = HypervisorNode(
        name="hv2",
        weight=3,
        suffix="b",
        numa=(
            NumaNode(id=0, phy_cores=frozenset(range(0, 8))),
            NumaNode(id=1, phy_cores=frozenset(range(8, 16))),
        ),
        base_templates=(BaseTemplate(name="tmpl-a", id=9001),),
    )
    hv3 = HypervisorNode(
        name="hv3",
        weight=0,
        suffix="c",
        base_templates=(BaseTemplate(name="tmpl-a", id=9002),),
    )
    return ClusterConfig(
        nodes=(hv1, hv2, hv3),
        vm_templates=(
            VmTemplate(name="small", cpu=2, memory=2048, disk=20),
            VmTemplate(name="cp", cpu=4, memory=8192, disk=40, role="controlplane", cpu_model="host"),
        ),
    )


@pytest.fixture
def config():
    return {
        "debug": False,
        "log_level": "info",
        "log_format": "text",
        "auth_token": "secret",
        "cluster_file": "/dev/null",
        "api_address": "127.0.0.1",
        "api_port": 8080,
        "proxmox_base_addr": "https://pve.example.com:8006/api2/json",
        "proxmox_token": "root@pam!deployer=uuid",
        "proxmox_verify_ssl": True,
        "proxmox_timeout": 10,
        "talos_machine_template": "/dev/null",
        "talos_controlplane_endpoint": "https://cp.example.com:6443",
        "talos_vm_interface": "eth0",
        "talos_agent_port": 50000,
        "talos_talosctl": "talosctl",
        "provisioning_task_poll_interval": 0,
        "provisioning_task_timeout": None,
        "provisioning_vm_timeout": None,
        "provisioning_ip_attempts": 3,
        "provisioning_ip_delay": 0,
        "provisioning_reset_delay": 0,
        "provisioning_register_attempts": 3,
        "provisioning_register_delay": 0,
        "notifications_enabled": False,
        "notifications_uri": "",
        "notifications_action": "post",
        "notifications_icons": {},
        "notifications_body": {},
    }


@pytest.fixture
def session():
    return FakeProxmox()


@pytest.fixture
def registrar():
    return FakeRegistrar()


@pytest.fixture
def provisioner(config, cluster, session, registrar):
    return Provisioner(config, cluster, session, registrar, rng=random.Random(7))
