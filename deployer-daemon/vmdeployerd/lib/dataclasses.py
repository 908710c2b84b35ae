#!/usr/bin/env python3

# dataclasses.py - VM Deployer dataclasses
# Part of the Parallel Virtual Cluster (PVC) system
#
#    Copyright (C) 2018-2021 Joshua M. Boniface <joshua@boniface.me>
#
#    This program is free software: you can redistribute it and/or modify
#    it under the terms of the GNU General Public License as published by
#    the Free Software Foundation, version 3.
#
#    This program is distributed in the hope that it will be useful,
#    but WITHOUT ANY WARRANTY; without even the implied warranty of
#    MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
#    GNU General Public License for more details.
#
#    You should have received a copy of the GNU General Public License
#    along with this program.  If not, see <https://www.gnu.org/licenses/>.
#
###############################################################################

from dataclasses import dataclass
from typing import Optional, Tuple, FrozenSet


#
# Cluster configuration; loaded once at startup and never modified
#
@dataclass(frozen=True)
class BaseTemplate:
    """
    A clonable base image on a hypervisor node
    """

    name: str
    id: int


@dataclass(frozen=True)
class NumaNode:
    """
    A NUMA domain of a hypervisor node and its host core pools
    """

    id: int
    phy_cores: FrozenSet[int] = frozenset()
    ht_cores: FrozenSet[int] = frozenset()


@dataclass(frozen=True)
class HypervisorNode:
    """
    An instance of a hypervisor Node
    """

    name: str
    weight: int
    suffix: str
    ht: bool = False
    hugepages: bool = False
    numa: Tuple[NumaNode, ...] = ()
    base_templates: Tuple[BaseTemplate, ...] = ()

    def get_base_template(self, name):
        for template in self.base_templates:
            if template.name == name:
                return template
        return None

    def get_numa_node(self, numa_id):
        for numa_node in self.numa:
            if numa_node.id == numa_id:
                return numa_node
        return None


@dataclass(frozen=True)
class VmTemplate:
    """
    A named VM sizing profile
    """

    name: str
    cpu: int
    memory: int
    disk: int
    role: str = "worker"
    cpu_model: Optional[str] = None
    numa: Optional[int] = None
    phy: Optional[str] = None
    ht: Optional[str] = None


@dataclass(frozen=True)
class ClusterConfig:
    """
    The full set of hypervisor nodes and VM templates
    """

    nodes: Tuple[HypervisorNode, ...] = ()
    vm_templates: Tuple[VmTemplate, ...] = ()

    def get_vm_template(self, name):
        for template in self.vm_templates:
            if template.name == name:
                return template
        return None


#
# Per-request state
#
@dataclass(frozen=True)
class ProvisioningRequest:
    """
    A validated request to create one or more VMs
    """

    base_template: str
    vm_template: str
    node: Optional[str] = None
    name: Optional[str] = None
    numa: Optional[int] = None
    phy: Optional[str] = None
    ht: Optional[str] = None
    phy_only: bool = False
    ht_only: bool = False
    reset: bool = False
    count: int = 1


@dataclass
class ProvisioningResult:
    """
    The outcome of one VM creation attempt
    """

    vm_id: Optional[int]
    node: str
    name: Optional[str]
    ip: Optional[str] = None
    role: Optional[str] = None
    reset: bool = False
    error: Optional[str] = None

    def to_dict(self):
        data = {
            "vm_id": self.vm_id,
            "node": self.node,
            "name": self.name,
            "reset": self.reset,
        }
        for key in ["ip", "role", "error"]:
            if getattr(self, key):
                data[key] = getattr(self, key)
        return data


@dataclass(frozen=True)
class DeletionRequest:
    """
    A request to remove a VM, by name or by node and id
    """

    vm_name: Optional[str] = None
    node: Optional[str] = None
    vm_id: Optional[int] = None
    stop_method: str = "shutdown"


@dataclass(frozen=True)
class DeletionResult:
    node: str
    vm_id: int

    def to_dict(self):
        return {"node": self.node, "vm_id": self.vm_id}
