#!/usr/bin/env python3

# vmconfig.py - VM Deployer VM configuration builder
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

import logging


logger = logging.getLogger(__name__)


DEFAULT_CPU_MODEL = "x86-64-v3"
PRIMARY_DISK = "virtio0"
PRIMARY_NIC = "net0"


def _append_option(value, key, option):
    if not value or f"{key}=" in value:
        return value
    return f"{value},{option}"


def upgrade_disk_options(value):
    """
    Add aio=native to a disk device string unless an aio mode is already set
    """
    return _append_option(value, "aio", "aio=native")


def upgrade_net_options(value):
    """
    Add queues=2 to a NIC device string unless a queue count is already set
    """
    return _append_option(value, "queues", "queues=2")


def build_vm_config(vm_template, node, numa_node, affinity, current_config=None):
    """
    Build the form fields for a VM configuration update

    The guest always sees vm_template.cpu vCPUs on one socket, bound to the
    chosen host NUMA node; the host affinity is independent of that count.
    """
    fields = dict()

    fields["cpu"] = vm_template.cpu_model or DEFAULT_CPU_MODEL
    fields["sockets"] = 1
    fields["cores"] = vm_template.cpu
    fields["memory"] = vm_template.memory
    fields["numa"] = 1

    if node.hugepages:
        fields["hugepages"] = 2
        logger.info("Setting hugepages=2 for VM")

    # Device hints are best-effort; skipped when the current config is unavailable
    if current_config:
        for device, upgrade in [
            (PRIMARY_DISK, upgrade_disk_options),
            (PRIMARY_NIC, upgrade_net_options),
        ]:
            current = current_config.get(device)
            if not isinstance(current, str):
                continue
            upgraded = upgrade(current)
            if upgraded != current:
                fields[device] = upgraded
                logger.info(f"Setting {device}: {upgraded}")

    if affinity:
        fields["affinity"] = affinity
        logger.info(f"Setting CPU affinity: {affinity}")

    fields["numa0"] = (
        f"cpus=0-{vm_template.cpu - 1},memory={vm_template.memory},hostnodes={numa_node.id},policy=bind"
    )
    logger.info(f"Setting guest NUMA topology: numa0={fields['numa0']}")

    return fields
