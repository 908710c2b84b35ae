#!/usr/bin/env python3

# cores.py - VM Deployer core range and affinity libraries
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
import random

from enum import Enum

from vmdeployerd.lib.exceptions import AllocationError, NotFoundError, ValidationError


logger = logging.getLogger(__name__)


class CorePolicy(Enum):
    BOTH = "both"
    PHYSICAL_ONLY = "phy"
    HT_ONLY = "ht"


#
# Core range strings, e.g. "0-3,8"
#
def _element_bounds(element):
    """
    Return the inclusive (start, end) of a single range element, or None if it is malformed
    """
    if "-" in element:
        range_parts = element.split("-")
        if len(range_parts) != 2:
            return None
        try:
            start = int(range_parts[0])
            end = int(range_parts[1])
        except ValueError:
            return None
    else:
        try:
            start = end = int(element)
        except ValueError:
            return None

    if start < 0 or start > end:
        return None

    return start, end


def parse_core_range(core_range):
    """
    Parse a comma-separated list of core ids and inclusive ranges into a set

    Malformed elements are skipped with a warning.
    """
    cores = set()
    if not core_range:
        return cores

    for element in core_range.split(","):
        bounds = _element_bounds(element)
        if bounds is None:
            logger.warning(f"Skipping malformed core range element '{element}'")
            continue
        cores.update(range(bounds[0], bounds[1] + 1))

    return cores


def count_cores(core_range):
    """
    Count the cores in a range string without expanding it
    """
    if not core_range:
        return 0

    count = 0
    for element in core_range.split(","):
        bounds = _element_bounds(element)
        if bounds is None:
            logger.warning(f"Skipping malformed core range element '{element}'")
            continue
        count += bounds[1] - bounds[0] + 1

    return count


def _format_run(start, end):
    if start == end:
        return str(start)
    return f"{start}-{end}"


def format_core_range(cores):
    """
    Format a collection of core ids as a canonical range string (sorted, consecutive runs merged)
    """
    ranges = list()
    start = None
    end = None

    for core in sorted(set(cores)):
        if end is not None and core == end + 1:
            end = core
            continue
        if start is not None:
            ranges.append(_format_run(start, end))
        start = end = core

    if start is not None:
        ranges.append(_format_run(start, end))

    return ",".join(ranges)


#
# Affinity allocation
#
def core_policy(phy_only=False, ht_only=False):
    """
    Turn the mutually exclusive request flags into a CorePolicy
    """
    if phy_only and ht_only:
        raise ValidationError("Both phy_only and ht_only cannot be set at the same time")
    if phy_only:
        return CorePolicy.PHYSICAL_ONLY
    if ht_only:
        return CorePolicy.HT_ONLY
    return CorePolicy.BOTH


def select_numa_node(node, numa_id=None, rng=random):
    """
    Return the requested NUMA node of a hypervisor, or a random one if none was requested
    """
    if numa_id is not None:
        numa_node = node.get_numa_node(numa_id)
        if numa_node is None:
            raise NotFoundError(f"NUMA node {numa_id} not found on node {node.name}")
        return numa_node

    if len(node.numa) == 0:
        raise AllocationError(f"No NUMA nodes defined for node {node.name}")

    numa_node = rng.choice(node.numa)
    logger.info(f"Auto-selected NUMA node ID: {numa_node.id}")
    return numa_node


def auto_select_cores(numa_node, policy=CorePolicy.BOTH):
    """
    Build an affinity string from the core pools of a NUMA node
    """
    logger.info(
        f"Available physical cores: {format_core_range(numa_node.phy_cores)} ({len(numa_node.phy_cores)} cores)"
    )
    logger.info(
        f"Available HT cores: {format_core_range(numa_node.ht_cores)} ({len(numa_node.ht_cores)} cores)"
    )

    if policy == CorePolicy.PHYSICAL_ONLY:
        logger.info("Using only physical cores as requested")
        selected_cores = set(numa_node.phy_cores)
    elif policy == CorePolicy.HT_ONLY:
        logger.info("Using only HT cores as requested")
        selected_cores = set(numa_node.ht_cores)
    else:
        logger.info("Using both physical and HT cores")
        selected_cores = set(numa_node.phy_cores) | set(numa_node.ht_cores)

    affinity = format_core_range(selected_cores)
    logger.info(f"Selected cores: {affinity} ({len(selected_cores)} cores)")

    return affinity


def resolve_affinity(numa_node, policy, vm_cores, phy_cores=None, ht_cores=None):
    """
    Return the host affinity for a VM

    Explicit physical and/or HT core strings win over the NUMA pools and are used
    verbatim. A count that differs from the VM core count is only reported; the
    guest always sees exactly vm_cores vCPUs.
    """
    if not phy_cores and not ht_cores:
        return auto_select_cores(numa_node, policy)

    core_parts = [part for part in [phy_cores, ht_cores] if part]
    affinity = ",".join(core_parts)

    total_cores = count_cores(phy_cores) + count_cores(ht_cores)
    if total_cores != vm_cores:
        logger.warning(
            f"Total specified cores ({total_cores}) doesn't match VM template cores ({vm_cores})"
        )

    return affinity
