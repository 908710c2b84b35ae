#!/usr/bin/env python3

# scheduler.py - VM Deployer hypervisor node selection
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

from vmdeployerd.lib.exceptions import NotFoundError


logger = logging.getLogger(__name__)


def select_weighted_node(nodes, rng=random):
    """
    Pick a node with probability proportional to its weight

    Returns None when there are no nodes or the total weight is zero; nodes with
    a weight of 0 can only ever be chosen by name.
    """
    total_weight = sum(max(node.weight, 0) for node in nodes)
    if total_weight <= 0:
        logger.error("No nodes with a positive weight are available for selection")
        return None

    draw = rng.randrange(total_weight)
    for node in nodes:
        weight = max(node.weight, 0)
        if draw < weight:
            logger.debug(f"Selected node {node.name} (weight {weight}/{total_weight})")
            return node
        draw -= weight

    return None


def get_node_by_name(nodes, name):
    for node in nodes:
        if node.name == name:
            return node
    raise NotFoundError(f"Invalid node: {name}")
