#!/usr/bin/env python3

# metrics.py - VM Deployer Prometheus metrics
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

from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest


errors_total = Counter(
    "vm_deployer_errors_total",
    "Total number of VM deployer errors",
    ["handler"],
)

vm_created_total = Counter(
    "vm_deployer_vm_created_total",
    "Total number of VMs created",
    ["node", "base_template", "vm_template"],
)

vm_deleted_total = Counter(
    "vm_deployer_vm_deleted_total",
    "Total number of VMs deleted",
    ["node"],
)

vm_failed_total = Counter(
    "vm_deployer_vm_failed_total",
    "Total number of VM creations that failed, by pipeline stage",
    ["node", "stage"],
)


def inc_error_counter(handler):
    errors_total.labels(handler=handler).inc()


def render_metrics():
    """
    Return the Prometheus exposition body and its content type
    """
    return generate_latest(), CONTENT_TYPE_LATEST
