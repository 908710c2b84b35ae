#!/usr/bin/env python3

# provision.py - VM Deployer provisioning pipeline
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
import string

from dataclasses import dataclass
from time import monotonic, sleep
from typing import Optional

import vmdeployerd.lib.cores as cores
import vmdeployerd.lib.guest as guest
import vmdeployerd.lib.metrics as metrics
import vmdeployerd.lib.notifications as notifications
import vmdeployerd.lib.scheduler as scheduler
import vmdeployerd.lib.tasks as tasks
import vmdeployerd.lib.vmconfig as vmconfig

from vmdeployerd.lib.dataclasses import (
    BaseTemplate,
    DeletionResult,
    HypervisorNode,
    ProvisioningResult,
    VmTemplate,
)
from vmdeployerd.lib.exceptions import (
    AllocationError,
    DeployerError,
    NotFoundError,
    RemoteOperationError,
    ValidationError,
)
from vmdeployerd.lib.proxmox import STOP_METHODS


logger = logging.getLogger(__name__)


NAME_SUFFIX_CHARS = string.ascii_lowercase + string.digits
NAME_SUFFIX_LENGTH = 6


def random_suffix(rng=random, length=NAME_SUFFIX_LENGTH):
    return "".join(rng.choice(NAME_SUFFIX_CHARS) for _ in range(length))


@dataclass
class ProvisioningPlan:
    """
    The node, templates and core policy shared by every VM of one request
    """

    node: HypervisorNode
    base_template: BaseTemplate
    vm_template: VmTemplate
    policy: cores.CorePolicy
    numa: Optional[int] = None
    phy: Optional[str] = None
    ht: Optional[str] = None
    name: Optional[str] = None
    reset: bool = False
    count: int = 1


class ProvisioningRun:
    """
    The remote steps for a single VM, from id allocation to cluster registration

    'stage' always names the step in progress, so a failure can be attributed.
    """

    def __init__(self, provisioner, plan, name=None):
        self.provisioner = provisioner
        self.config = provisioner.config
        self.session = provisioner.session
        self.plan = plan
        self.node = plan.node.name
        self.vmid = None
        self.name = name
        self.ip = None
        self.stage = None

        vm_timeout = self.config["provisioning_vm_timeout"]
        self.deadline = monotonic() + vm_timeout if vm_timeout else None

    def task_deadline(self):
        task_timeout = self.config["provisioning_task_timeout"]
        if not task_timeout:
            return self.deadline
        task_deadline = monotonic() + task_timeout
        if self.deadline is None:
            return task_deadline
        return min(self.deadline, task_deadline)

    def track(self, upid):
        tasks.track_task(
            self.session,
            self.node,
            upid,
            interval=self.config["provisioning_task_poll_interval"],
            deadline=self.task_deadline(),
        )

    def execute(self):
        plan = self.plan
        vm_template = plan.vm_template

        self.stage = "allocate id"
        self.vmid = self.session.get_next_id()

        if self.name is None:
            self.name = f"{vm_template.name}-{plan.node.suffix}-{self.vmid}-{random_suffix(self.provisioner.rng)}"

        logger.info(
            f"Starting VM creation: node={self.node}, base_template={plan.base_template.name}, "
            f"vm_template={vm_template.name}, vm_name={self.name}"
        )

        self.stage = "clone"
        self.track(self.session.clone_vm(self.node, plan.base_template.id, self.vmid, self.name))

        self.stage = "configure"
        self.configure()

        self.stage = "resize"
        self.track(self.session.resize_disk(self.node, self.vmid, vmconfig.PRIMARY_DISK, vm_template.disk))

        self.stage = "start"
        self.track(self.session.start_vm(self.node, self.vmid))

        if plan.reset:
            self.stage = "reset"
            logger.info(f"Reset requested for VM: id={self.vmid}, node={self.node}, name={self.name}")
            # Give the guest time to reach the point where the first boot panics
            sleep(self.config["provisioning_reset_delay"])
            self.track(self.session.reset_vm(self.node, self.vmid))
            logger.info(f"VM reset successful: id={self.vmid}, node={self.node}, name={self.name}")

        self.stage = "discover ip"
        self.ip = guest.discover_ip_address(
            self.session,
            self.node,
            self.vmid,
            target_interface=self.config["talos_vm_interface"],
            attempts=self.config["provisioning_ip_attempts"],
            delay=self.config["provisioning_ip_delay"],
            deadline=self.deadline,
        )
        logger.info(f"VM IP address obtained: {self.ip}")

        self.stage = "register"
        self.provisioner.registrar.register(self.ip, self.substitutions(), deadline=self.deadline)

        self.stage = None
        logger.info(
            f"VM creation and registration successful: id={self.vmid}, node={self.node}, "
            f"name={self.name}, ip={self.ip}, role={vm_template.role}"
        )

    def configure(self):
        plan = self.plan
        if plan.policy == cores.CorePolicy.HT_ONLY and not plan.node.ht:
            logger.warning(f"HT-only cores requested but node {self.node} does not declare HT")
        numa_node = cores.select_numa_node(plan.node, plan.numa, rng=self.provisioner.rng)
        affinity = cores.resolve_affinity(
            numa_node,
            plan.policy,
            plan.vm_template.cpu,
            phy_cores=plan.phy,
            ht_cores=plan.ht,
        )

        try:
            current_config = self.session.get_vm_config(self.node, self.vmid)
        except RemoteOperationError as e:
            logger.warning(f"Failed to get current VM config, skipping device hints: {e}")
            current_config = None

        fields = vmconfig.build_vm_config(
            plan.vm_template, plan.node, numa_node, affinity, current_config
        )
        self.track(self.session.configure_vm(self.node, self.vmid, fields))

    def substitutions(self):
        vm_template = self.plan.vm_template
        return {
            "vm_id": self.vmid,
            "vm_name": self.name,
            "vm_ip": self.ip,
            "role": vm_template.role,
            "node": self.node,
            "vm_template": vm_template.name,
            "cpu_model": vm_template.cpu_model or vmconfig.DEFAULT_CPU_MODEL,
            "cpu_cores": vm_template.cpu,
            "memory": vm_template.memory,
            "disk": vm_template.disk,
            "suffix": self.plan.node.suffix,
        }

    def result(self, error=None):
        return ProvisioningResult(
            vm_id=self.vmid,
            node=self.node,
            name=self.name,
            ip=self.ip,
            role=None if error else self.plan.vm_template.role,
            reset=self.plan.reset,
            error=error,
        )


class Provisioner:
    """
    Creates and removes VMs on the configured hypervisor nodes

    The cluster configuration is read-only; all other state lives for the
    duration of a single call.
    """

    def __init__(self, config, cluster, session, registrar, rng=None):
        self.config = config
        self.cluster = cluster
        self.session = session
        self.registrar = registrar
        self.rng = rng if rng is not None else random.Random()

    def report(self, error, context):
        logger.error(f"{context}: {error}")
        notifications.report_error(self.config, error, context=context)

    #
    # Creation
    #
    def plan(self, request):
        """
        Validate a request and resolve everything it shares across VMs, before any remote call
        """
        if not request.base_template or not request.vm_template:
            raise ValidationError("base_template and vm_template are required")
        if request.count < 1:
            raise ValidationError("Invalid count parameter. Must be a positive integer")

        policy = cores.core_policy(request.phy_only, request.ht_only)

        if request.node:
            node = scheduler.get_node_by_name(self.cluster.nodes, request.node)
        else:
            node = scheduler.select_weighted_node(self.cluster.nodes, rng=self.rng)
            if node is None:
                raise AllocationError("No nodes available for selection")

        base_template = node.get_base_template(request.base_template)
        if base_template is None:
            raise NotFoundError(
                f"Invalid base_template: {request.base_template} for node: {node.name}"
            )

        vm_template = self.cluster.get_vm_template(request.vm_template)
        if vm_template is None:
            raise NotFoundError(f"Invalid vm_template: {request.vm_template}")

        numa = request.numa if request.numa is not None else vm_template.numa
        if numa is not None:
            if node.get_numa_node(numa) is None:
                raise NotFoundError(f"NUMA node {numa} not found on node {node.name}")
        elif len(node.numa) == 0:
            raise AllocationError(f"No NUMA nodes defined for node {node.name}")

        return ProvisioningPlan(
            node=node,
            base_template=base_template,
            vm_template=vm_template,
            policy=policy,
            numa=numa,
            phy=request.phy or vm_template.phy,
            ht=request.ht or vm_template.ht,
            name=request.name,
            reset=request.reset,
            count=request.count,
        )

    def _plan_or_report(self, request):
        try:
            return self.plan(request)
        except DeployerError as e:
            self.report(e, "Invalid VM creation request")
            raise

    def _succeeded(self, plan, run):
        metrics.vm_created_total.labels(
            node=run.node,
            base_template=plan.base_template.name,
            vm_template=plan.vm_template.name,
        ).inc()
        notifications.send_webhook(
            self.config,
            "success",
            f"Created VM {run.name} (id {run.vmid}) on node {run.node} with IP {run.ip}",
        )

    def _failed(self, run, error):
        metrics.vm_failed_total.labels(node=run.node, stage=run.stage).inc()
        self.report(error, f"VM {run.name or run.vmid} on node {run.node} failed at stage '{run.stage}'")

    def create_vm(self, request):
        """
        Provision a single VM; any failure is raised to the caller
        """
        plan = self._plan_or_report(request)
        run = ProvisioningRun(self, plan, name=plan.name)
        try:
            run.execute()
        except DeployerError as e:
            self._failed(run, e)
            raise
        self._succeeded(plan, run)
        return run.result()

    def create_vms(self, request):
        """
        Provision request.count VMs one after another

        A failed VM is recorded in its own result and the batch moves on; only
        request validation errors are raised.
        """
        plan = self._plan_or_report(request)
        results = list()

        logger.info(
            f"Starting bulk creation of {plan.count} VMs: node={plan.node.name}, "
            f"base_template={plan.base_template.name}, vm_template={plan.vm_template.name}"
        )

        for index in range(1, plan.count + 1):
            name = f"{plan.name}-{index}" if plan.name else None
            run = ProvisioningRun(self, plan, name=name)
            try:
                run.execute()
            except DeployerError as e:
                logger.error(f"[VM {index}] {run.stage} failed: {e}")
                self._failed(run, e)
                results.append(run.result(error=f"{run.stage} failed: {e}"))
                continue
            self._succeeded(plan, run)
            results.append(run.result())

        failed = len([result for result in results if result.error])
        logger.info(f"Bulk VM creation completed: {plan.count - failed}/{plan.count} VMs created")
        return results

    #
    # Deletion
    #
    def _find_vm(self, request):
        if request.vm_name:
            for node in self.cluster.nodes:
                try:
                    return node.name, self.session.find_vm_by_name(node.name, request.vm_name)
                except NotFoundError:
                    continue
                except RemoteOperationError as e:
                    logger.warning(f"Failed to search node {node.name} for VM {request.vm_name}: {e}")
                    continue
            raise NotFoundError(f"VM with name {request.vm_name} not found on any node")

        if not request.node or request.vm_id is None:
            raise ValidationError("vm_name or (node and vm_id) are required")

        node = scheduler.get_node_by_name(self.cluster.nodes, request.node)
        return node.name, request.vm_id

    def delete_vm(self, request):
        """
        Stop then delete a VM found by name or by node and id
        """
        node_name = request.node
        vmid = request.vm_id
        try:
            if request.stop_method not in STOP_METHODS:
                raise ValidationError(f"Invalid stop_method: {request.stop_method}")

            node_name, vmid = self._find_vm(request)
            deadline = None
            if self.config["provisioning_task_timeout"]:
                deadline = monotonic() + self.config["provisioning_task_timeout"]
            interval = self.config["provisioning_task_poll_interval"]

            logger.info(
                f"Starting VM deletion: node={node_name}, vm_id={vmid}, stop_method={request.stop_method}"
            )
            upid = self.session.stop_vm(node_name, vmid, request.stop_method)
            if upid:
                tasks.track_task(self.session, node_name, upid, interval=interval, deadline=deadline)
            else:
                logger.info("VM stop completed synchronously")

            upid = self.session.delete_vm(node_name, vmid)
            tasks.track_task(self.session, node_name, upid, interval=interval, deadline=deadline)
        except DeployerError as e:
            self.report(e, f"Deletion of VM {request.vm_name or vmid} on node {node_name} failed")
            raise

        metrics.vm_deleted_total.labels(node=node_name).inc()
        logger.info(f"VM deletion successful: node={node_name}, vm_id={vmid}")
        notifications.send_webhook(self.config, "success", f"Deleted VM {vmid} on node {node_name}")
        return DeletionResult(node=node_name, vm_id=vmid)
