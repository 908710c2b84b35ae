#!/usr/bin/env python3

# proxmox.py - VM Deployer Proxmox VE API libraries
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

# Refs:
# https://pve.proxmox.com/pve-docs/api-viewer/

import logging
import requests
import urllib3

from vmdeployerd.lib.exceptions import NotFoundError, RemoteOperationError, ValidationError


logger = logging.getLogger(__name__)


STOP_METHODS = ["shutdown", "stop"]


def _task_handle(data):
    """
    Normalize an API answer into a task handle; an empty handle means the operation already finished
    """
    if data is None:
        return ""
    return str(data)


class ProxmoxSession:
    """
    A token-authenticated session against the Proxmox VE REST API

    Every call returns the unwrapped 'data' member of the response, or raises
    RemoteOperationError on a transport failure, a non-2xx code, or a body that
    is not a JSON data envelope.
    """

    def __init__(self, host, token, verify_ssl=True, timeout=10):
        if not verify_ssl:
            # Disable urllib3 warnings
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

        self.host = host.rstrip("/")
        self.verify = verify_ssl
        self.timeout = timeout
        self.headers = {"Authorization": f"PVEAPIToken={token}"}

    def request(self, method, uri, data=None):
        url = f"{self.host}{uri}"

        if data is not None:
            logger.debug(f"{method} payload: {data}")

        try:
            response = requests.request(
                method,
                url,
                data=data,
                headers=self.headers,
                verify=self.verify,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning(f"! Error: {method} request to {url} failed: {e}")
            raise RemoteOperationError(f"{method} request to {uri} failed: {e}")

        logger.debug(f"{method} {uri} raw response: {response.text}")

        if not 200 <= response.status_code < 300:
            message = response.reason
            try:
                errors = response.json().get("errors")
            except (ValueError, AttributeError):
                errors = None
            if errors:
                message = f"{message} {errors}"

            logger.warning(f"! Error: {method} request to {url} failed")
            logger.warning(f"! HTTP Code: {response.status_code}   Details: {message}")
            raise RemoteOperationError(
                f"{method} request to {uri} failed: {message}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RemoteOperationError(f"Undecodable response to {method} {uri}: {e}")

        if not isinstance(body, dict) or "data" not in body:
            raise RemoteOperationError(f"Response to {method} {uri} has no data member")

        return body["data"]

    def get(self, uri):
        return self.request("GET", uri)

    def post(self, uri, data=None):
        return self.request("POST", uri, data=data)

    def put(self, uri, data=None):
        return self.request("PUT", uri, data=data)

    def delete(self, uri):
        return self.request("DELETE", uri)

    #
    # VM operations
    #
    def get_next_id(self):
        data = self.get("/cluster/nextid")
        try:
            next_id = int(data)
        except (TypeError, ValueError):
            raise RemoteOperationError(f"Invalid next VM id: {data}")
        logger.info(f"Obtained next VM id: {next_id}")
        return next_id

    def clone_vm(self, node, template_id, newid, name):
        payload = {
            "newid": newid,
            "name": name,
            "full": 1,
            "format": "raw",
        }
        upid = _task_handle(self.post(f"/nodes/{node}/qemu/{template_id}/clone", payload))
        logger.info(f"Clone task created successfully: {upid}")
        return upid

    def get_vm_config(self, node, vmid):
        data = self.get(f"/nodes/{node}/qemu/{vmid}/config")
        if not isinstance(data, dict):
            raise RemoteOperationError(f"Invalid configuration for VM {vmid}: {data}")
        return data

    def configure_vm(self, node, vmid, fields):
        upid = _task_handle(self.post(f"/nodes/{node}/qemu/{vmid}/config", fields))
        logger.info(f"Configure VM task created successfully: {upid}")
        return upid

    def resize_disk(self, node, vmid, disk, size_gib):
        payload = {"disk": disk, "size": f"{size_gib}G"}
        upid = _task_handle(self.put(f"/nodes/{node}/qemu/{vmid}/resize", payload))
        if upid:
            logger.info(f"Resize disk task created successfully: {upid}")
        else:
            logger.info("Resize disk completed successfully (synchronous operation)")
        return upid

    def start_vm(self, node, vmid):
        upid = _task_handle(self.post(f"/nodes/{node}/qemu/{vmid}/status/start"))
        logger.info(f"Start VM task created successfully: {upid}")
        return upid

    def stop_vm(self, node, vmid, method="shutdown"):
        if method not in STOP_METHODS:
            raise ValidationError(f"Invalid stop method: {method}")
        upid = _task_handle(self.post(f"/nodes/{node}/qemu/{vmid}/status/{method}"))
        logger.info(f"Stop VM task created successfully: {upid}")
        return upid

    def reset_vm(self, node, vmid):
        upid = _task_handle(self.post(f"/nodes/{node}/qemu/{vmid}/status/reset"))
        logger.info(f"Reset VM task created successfully: {upid}")
        return upid

    def delete_vm(self, node, vmid):
        upid = _task_handle(self.delete(f"/nodes/{node}/qemu/{vmid}"))
        logger.info(f"Delete VM task created successfully: {upid}")
        return upid

    def find_vm_by_name(self, node, name):
        for vm in self.get(f"/nodes/{node}/qemu") or []:
            if vm.get("name") == name:
                return int(vm["vmid"])
        raise NotFoundError(f"VM with name {name} not found on node {node}")

    #
    # Task and guest agent queries
    #
    def get_task_status(self, node, upid):
        return self.get(f"/nodes/{node}/tasks/{upid}/status")

    def get_network_interfaces(self, node, vmid):
        data = self.get(f"/nodes/{node}/qemu/{vmid}/agent/network-get-interfaces")
        try:
            return data["result"]
        except (KeyError, TypeError):
            raise RemoteOperationError(f"Unexpected guest agent response for VM {vmid}: {data}")
