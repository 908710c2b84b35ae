#!/usr/bin/env python3

# exceptions.py - VM Deployer exception classes
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


class DeployerError(Exception):
    """
    Base class for all errors raised while provisioning or removing a VM
    """

    def __init__(self, error=None):
        if error is not None:
            self.msg = str(error)
        else:
            self.msg = "Generic deployer failure"
        super().__init__(self.msg)

    def __str__(self):
        return str(self.msg)


#
# Request errors; raised before any remote call is made
#
class ValidationError(DeployerError):
    """
    Bad or missing input, or conflicting flags
    """


class NotFoundError(ValidationError):
    """
    A named node, template, NUMA node or VM does not exist
    """


class AllocationError(DeployerError):
    """
    No node or NUMA node is available to place a VM on
    """


#
# Remote errors
#
class RemoteOperationError(DeployerError):
    """
    A remote API call failed in transport, returned a non-2xx code, or returned
    an undecodable body
    """

    def __init__(self, error=None, status_code=None):
        super().__init__(error)
        self.status_code = status_code

    def __str__(self):
        if self.status_code is not None:
            return f"{self.msg} (HTTP Code: {self.status_code})"
        return str(self.msg)


class TaskFailureError(DeployerError):
    """
    A remote task stopped with a non-OK exit status
    """

    def __init__(self, upid, exit_status):
        self.upid = upid
        self.exit_status = exit_status
        super().__init__(f"Task {upid} failed with exit status: {exit_status}")


class DeadlineExceededError(DeployerError):
    """
    A blocking wait ran past the caller-supplied deadline
    """


#
# IP discovery errors
#
class DiscoveryError(DeployerError):
    pass


class NoAddressFoundError(DiscoveryError):
    """
    The guest agent answered but never reported a usable IPv4 address
    """


class TransportExhaustedError(DiscoveryError):
    """
    The guest agent could not be queried on the final attempt
    """


#
# Cluster registration errors
#
class RegistrationError(DeployerError):
    pass


class RegistrationTimeoutError(RegistrationError):
    """
    The node agent port never accepted a connection
    """
