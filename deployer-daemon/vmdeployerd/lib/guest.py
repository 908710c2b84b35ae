#!/usr/bin/env python3

# guest.py - VM Deployer guest agent IP discovery
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

from time import monotonic, sleep

from vmdeployerd.lib.exceptions import (
    DeadlineExceededError,
    NoAddressFoundError,
    RemoteOperationError,
    TransportExhaustedError,
)


logger = logging.getLogger(__name__)


IP_DISCOVERY_ATTEMPTS = 100
IP_DISCOVERY_DELAY = 3
LOOPBACK_INTERFACE = "lo"


def _first_ipv4(interface):
    for address in interface.get("ip-addresses") or []:
        ip = address.get("ip-address", "")
        if address.get("ip-address-type") == "ipv4" and not ip.startswith("127."):
            return ip
    return None


def select_ip_address(interfaces, target_interface="eth0"):
    """
    Pick the first IPv4 address of the target interface, falling back to any non-loopback interface
    """
    for interface in interfaces:
        if interface.get("name") == LOOPBACK_INTERFACE:
            continue
        if interface.get("name") == target_interface:
            ip = _first_ipv4(interface)
            if ip is not None:
                logger.info(f"Found IP address from guest agent on interface {target_interface}: {ip}")
                return ip

    logger.debug(f"Target interface {target_interface} not found, trying any available interface")
    for interface in interfaces:
        if interface.get("name") == LOOPBACK_INTERFACE:
            continue
        ip = _first_ipv4(interface)
        if ip is not None:
            logger.info(
                f"Found IP address from guest agent on fallback interface {interface.get('name')}: {ip}"
            )
            return ip

    return None


def discover_ip_address(
    session,
    node,
    vmid,
    target_interface="eth0",
    attempts=IP_DISCOVERY_ATTEMPTS,
    delay=IP_DISCOVERY_DELAY,
    deadline=None,
):
    """
    Query the guest agent until it reports an IPv4 address

    The agent is not reachable immediately after boot, so every error is treated
    as transient until the last attempt. What the last attempt saw decides the
    failure: a transport error raises TransportExhaustedError, an answer with no
    usable address raises NoAddressFoundError.
    """
    logger.info(f"Getting IP address of VM {vmid} from qemu-guest-agent...")

    for attempt in range(1, attempts + 1):
        try:
            interfaces = session.get_network_interfaces(node, vmid)
        except RemoteOperationError as e:
            if attempt == attempts:
                raise TransportExhaustedError(
                    f"Failed to query guest agent after {attempts} attempts: {e}"
                )
            logger.info(f"Attempt {attempt}/{attempts}: Guest agent not ready, retrying in {delay}s: {e}")
        else:
            ip = select_ip_address(interfaces, target_interface)
            if ip is not None:
                return ip
            if attempt == attempts:
                raise NoAddressFoundError(
                    f"No valid IPv4 address found in guest agent response after {attempts} attempts"
                )
            logger.info(f"Attempt {attempt}/{attempts}: No valid IP found, retrying in {delay}s")

        if deadline is not None and monotonic() >= deadline:
            raise DeadlineExceededError(f"No IP address found for VM {vmid} before deadline")
        sleep(delay)

    raise NoAddressFoundError(f"No IP address found for VM {vmid}")
