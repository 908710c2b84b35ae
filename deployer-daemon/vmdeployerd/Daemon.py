#!/usr/bin/env python3

# Daemon.py - VM Deployer HTTP API daemon
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
import os
import yaml
import signal

import vmdeployerd.lib.notifications as notifications

from vmdeployerd.lib.cores import parse_core_range
from vmdeployerd.lib.dataclasses import (
    BaseTemplate,
    ClusterConfig,
    HypervisorNode,
    NumaNode,
    VmTemplate,
)
from vmdeployerd.lib.logger import setup_logging
from vmdeployerd.lib.provision import Provisioner
from vmdeployerd.lib.proxmox import ProxmoxSession
from vmdeployerd.lib.talos import TalosRegistrar

# Daemon version
version = "0.1"

# API version
API_VERSION = 1.0


logger = logging.getLogger(__name__)


##########################################################
# Exceptions
##########################################################


class MalformedConfigurationError(Exception):
    """
    An exception when parsing the VM Deployer daemon configuration file
    """

    def __init__(self, error=None):
        self.msg = f"ERROR: Configuration file is malformed: {error}"

    def __str__(self):
        return str(self.msg)


##########################################################
# Helper Functions
##########################################################


TRUE_STRINGS = ["y", "yes", "t", "true", "on", "1"]


def strtobool(stringv):
    if stringv is None:
        return False
    if isinstance(stringv, bool):
        return bool(stringv)
    if isinstance(stringv, int):
        return stringv != 0
    value = str(stringv).strip().lower()
    if value in TRUE_STRINGS:
        return True
    return False


##########################################################
# Configuration Parsing
##########################################################


PROVISIONING_DEFAULTS = {
    "task_poll_interval": 2,
    "task_timeout": None,
    "vm_timeout": None,
    "ip_attempts": 100,
    "ip_delay": 3,
    "reset_delay": 3,
    "register_attempts": 30,
    "register_delay": 10,
}


def get_config_path():
    try:
        return os.environ["VMDEPLOYERD_CONFIG_FILE"]
    except KeyError:
        print('ERROR: The "VMDEPLOYERD_CONFIG_FILE" environment variable must be set.')
        os._exit(1)


def load_yaml(path):
    with open(path, "r") as cfgfile:
        try:
            return yaml.load(cfgfile, Loader=yaml.SafeLoader)
        except yaml.YAMLError as e:
            raise MalformedConfigurationError(f"Failed to parse file '{path}': {e}")


def read_config(config_file=None):
    if config_file is None:
        config_file = get_config_path()

    print(f"Loading configuration from file '{config_file}'")

    # Load the YAML config file
    o_config = load_yaml(config_file)
    if not isinstance(o_config, dict):
        raise MalformedConfigurationError("Missing top-level category 'deployer'")

    # Create the configuration dictionary
    config = dict()

    # Get the base configuration
    try:
        o_base = o_config["deployer"]
    except KeyError as k:
        raise MalformedConfigurationError(f"Missing top-level category {k}")

    for key in ["debug", "auth_token", "cluster_file"]:
        try:
            config[key] = o_base[key]
        except KeyError as k:
            raise MalformedConfigurationError(f"Missing first-level key {k}")

    config["debug"] = strtobool(config["debug"])
    config["log_level"] = o_base.get("log_level", "info")
    config["log_format"] = o_base.get("log_format", "json")

    # Get the first-level categories
    try:
        o_api = o_base["api"]
        o_proxmox = o_base["proxmox"]
        o_talos = o_base["talos"]
        o_notifications = o_base["notifications"]
    except KeyError as k:
        raise MalformedConfigurationError(f"Missing first-level category {k}")
    o_provisioning = o_base.get("provisioning") or dict()

    # Get the API configuration
    for key in ["address", "port"]:
        try:
            config[f"api_{key}"] = o_api[key]
        except Exception:
            raise MalformedConfigurationError(
                f"Missing second-level key '{key}' under 'api'"
            )

    # Get the Proxmox configuration
    for key in ["base_addr", "token"]:
        try:
            config[f"proxmox_{key}"] = o_proxmox[key]
        except Exception:
            raise MalformedConfigurationError(
                f"Missing second-level key '{key}' under 'proxmox'"
            )
    config["proxmox_verify_ssl"] = strtobool(o_proxmox.get("verify_ssl", True))
    config["proxmox_timeout"] = o_proxmox.get("timeout", 10)

    # Get the Talos configuration
    for key in ["machine_template", "controlplane_endpoint"]:
        try:
            config[f"talos_{key}"] = o_talos[key]
        except Exception:
            raise MalformedConfigurationError(
                f"Missing second-level key '{key}' under 'talos'"
            )
    config["talos_vm_interface"] = o_talos.get("vm_interface", "eth0")
    config["talos_agent_port"] = o_talos.get("agent_port", 50000)
    config["talos_talosctl"] = o_talos.get("talosctl", "talosctl")

    # Get the provisioning configuration; every key is optional
    for key, default in PROVISIONING_DEFAULTS.items():
        config[f"provisioning_{key}"] = o_provisioning.get(key, default)

    # Get the Notifications configuration
    for key in ["enabled", "uri", "action", "icons", "body"]:
        try:
            config[f"notifications_{key}"] = o_notifications[key]
        except Exception:
            raise MalformedConfigurationError(
                f"Missing second-level key '{key}' under 'notifications'"
            )
    config["notifications_enabled"] = strtobool(config["notifications_enabled"])

    return config


def parse_node(o_node):
    try:
        name = o_node["name"]
        weight = int(o_node.get("weight", 0))
        suffix = str(o_node.get("suffix", ""))
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedConfigurationError(f"Invalid node entry {o_node}: {e}")

    if weight < 0:
        raise MalformedConfigurationError(f"Node '{name}' has a negative weight {weight}")

    numa = list()
    for o_numa in o_node.get("numa") or list():
        try:
            numa_id = int(o_numa["id"])
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedConfigurationError(f"Invalid NUMA entry on node '{name}': {e}")
        if numa_id in [n.id for n in numa]:
            raise MalformedConfigurationError(f"Duplicate NUMA id {numa_id} on node '{name}'")
        o_cores = o_numa.get("cores") or dict()
        numa.append(
            NumaNode(
                id=numa_id,
                phy_cores=frozenset(parse_core_range(o_cores.get("phy") or "")),
                ht_cores=frozenset(parse_core_range(o_cores.get("ht") or "")),
            )
        )

    base_templates = list()
    for o_template in o_node.get("base_templates") or list():
        try:
            base_templates.append(
                BaseTemplate(name=o_template["name"], id=int(o_template["id"]))
            )
        except (KeyError, TypeError, ValueError) as e:
            raise MalformedConfigurationError(f"Invalid base template on node '{name}': {e}")

    return HypervisorNode(
        name=name,
        weight=weight,
        suffix=suffix,
        ht=strtobool(o_node.get("ht", False)),
        hugepages=strtobool(o_node.get("hugepages", False)),
        numa=tuple(numa),
        base_templates=tuple(base_templates),
    )


def parse_vm_template(o_template):
    try:
        name = o_template["name"]
        cpu = int(o_template["cpu"])
        memory = int(o_template["memory"])
        disk = int(o_template["disk"])
        numa = o_template.get("numa")
        numa = int(numa) if numa not in [None, ""] else None
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedConfigurationError(f"Invalid VM template entry {o_template}: {e}")

    if cpu < 1:
        raise MalformedConfigurationError(f"VM template '{name}' has a non-positive cpu count {cpu}")

    role = o_template.get("role") or "worker"
    if role not in ["worker", "controlplane"]:
        raise MalformedConfigurationError(f"VM template '{name}' has an invalid role '{role}'")

    return VmTemplate(
        name=name,
        cpu=cpu,
        memory=memory,
        disk=disk,
        role=role,
        cpu_model=o_template.get("cpu_model") or None,
        numa=numa,
        phy=o_template.get("phy") or None,
        ht=o_template.get("ht") or None,
    )


def read_cluster_config(cluster_file):
    """
    Load the hypervisor nodes and VM templates into an immutable ClusterConfig
    """
    o_cluster = load_yaml(cluster_file)
    if not isinstance(o_cluster, dict):
        raise MalformedConfigurationError(f"Cluster file '{cluster_file}' is empty")

    nodes = tuple(parse_node(o_node) for o_node in o_cluster.get("nodes") or list())
    vm_templates = tuple(
        parse_vm_template(o_template) for o_template in o_cluster.get("vm_templates") or list()
    )

    if sum(node.weight for node in nodes) == 0:
        logger.warning("Total weight of all nodes is zero; weighted node selection is disabled")

    return ClusterConfig(nodes=nodes, vm_templates=vm_templates)


##########################################################
# Entrypoint
##########################################################


def entrypoint():
    import vmdeployerd.flaskapi as vmdeployerd  # noqa: E402

    config = read_config()
    setup_logging(config)
    cluster = read_cluster_config(config["cluster_file"])

    # Print our startup messages
    print("")
    print("|----------------------------------------------------------|")
    print("|                                                          |")
    print("|           ███████████ ▜█▙      ▟█▛ █████ █ █ █           |")
    print("|                    ██  ▜█▙    ▟█▛  ██                    |")
    print("|           ███████████   ▜█▙  ▟█▛   ██                    |")
    print("|           ██             ▜█▙▟█▛    ███████████           |")
    print("|                                                          |")
    print("|----------------------------------------------------------|")
    print("| Parallel Virtual Cluster VM Deployer daemon v{0: <11} |".format(version))
    print("| Debug: {0: <49} |".format(str(config["debug"])))
    print("| API version: v{0: <42} |".format(API_VERSION))
    print(
        "| Listen: {0: <48} |".format(
            "{}:{}".format(config["api_address"], config["api_port"])
        )
    )
    print("| Nodes: {0: <49} |".format(len(cluster.nodes)))
    print("|----------------------------------------------------------|")
    print("")

    session = ProxmoxSession(
        config["proxmox_base_addr"],
        config["proxmox_token"],
        verify_ssl=config["proxmox_verify_ssl"],
        timeout=config["proxmox_timeout"],
    )
    registrar = TalosRegistrar(config)
    provisioner = Provisioner(config, cluster, session, registrar)
    app = vmdeployerd.create_app(config, provisioner)

    def term(signum="", frame=""):
        print("Received TERM, exiting.")
        notifications.send_webhook(config, "info", "Received TERM, exiting vmdeployerd")
        exit(0)

    signal.signal(signal.SIGTERM, term)
    signal.signal(signal.SIGINT, term)
    signal.signal(signal.SIGQUIT, term)

    notifications.send_webhook(config, "info", "Starting up vmdeployerd")

    # Start Flask
    app.run(
        config["api_address"],
        config["api_port"],
        use_reloader=False,
        threaded=True,
    )
