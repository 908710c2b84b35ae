#!/usr/bin/env python3

# talos.py - VM Deployer Talos cluster registration libraries
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
import os.path
import socket
import tempfile

from subprocess import run
from time import monotonic, sleep

from jinja2 import StrictUndefined, Template, TemplateError

from vmdeployerd.lib.exceptions import (
    DeadlineExceededError,
    RegistrationError,
    RegistrationTimeoutError,
)


logger = logging.getLogger(__name__)


TALOS_AGENT_PORT = 50000
REGISTER_ATTEMPTS = 30
REGISTER_DELAY = 10
CONNECT_TIMEOUT = 5


def generate_config(template_path, substitutions):
    """
    Render a Talos machine configuration from a Jinja2 template
    """
    try:
        with open(template_path, "r") as tfh:
            template = Template(tfh.read(), undefined=StrictUndefined)
    except OSError as e:
        raise RegistrationError(f"Failed to read Talos template file {template_path}: {e}")

    try:
        return template.render(**substitutions)
    except TemplateError as e:
        raise RegistrationError(f"Failed to render Talos template file {template_path}: {e}")


def wait_for_node(
    ip,
    port=TALOS_AGENT_PORT,
    attempts=REGISTER_ATTEMPTS,
    delay=REGISTER_DELAY,
    deadline=None,
):
    """
    Wait for the Talos API port of a node to accept a TCP connection
    """
    for attempt in range(1, attempts + 1):
        try:
            with socket.create_connection((ip, port), timeout=CONNECT_TIMEOUT):
                logger.info(f"Talos node {ip} is accepting connections on port {port}")
                return
        except OSError as e:
            if attempt == attempts:
                raise RegistrationTimeoutError(
                    f"Talos node {ip} not ready after {attempts} attempts: {e}"
                )
            logger.info(f"Attempt {attempt}/{attempts}: Talos node {ip} not ready: {e}")

        if deadline is not None and monotonic() >= deadline:
            raise DeadlineExceededError(f"Talos node {ip} not ready before deadline")
        sleep(delay)

    raise RegistrationTimeoutError(f"Talos node {ip} not ready after {attempts} attempts")


def apply_config(ip, document, talosctl="talosctl"):
    """
    Apply a machine configuration to a node in maintenance mode
    """
    with tempfile.TemporaryDirectory(prefix="vmdeployerd-talos_") as tdir:
        config_file = os.path.join(tdir, f"talos-config-{ip.replace('.', '-')}.yaml")
        with open(config_file, "w") as cfh:
            cfh.write(document)

        apply_cmd = [talosctl, "apply-config", "--insecure", "--nodes", ip, "--file", config_file]
        logger.debug(f"Running: {' '.join(apply_cmd)}")
        try:
            ret = run(apply_cmd, capture_output=True, text=True)
        except OSError as e:
            raise RegistrationError(f"Failed to run {talosctl}: {e}")

    if ret.returncode != 0:
        logger.error(f"talosctl failed: rc={ret.returncode}\nstdout: {ret.stdout}\nstderr: {ret.stderr}")
        raise RegistrationError(f"Failed to apply Talos config to {ip}: {ret.stderr.strip()}")

    logger.info(f"Applied Talos config to node: {ip}")


class TalosRegistrar:
    """
    Registers freshly booted VMs with the Talos control plane
    """

    def __init__(self, config):
        self.template_path = config["talos_machine_template"]
        self.controlplane_endpoint = config["talos_controlplane_endpoint"]
        self.port = config["talos_agent_port"]
        self.talosctl = config["talos_talosctl"]
        self.attempts = config["provisioning_register_attempts"]
        self.delay = config["provisioning_register_delay"]

    def register(self, ip, substitutions, deadline=None):
        substitutions = dict(substitutions, controlplane_endpoint=self.controlplane_endpoint)

        logger.info("Generating Talos configuration...")
        document = generate_config(self.template_path, substitutions)

        logger.info("Waiting for Talos node to be ready...")
        wait_for_node(ip, port=self.port, attempts=self.attempts, delay=self.delay, deadline=deadline)

        logger.info("Registering node with Talos cluster...")
        apply_config(ip, document, talosctl=self.talosctl)
