#!/usr/bin/env python3

# flaskapi.py - VM Deployer HTTP API
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

import flask
import logging

import vmdeployerd.lib.metrics as metrics
import vmdeployerd.lib.notifications as notifications

from flask_restful import Resource, Api

from vmdeployerd.Daemon import strtobool
from vmdeployerd.lib.dataclasses import DeletionRequest, ProvisioningRequest
from vmdeployerd.lib.exceptions import DeployerError, ValidationError


logger = logging.getLogger(__name__)


CREATE_HANDLER = "/api/v1/create"
DELETE_HANDLER = "/api/v1/delete"


#
# Request parsing
#
def get_request_data():
    """
    Return the request parameters from a JSON body or from form fields
    """
    if flask.request.is_json:
        data = flask.request.get_json(silent=True)
        if not isinstance(data, dict):
            raise ValidationError("Bad request: body is not a JSON object")
        return data
    return flask.request.values


def optional_string(data, key):
    value = data.get(key)
    if value is None or value == "":
        return None
    return str(value)


def optional_int(data, key, error):
    value = data.get(key)
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(error)


def parse_provisioning_request(data):
    base_template = optional_string(data, "base_template")
    vm_template = optional_string(data, "vm_template")
    if base_template is None or vm_template is None:
        raise ValidationError("base_template and vm_template are required")

    count = optional_int(data, "count", "Invalid count parameter. Must be a positive integer")
    if count is None:
        count = 1
    if count < 1:
        raise ValidationError("Invalid count parameter. Must be a positive integer")

    return ProvisioningRequest(
        base_template=base_template,
        vm_template=vm_template,
        node=optional_string(data, "node"),
        name=optional_string(data, "name"),
        numa=optional_int(data, "numa", "Invalid numa parameter. Must be an integer"),
        phy=optional_string(data, "phy"),
        ht=optional_string(data, "ht"),
        phy_only=strtobool(data.get("phy_only")),
        ht_only=strtobool(data.get("ht_only")),
        reset=strtobool(data.get("reset")),
        count=count,
    )


def parse_deletion_request(data):
    return DeletionRequest(
        vm_name=optional_string(data, "vm_name"),
        node=optional_string(data, "node"),
        vm_id=optional_int(data, "vm_id", "vm_id must be a number"),
        stop_method=optional_string(data, "stop_method") or "shutdown",
    )


def error_response(config, handler, error, report=True):
    """
    Count an error against its handler and turn it into an API response

    Errors raised by the provisioner are already reported; 'report' only
    covers those raised while parsing the request.
    """
    metrics.inc_error_counter(handler)
    if report:
        logger.error(f"{handler}: {error}")
        notifications.report_error(config, error, context=handler)
    if isinstance(error, ValidationError):
        return {"message": str(error)}, 400
    return {"message": str(error)}, 500


#
# API routes
#
class API_Root(Resource):
    def get(self):
        """
        Return basic details of the API
        ---
        tags:
          - root
        responses:
          200:
            description: OK
            schema:
              type: object
              id: Message
              properties:
                message:
                  type: string
                  description: A text message describing the result
                  example: "vmdeployerd API"
        """
        return {"message": "vmdeployerd API"}, 200


class API_HealthCheck(Resource):
    def get(self):
        """
        Report that the daemon is alive
        ---
        tags:
          - root
        responses:
          200:
            description: OK
        """
        return flask.Response("200 OK", status=200, mimetype="text/plain")


class API_Metrics(Resource):
    def get(self):
        """
        Return the Prometheus metrics of the daemon
        ---
        tags:
          - root
        responses:
          200:
            description: OK
        """
        body, content_type = metrics.render_metrics()
        return flask.Response(body, status=200, content_type=content_type)


class AuthenticatedResource(Resource):
    handler = None

    def __init__(self, config, provisioner):
        self.config = config
        self.provisioner = provisioner

    def authenticated(self):
        token = flask.request.headers.get("X-Auth-Token")
        if not self.config["auth_token"] or token != self.config["auth_token"]:
            logger.warning(f"{self.handler}: Unauthorized request from {flask.request.remote_addr}")
            metrics.inc_error_counter(self.handler)
            return False
        return True


class API_Create(AuthenticatedResource):
    handler = CREATE_HANDLER

    def post(self):
        """
        Create one or more VMs and register them with the Talos cluster
        ---
        tags:
          - vm
        consumes:
          - application/json
          - application/x-www-form-urlencoded
        parameters:
          - in: header
            name: X-Auth-Token
            type: string
            required: true
          - in: body
            name: create_request
            schema:
              type: object
              required:
                - base_template
                - vm_template
              properties:
                base_template:
                  type: string
                  description: The base template to clone, as named on the node.
                  example: "talos-1.7"
                vm_template:
                  type: string
                  description: The VM sizing template.
                  example: "small"
                node:
                  type: string
                  description: The hypervisor node; chosen by weight if unset.
                  example: "hv1"
                name:
                  type: string
                  description: The VM name; generated if unset.
                numa:
                  type: integer
                  description: The NUMA node id; chosen at random if unset.
                phy:
                  type: string
                  description: A physical core range, e.g. "0-3".
                ht:
                  type: string
                  description: A hyperthread core range, e.g. "16-19".
                phy_only:
                  type: boolean
                ht_only:
                  type: boolean
                reset:
                  type: boolean
                  description: Reset the VM once after its first start.
                count:
                  type: integer
                  description: The number of VMs to create.
                  example: 1
        responses:
          200:
            description: OK
          400:
            description: Bad request
          401:
            description: Unauthorized
          500:
            description: Provisioning failed
        """
        if not self.authenticated():
            return {"message": "Unauthorized"}, 401

        try:
            request = parse_provisioning_request(get_request_data())
        except ValidationError as e:
            return error_response(self.config, self.handler, e)

        try:
            if request.count > 1:
                logger.info(f"Bulk VM creation requested: count={request.count}")
                results = self.provisioner.create_vms(request)
                return {
                    "count": request.count,
                    "vms": [result.to_dict() for result in results],
                }, 200

            result = self.provisioner.create_vm(request)
        except DeployerError as e:
            return error_response(self.config, self.handler, e, report=False)

        return result.to_dict(), 200


class API_Delete(AuthenticatedResource):
    handler = DELETE_HANDLER

    def post(self):
        """
        Stop and delete a VM
        ---
        tags:
          - vm
        consumes:
          - application/json
          - application/x-www-form-urlencoded
        parameters:
          - in: header
            name: X-Auth-Token
            type: string
            required: true
          - in: body
            name: delete_request
            schema:
              type: object
              properties:
                vm_name:
                  type: string
                  description: The VM name, searched for on every node.
                node:
                  type: string
                  description: The node of the VM, with vm_id.
                vm_id:
                  type: integer
                  description: The VM id, with node.
                stop_method:
                  type: string
                  description: One of "shutdown" (default) or "stop".
        responses:
          200:
            description: OK
          400:
            description: Bad request
          401:
            description: Unauthorized
          500:
            description: Deletion failed
        """
        if not self.authenticated():
            return {"message": "Unauthorized"}, 401

        try:
            request = parse_deletion_request(get_request_data())
        except ValidationError as e:
            return error_response(self.config, self.handler, e)

        try:
            result = self.provisioner.delete_vm(request)
        except DeployerError as e:
            return error_response(self.config, self.handler, e, report=False)

        return result.to_dict(), 200


def create_app(config, provisioner):
    """
    Create the Flask app around a provisioner
    """
    app = flask.Flask(__name__)
    blueprint = flask.Blueprint("api", __name__, url_prefix="")
    api = Api(blueprint)

    resource_kwargs = {"config": config, "provisioner": provisioner}

    api.add_resource(API_Root, "/")
    api.add_resource(API_HealthCheck, "/health-check")
    api.add_resource(API_Metrics, "/metrics")
    api.add_resource(API_Create, CREATE_HANDLER, resource_class_kwargs=resource_kwargs)
    api.add_resource(API_Delete, DELETE_HANDLER, resource_class_kwargs=resource_kwargs)

    app.register_blueprint(blueprint)
    return app
