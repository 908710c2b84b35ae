"""Tests for the HTTP API."""

from unittest.mock import MagicMock

import pytest

from vmdeployerd.flaskapi import create_app
from vmdeployerd.lib.exceptions import RegistrationError


AUTH = {"X-Auth-Token": "secret"}


@pytest.fixture
def client(config, provisioner):
    app = create_app(config, provisioner)
    app.config["TESTING"] = True
    return app.test_client()


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.get_json() == {"message": "vmdeployerd API"}


def test_health_check(client):
    response = client.get("/health-check")
    assert response.status_code == 200
    assert response.data == b"200 OK"


def test_metrics(client):
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.content_type.startswith("text/plain")
    assert b"vm_deployer_errors_total" in response.data


@pytest.mark.parametrize("path", ["/api/v1/create", "/api/v1/delete"])
def test_requires_token(client, session, path):
    response = client.post(path, data={"vm_name": "web"})
    assert response.status_code == 401
    response = client.post(path, data={"vm_name": "web"}, headers={"X-Auth-Token": "wrong"})
    assert response.status_code == 401
    assert session.calls == []


def test_create_single_form(client):
    response = client.post(
        "/api/v1/create",
        data={"base_template": "tmpl-a", "vm_template": "small", "node": "hv1", "reset": "1"},
        headers=AUTH,
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["vm_id"] == 100
    assert body["node"] == "hv1"
    assert body["ip"] == "10.0.0.100"
    assert body["role"] == "worker"
    assert body["reset"] is True


def test_create_bulk_json(client):
    response = client.post(
        "/api/v1/create",
        json={"base_template": "tmpl-a", "vm_template": "small", "node": "hv2", "count": 2},
        headers=AUTH,
    )
    assert response.status_code == 200
    body = response.get_json()
    assert body["count"] == 2
    assert [vm["vm_id"] for vm in body["vms"]] == [100, 101]


def test_create_bulk_reports_per_vm_errors(client, session):
    session.failing_clones.add(100)
    response = client.post(
        "/api/v1/create",
        data={"base_template": "tmpl-a", "vm_template": "small", "node": "hv1", "count": "2"},
        headers=AUTH,
    )
    assert response.status_code == 200
    vms = response.get_json()["vms"]
    assert vms[0]["error"].startswith("clone failed:")
    assert "error" not in vms[1]


@pytest.mark.parametrize(
    "data, message",
    [
        ({"vm_template": "small"}, "base_template and vm_template are required"),
        ({"base_template": "tmpl-a", "vm_template": "small", "count": "abc"}, "Invalid count parameter"),
        ({"base_template": "tmpl-a", "vm_template": "small", "count": "0"}, "Invalid count parameter"),
        ({"base_template": "tmpl-a", "vm_template": "small", "numa": "x"}, "Invalid numa parameter"),
        (
            {"base_template": "tmpl-a", "vm_template": "small", "phy_only": "1", "ht_only": "1"},
            "cannot be set at the same time",
        ),
        ({"base_template": "tmpl-a", "vm_template": "huge"}, "Invalid vm_template"),
        ({"base_template": "tmpl-a", "vm_template": "small", "node": "hv9"}, "Invalid node"),
    ],
)
def test_create_bad_request(client, session, data, message):
    response = client.post("/api/v1/create", data=data, headers=AUTH)
    assert response.status_code == 400
    assert message in response.get_json()["message"]
    assert session.calls == []


def test_create_remote_failure(client, session):
    session.failing_clones.add(100)
    response = client.post(
        "/api/v1/create",
        data={"base_template": "tmpl-a", "vm_template": "small", "node": "hv1"},
        headers=AUTH,
    )
    assert response.status_code == 500
    assert "clone refused" in response.get_json()["message"]


def test_create_allocation_failure(client):
    response = client.post(
        "/api/v1/create",
        data={"base_template": "tmpl-a", "vm_template": "small", "node": "hv3"},
        headers=AUTH,
    )
    assert response.status_code == 500


def test_delete_by_node_and_id(client, session):
    response = client.post("/api/v1/delete", data={"node": "hv1", "vm_id": "123"}, headers=AUTH)
    assert response.status_code == 200
    assert response.get_json() == {"node": "hv1", "vm_id": 123}
    assert session.called("stop_vm") == [("stop_vm", "hv1", 123, "shutdown")]


def test_delete_by_name(client, session):
    session.vms = {"hv1": {"web-1": 321}}
    response = client.post("/api/v1/delete", json={"vm_name": "web-1"}, headers=AUTH)
    assert response.status_code == 200
    assert response.get_json() == {"node": "hv1", "vm_id": 321}


@pytest.mark.parametrize(
    "data, message",
    [
        ({}, "vm_name or (node and vm_id) are required"),
        ({"node": "hv1", "vm_id": "abc"}, "vm_id must be a number"),
        ({"node": "hv1", "vm_id": "1", "stop_method": "kill"}, "Invalid stop_method"),
        ({"vm_name": "ghost"}, "not found on any node"),
    ],
)
def test_delete_bad_request(client, session, data, message):
    response = client.post("/api/v1/delete", data=data, headers=AUTH)
    assert response.status_code == 400
    assert message in response.get_json()["message"]
    assert session.called("stop_vm") == []


def test_registration_failure_maps_to_500(config):
    provisioner = MagicMock()
    provisioner.create_vm.side_effect = RegistrationError("Failed to apply Talos config to 10.0.0.5")
    client = create_app(config, provisioner).test_client()

    response = client.post(
        "/api/v1/create",
        data={"base_template": "tmpl-a", "vm_template": "small"},
        headers=AUTH,
    )

    assert response.status_code == 500
    assert response.get_json() == {"message": "Failed to apply Talos config to 10.0.0.5"}
    request = provisioner.create_vm.call_args[0][0]
    assert request.count == 1
    assert request.node is None
