#!/usr/bin/env python3

# tasks.py - VM Deployer remote task tracking
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
    RemoteOperationError,
    TaskFailureError,
)


logger = logging.getLogger(__name__)


TASK_POLL_INTERVAL = 2


def parse_task_status(upid, data):
    """
    Extract (status, exitstatus) from a task status answer, which may be an object or a one-element list
    """
    if isinstance(data, list):
        if len(data) == 0:
            raise RemoteOperationError(f"Empty task status array for {upid}")
        data = data[0]

    if not isinstance(data, dict):
        raise RemoteOperationError(f"Unexpected task status format for {upid}")

    return data.get("status"), data.get("exitstatus")


def track_task(session, node, upid, interval=TASK_POLL_INTERVAL, deadline=None):
    """
    Block until a remote task stops

    An empty handle means the operation completed synchronously. A task that
    stops with any exit status but "OK" raises TaskFailureError. Transport
    errors, malformed answers and unknown states abort immediately and are never
    retried. If a deadline (a time.monotonic() value) is given, DeadlineExceededError
    is raised instead of polling past it.
    """
    if not upid:
        logger.debug("No task handle to track; operation completed synchronously")
        return

    while True:
        status, exit_status = parse_task_status(upid, session.get_task_status(node, upid))

        if status == "running":
            if deadline is not None and monotonic() >= deadline:
                raise DeadlineExceededError(f"Task {upid} still running at deadline")
            logger.debug(f"Task {upid} is running; polling again in {interval}s")
            sleep(interval)
            continue

        if status == "stopped":
            if exit_status == "OK":
                logger.info(f"Task {upid} completed successfully")
                return
            raise TaskFailureError(upid, exit_status)

        raise RemoteOperationError(f"Unknown task status for {upid}: {status}")
