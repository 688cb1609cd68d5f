import uuid

import pytest

from models import (
    ContainerSpecBuilder,
    ContainerState,
    ContainerSummary,
    ControlAction,
    ImageRef,
    VolumeRef,
)
from orchestrator import ContainerOrchestrator
from utils import DaemonAPIException, TransportException

STATS_SAMPLE = {
    "read": "2024-08-11T21:16:00.000000000Z",
    "cpu_stats": {
        "cpu_usage": {"total_usage": 400_000_000},
        "system_cpu_usage": 20_000_000_000,
        "online_cpus": 2,
    },
    "precpu_stats": {
        "cpu_usage": {"total_usage": 300_000_000},
        "system_cpu_usage": 19_000_000_000,
    },
    "memory_stats": {
        "usage": 60 * 1024 * 1024,
        "limit": 512 * 1024 * 1024,
        "stats": {"inactive_file": 4 * 1024 * 1024},
    },
    "networks": {
        "eth0": {"rx_bytes": 1000, "tx_bytes": 400},
        "eth1": {"rx_bytes": 24, "tx_bytes": 6},
    },
    "blkio_stats": {
        "io_service_bytes_recursive": [
            {"major": 8, "minor": 0, "op": "read", "value": 4096},
            {"major": 8, "minor": 0, "op": "write", "value": 8192},
        ]
    },
    "pids_stats": {"current": 3},
}


class FakeStream:
    """Stand-in for a daemon response stream; exceptions in items are raised"""

    def __init__(self, items):
        self.items = list(items)
        self.closed = False

    def __iter__(self):
        for item in self.items:
            if isinstance(item, Exception):
                raise item
            yield item

    def close(self):
        self.closed = True


class FakeRuntimeClient:
    """In-memory daemon with Docker's transition rules and error statuses"""

    def __init__(self):
        self.containers = {}
        self.images = {"nginx:latest": "sha256:" + "a" * 64}
        self.pullable = {"redis:7": "sha256:" + "b" * 64}
        self.volumes = {}
        self.volumes_in_use = set()
        self.logs = {}
        self.streams = []
        self.calls = []
        self.reachable = True

    def _rpc(self, name):
        self.calls.append(name)
        if not self.reachable:
            raise TransportException("Docker daemon unreachable: connection refused")

    def _get(self, container_id):
        container = self.containers.get(container_id)
        if container is None:
            raise DaemonAPIException(f"No such container: {container_id}", 404)
        return container

    def create(self, spec, host_config):
        self._rpc("create")
        if spec.image_name not in self.images:
            raise DaemonAPIException(f"No such image: {spec.image_name}", 404)
        if spec.name and any(c["name"] == spec.name for c in self.containers.values()):
            raise DaemonAPIException(
                f'Conflict. The container name "/{spec.name}" is already in use', 409
            )
        container_id = uuid.uuid4().hex + uuid.uuid4().hex
        self.containers[container_id] = {
            "name": spec.name,
            "image": spec.image_name,
            "state": ContainerState.CREATED,
            "host_config": host_config,
            "spec": spec,
        }
        return container_id

    def control(self, container_id, action, force=False, timeout=None):
        self._rpc(action.value)
        container = self._get(container_id)
        state = container["state"]
        live = state in (ContainerState.RUNNING, ContainerState.PAUSED)

        if action == ControlAction.START:
            if live:
                raise DaemonAPIException("container already started", 304)
            container["state"] = ContainerState.RUNNING
        elif action == ControlAction.STOP:
            if not live:
                raise DaemonAPIException("container already stopped", 304)
            container["state"] = ContainerState.EXITED
        elif action == ControlAction.RESTART:
            container["state"] = ContainerState.RUNNING
        elif action == ControlAction.PAUSE:
            if state != ContainerState.RUNNING:
                raise DaemonAPIException(f"Container {container_id} is not running", 409)
            container["state"] = ContainerState.PAUSED
        elif action == ControlAction.UNPAUSE:
            if state != ContainerState.PAUSED:
                raise DaemonAPIException(f"Container {container_id} is not paused", 409)
            container["state"] = ContainerState.RUNNING
        elif action == ControlAction.REMOVE:
            if live and not force:
                raise DaemonAPIException(
                    "You cannot remove a running container. "
                    "Stop the container before attempting removal or force remove",
                    409,
                )
            del self.containers[container_id]

    def inspect(self, id_filter=None, include_stopped=True):
        self._rpc("inspect")
        rows = []
        # most recently created first, like the daemon
        for container_id, container in reversed(list(self.containers.items())):
            if id_filter and not container_id.startswith(id_filter):
                continue
            if not include_stopped and container["state"] not in (
                ContainerState.RUNNING,
                ContainerState.PAUSED,
            ):
                continue
            rows.append(
                ContainerSummary(
                    id=container_id,
                    names=[container["name"]] if container["name"] else [],
                    image=container["image"],
                    state=container["state"],
                )
            )
        return rows

    def open_log_stream(self, container_id, follow=True):
        self._rpc("logs")
        self._get(container_id)
        stream = FakeStream(self.logs.get(container_id, []))
        self.streams.append(stream)
        return stream

    def stream_stats(self, container_id):
        self._rpc("stats")
        self._get(container_id)
        stream = FakeStream([STATS_SAMPLE, STATS_SAMPLE])
        self.streams.append(stream)
        return stream

    def pull_image(self, image_name):
        self._rpc("pull")
        if image_name in self.images:
            return FakeStream([{"status": f"Status: Image is up to date for {image_name}"}])
        if image_name in self.pullable:
            self.images[image_name] = self.pullable[image_name]
            return FakeStream(
                [
                    {"status": "Pulling fs layer", "id": "1a2b3c"},
                    {"status": "Pull complete", "id": "1a2b3c"},
                    {"status": f"Status: Downloaded newer image for {image_name}"},
                ]
            )
        raise DaemonAPIException(
            f"pull access denied for {image_name.split(':')[0]}, "
            "repository does not exist or may require 'docker login'",
            404,
        )

    def list_images(self):
        self._rpc("list_images")
        return [ImageRef(id=image_id, tags=[tag]) for tag, image_id in self.images.items()]

    def remove_image(self, image_id, force=False):
        self._rpc("remove_image")
        tag = next(
            (t for t, i in self.images.items() if image_id in (t, i)), None
        )
        if tag is None:
            raise DaemonAPIException(f"No such image: {image_id}", 404)
        if not force and any(c["image"] == tag for c in self.containers.values()):
            raise DaemonAPIException(
                f"conflict: unable to remove repository reference {tag!r} "
                "- container is using its referenced image",
                409,
            )
        del self.images[tag]

    def create_volume(self, name):
        self._rpc("create_volume")
        self.volumes[name] = VolumeRef(
            name=name, driver="local", mountpoint=f"/var/lib/docker/volumes/{name}/_data"
        )
        return self.volumes[name]

    def list_volumes(self):
        self._rpc("list_volumes")
        return list(self.volumes.values())

    def remove_volume(self, name):
        self._rpc("remove_volume")
        if name not in self.volumes:
            raise DaemonAPIException(f"get {name}: no such volume", 404)
        if name in self.volumes_in_use:
            raise DaemonAPIException(f"remove {name}: volume is in use", 409)
        del self.volumes[name]

    def ping(self):
        self._rpc("ping")
        return True


@pytest.fixture
def runtime():
    return FakeRuntimeClient()


@pytest.fixture
def orchestrator(runtime):
    return ContainerOrchestrator(runtime)


@pytest.fixture
def nginx_spec():
    return (
        ContainerSpecBuilder()
        .name("web")
        .image("nginx:latest")
        .service_type("nginx")
        .env("NGINX_PORT", "80")
        .port(8080, 80)
        .auto_restart()
        .build()
    )
