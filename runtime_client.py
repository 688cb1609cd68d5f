"""
Runtime Client Module

The capability the orchestrator consumes: one method per daemon RPC.
DockerRuntimeClient implements it on top of docker-py's low-level APIClient and
turns docker-py / requests failures into DaemonAPIException (the daemon answered
with an error) or TransportException (the daemon could not be reached).
"""

from functools import wraps
from typing import Any, Dict, Iterator, List, Optional, Protocol

import docker
import requests
import urllib3
from docker.errors import APIError, DockerException
from docker.utils import parse_repository_tag
from docker.utils.socket import SocketError

from models import (
    SERVICE_TYPE_LABEL,
    ContainerSpec,
    ContainerState,
    ContainerSummary,
    ControlAction,
    HostConfig,
    ImageRef,
    VolumeRef,
)
from utils import DaemonAPIException, TransportException, logger


class ClosableStream(Protocol):
    def __iter__(self) -> Iterator[Any]: ...

    def close(self) -> None: ...


class RuntimeClient(Protocol):
    """Daemon operations required by ContainerOrchestrator.

    Every method raises DaemonAPIException for daemon-reported errors and
    TransportException when the daemon cannot be reached, including while a
    returned stream is being iterated.
    """

    def create(self, spec: ContainerSpec, host_config: HostConfig) -> str: ...

    def control(
        self,
        container_id: str,
        action: ControlAction,
        force: bool = False,
        timeout: Optional[int] = None,
    ) -> None: ...

    def inspect(
        self, id_filter: Optional[str] = None, include_stopped: bool = True
    ) -> List[ContainerSummary]: ...

    def open_log_stream(self, container_id: str, follow: bool = True) -> ClosableStream: ...

    def stream_stats(self, container_id: str) -> ClosableStream: ...

    def pull_image(self, image_name: str) -> Iterator[Dict[str, Any]]: ...

    def list_images(self) -> List[ImageRef]: ...

    def remove_image(self, image_id: str, force: bool = False) -> None: ...

    def create_volume(self, name: str) -> VolumeRef: ...

    def list_volumes(self) -> List[VolumeRef]: ...

    def remove_volume(self, name: str) -> None: ...

    def ping(self) -> bool: ...


def _translate(exc: Exception) -> Exception:
    if isinstance(exc, APIError):
        message = exc.explanation or str(exc)
        if isinstance(message, bytes):
            message = message.decode("utf-8", "replace")
        return DaemonAPIException(str(message), daemon_status=exc.status_code or 500)
    return TransportException(f"Docker daemon unreachable: {exc}")


# Streamed responses are read from the urllib3 response or the raw socket, so
# a dropped connection surfaces as one of the lower-level errors here
DAEMON_ERRORS = (
    requests.exceptions.RequestException,
    DockerException,
    urllib3.exceptions.HTTPError,
    SocketError,
    OSError,
)


def daemon_call(func):
    """Decorator mapping docker-py and requests errors onto the runtime contract"""

    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except DAEMON_ERRORS as e:
            raise _translate(e) from e

    return wrapper


class _TranslatingStream:
    """Wraps a docker-py stream so iteration errors follow the runtime contract"""

    def __init__(self, source):
        self._source = source
        self._iterator = iter(source)

    def __iter__(self):
        return self

    def __next__(self):
        try:
            return next(self._iterator)
        except DAEMON_ERRORS as e:
            raise _translate(e) from e

    def close(self):
        close = getattr(self._source, "close", None)
        if close is not None:
            close()


class DockerRuntimeClient:
    """RuntimeClient backed by docker-py"""

    def __init__(self, api: docker.APIClient):
        self.api = api

    @classmethod
    def from_env(cls, timeout: Optional[int] = None) -> "DockerRuntimeClient":
        """Connect using DOCKER_HOST / DOCKER_TLS_VERIFY / DOCKER_CERT_PATH"""
        kwargs = {"timeout": timeout} if timeout else {}
        try:
            client = docker.from_env(**kwargs)
        except DockerException as e:
            raise TransportException(f"Docker daemon unreachable: {e}") from e
        return cls(client.api)

    @daemon_call
    def create(self, spec: ContainerSpec, host_config: HostConfig) -> str:
        daemon_host_config = self.api.create_host_config(
            port_bindings=host_config.port_bindings or None,
            restart_policy=host_config.restart_policy,
        )
        labels = {SERVICE_TYPE_LABEL: spec.service_type} if spec.service_type else None
        response = self.api.create_container(
            image=spec.image_name,
            name=spec.name,
            environment=list(spec.environment),
            ports=host_config.exposed_ports or None,
            labels=labels,
            host_config=daemon_host_config,
        )
        for warning in response.get("Warnings") or []:
            logger.warning("Daemon warning on create", warning=warning)
        return response["Id"]

    @daemon_call
    def control(
        self,
        container_id: str,
        action: ControlAction,
        force: bool = False,
        timeout: Optional[int] = None,
    ) -> None:
        if action == ControlAction.START:
            self.api.start(container_id)
        elif action == ControlAction.STOP:
            if timeout is None:
                self.api.stop(container_id)
            else:
                self.api.stop(container_id, timeout=timeout)
        elif action == ControlAction.RESTART:
            if timeout is None:
                self.api.restart(container_id)
            else:
                self.api.restart(container_id, timeout=timeout)
        elif action == ControlAction.PAUSE:
            self.api.pause(container_id)
        elif action == ControlAction.UNPAUSE:
            self.api.unpause(container_id)
        elif action == ControlAction.REMOVE:
            self.api.remove_container(container_id, force=force)
        else:
            raise ValueError(f"Unsupported container action: {action}")

    @daemon_call
    def inspect(
        self, id_filter: Optional[str] = None, include_stopped: bool = True
    ) -> List[ContainerSummary]:
        filters = {"id": id_filter} if id_filter else None
        rows = self.api.containers(all=include_stopped, filters=filters)
        return [
            ContainerSummary(
                id=row["Id"],
                names=[n.lstrip("/") for n in row.get("Names") or []],
                image=row.get("Image"),
                state=ContainerState.from_daemon(row.get("State")),
            )
            for row in rows
        ]

    @daemon_call
    def open_log_stream(self, container_id: str, follow: bool = True) -> ClosableStream:
        stream = self.api.logs(
            container_id, stdout=True, stderr=True, stream=True, follow=follow
        )
        return _TranslatingStream(stream)

    @daemon_call
    def stream_stats(self, container_id: str) -> ClosableStream:
        # docker-py returns a plain generator here; closing it releases the response
        stream = self.api.stats(container_id, decode=True, stream=True)
        return _TranslatingStream(stream)

    @daemon_call
    def pull_image(self, image_name: str) -> Iterator[Dict[str, Any]]:
        repository, tag = parse_repository_tag(image_name)
        events = self.api.pull(repository, tag=tag or "latest", stream=True, decode=True)
        return _TranslatingStream(events)

    @daemon_call
    def list_images(self) -> List[ImageRef]:
        return [
            ImageRef(id=row["Id"], tags=row.get("RepoTags") or [])
            for row in self.api.images()
        ]

    @daemon_call
    def remove_image(self, image_id: str, force: bool = False) -> None:
        self.api.remove_image(image_id, force=force)

    @daemon_call
    def create_volume(self, name: str) -> VolumeRef:
        volume = self.api.create_volume(name=name)
        return VolumeRef(
            name=volume["Name"],
            driver=volume.get("Driver"),
            mountpoint=volume.get("Mountpoint"),
        )

    @daemon_call
    def list_volumes(self) -> List[VolumeRef]:
        volumes = self.api.volumes().get("Volumes") or []
        return [
            VolumeRef(
                name=v["Name"], driver=v.get("Driver"), mountpoint=v.get("Mountpoint")
            )
            for v in volumes
        ]

    @daemon_call
    def remove_volume(self, name: str) -> None:
        self.api.remove_volume(name)

    @daemon_call
    def ping(self) -> bool:
        return bool(self.api.ping())
