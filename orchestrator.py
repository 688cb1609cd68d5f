"""
Container Orchestrator Module

Translates ContainerSpecs into daemon primitives and mediates every container,
image and volume operation. Holds no state besides the injected RuntimeClient;
the daemon is the only source of truth, so nothing here is cached and nothing
is retried.
"""

import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, List, Optional, Type, Union

from models import (
    ContainerHandle,
    ContainerSpec,
    ContainerState,
    ControlAction,
    HostConfig,
    ImageRef,
    Statistics,
    VolumeRef,
    validate_spec,
)
from runtime_client import RuntimeClient
from streams import LogStream, StatsStream
from utils import (
    IMAGE_PULL_DURATION,
    DaemonAPIException,
    DaemonRejectedException,
    DockmasterException,
    InUseException,
    InvalidSpecException,
    NotFoundException,
    PullFailedException,
    TransportException,
    log_container_operation,
    logger,
)

HandleLike = Union[ContainerHandle, str]
ProgressCallback = Callable[[Dict[str, Any]], None]

# Listing without stopped containers keeps only these
LIVE_STATES = (ContainerState.RUNNING, ContainerState.PAUSED)


def build_host_config(spec: ContainerSpec) -> HostConfig:
    """Port bindings (containerPort/tcp -> hostPort) plus the restart policy"""
    port_bindings = {
        f"{mapping.container_port}/tcp": mapping.host_port
        for mapping in spec.port_mappings
    }
    restart_policy = {"Name": "always"} if spec.auto_restart else None
    return HostConfig(port_bindings=port_bindings, restart_policy=restart_policy)


def translate_daemon_error(
    error: DaemonAPIException,
    not_found: Type[DockmasterException] = NotFoundException,
    conflict: Type[DockmasterException] = DaemonRejectedException,
    rejected: Type[DockmasterException] = DaemonRejectedException,
) -> DockmasterException:
    """Map a raw daemon status onto the orchestrator's exceptions"""
    if error.daemon_status == 404:
        return not_found(error.message)
    if error.daemon_status == 409:
        return conflict(error.message)
    return rejected(error.message)


def _container_id(handle: HandleLike) -> str:
    container_id = handle.id if isinstance(handle, ContainerHandle) else handle
    if not container_id:
        raise NotFoundException("Container handle is empty")
    return container_id


class ContainerOrchestrator:
    """Lifecycle, inspection and streaming operations against one daemon"""

    def __init__(self, runtime: RuntimeClient):
        self.runtime = runtime

    @contextmanager
    def _operation(self, operation: str, target: str, **error_classes):
        try:
            yield
        except DaemonAPIException as e:
            log_container_operation(
                operation,
                target,
                "failed",
                {"error": e.message, "daemon_status": e.daemon_status},
            )
            raise translate_daemon_error(e, **error_classes) from e
        except DockmasterException as e:
            log_container_operation(
                operation, target, "failed", {"error": e.message, "code": e.error_code}
            )
            raise
        else:
            log_container_operation(operation, target, "success")

    # Containers

    def create_container(self, spec: ContainerSpec) -> ContainerHandle:
        """Create (but do not start) a container; returns its daemon-assigned handle.

        The spec is validated before anything is sent. A missing image or a
        name conflict is reported by the daemon as DaemonRejectedException.
        """
        try:
            validate_spec(spec)
        except InvalidSpecException as e:
            log_container_operation("create", "-", "failed", {"error": e.message})
            raise

        host_config = build_host_config(spec)
        target = spec.name or spec.image_name
        with self._operation("create", target, not_found=DaemonRejectedException):
            container_id = self.runtime.create(spec, host_config)

        logger.info(
            "Container created",
            container_id=container_id,
            image=spec.image_name,
            service_type=spec.service_type,
            ports=[str(m) for m in spec.port_mappings],
            auto_restart=spec.auto_restart,
        )
        return ContainerHandle(id=container_id)

    def _control(self, handle: HandleLike, action: ControlAction, **options):
        container_id = _container_id(handle)
        with self._operation(action.value, container_id):
            self.runtime.control(container_id, action, **options)

    def start_container(self, handle: HandleLike):
        self._control(handle, ControlAction.START)

    def stop_container(self, handle: HandleLike, timeout: Optional[int] = None):
        """Stop a container; the daemon kills it after `timeout` seconds"""
        self._control(handle, ControlAction.STOP, timeout=timeout)

    def restart_container(self, handle: HandleLike, timeout: Optional[int] = None):
        self._control(handle, ControlAction.RESTART, timeout=timeout)

    def pause_container(self, handle: HandleLike):
        self._control(handle, ControlAction.PAUSE)

    def unpause_container(self, handle: HandleLike):
        self._control(handle, ControlAction.UNPAUSE)

    def remove_container(self, handle: HandleLike, force: bool = False):
        """Remove a container. The handle must not be used afterwards.

        Without `force` the daemon rejects removal of a running container.
        """
        self._control(handle, ControlAction.REMOVE, force=force)

    def find_container_state(self, handle: HandleLike) -> Optional[ContainerState]:
        """Current state as reported by the daemon, or None if it has no such container.

        The daemon's id filter matches prefixes. A short id is accepted the way
        the daemon accepts it for control calls: it must resolve to exactly one
        container, otherwise the result is None.
        """
        container_id = _container_id(handle)
        with self._operation("inspect", container_id):
            rows = self.runtime.inspect(id_filter=container_id, include_stopped=True)
        for row in rows:
            if row.id == container_id:
                return row.state
        matches = [row for row in rows if row.id.startswith(container_id)]
        if len(matches) != 1:
            if matches:
                logger.warning(
                    "Ambiguous container id prefix",
                    container_id=container_id,
                    matches=len(matches),
                )
            return None
        return matches[0].state

    def get_container_status(self, handle: HandleLike) -> ContainerState:
        """Like find_container_state, but an unknown container reads as UNKNOWN.

        Callers polling after removal get UNKNOWN instead of an error; a
        mistyped id looks the same, so use find_container_state to tell apart.
        """
        state = self.find_container_state(handle)
        if state is None:
            logger.debug("Container not found, reporting unknown", container_id=str(handle))
            return ContainerState.UNKNOWN
        return state

    def list_containers(self, include_stopped: bool = False) -> List[ContainerHandle]:
        """Container handles in daemon order; order is for display only"""
        with self._operation("list_containers", "all"):
            rows = self.runtime.inspect(include_stopped=include_stopped)
        if not include_stopped:
            rows = [row for row in rows if row.state in LIVE_STATES]
        return [ContainerHandle(id=row.id) for row in rows]

    def get_container_logs(self, handle: HandleLike, follow: bool = True) -> LogStream:
        """Open the combined stdout/stderr stream. The caller must close it."""
        container_id = _container_id(handle)
        with self._operation("logs", container_id):
            source = self.runtime.open_log_stream(container_id, follow=follow)
        return LogStream(source, container_id, translate_daemon_error)

    def stream_container_stats(self, handle: HandleLike) -> StatsStream:
        """Open a live sequence of Statistics snapshots. The caller must close it."""
        container_id = _container_id(handle)
        with self._operation("stats", container_id):
            source = self.runtime.stream_stats(container_id)
        return StatsStream(source, container_id, translate_daemon_error)

    def get_container_stats(self, handle: HandleLike) -> Statistics:
        """First snapshot of a fresh stats stream"""
        with self.stream_container_stats(handle) as stats:
            snapshot = next(stats, None)
        if snapshot is None:
            raise TransportException(
                f"Stats stream for {_container_id(handle)} ended before the first snapshot"
            )
        return snapshot

    # Images

    def pull_image(self, image_name: str, progress: Optional[ProgressCallback] = None):
        """Pull an image and block until the daemon reports completion.

        `progress`, if given, is called with each daemon progress event. Any
        daemon-reported error becomes PullFailedException.
        """
        if not image_name or not image_name.strip():
            raise InvalidSpecException("image name must not be empty")

        started = time.time()
        with self._operation(
            "pull",
            image_name,
            not_found=PullFailedException,
            conflict=PullFailedException,
            rejected=PullFailedException,
        ):
            events = self.runtime.pull_image(image_name)
            try:
                for event in events:
                    if event.get("error"):
                        detail = event.get("errorDetail") or {}
                        raise PullFailedException(
                            detail.get("message") or event["error"]
                        )
                    if progress is not None:
                        progress(event)
            finally:
                close = getattr(events, "close", None)
                if close is not None:
                    close()
        IMAGE_PULL_DURATION.observe(time.time() - started)

    def list_images(self) -> List[ImageRef]:
        with self._operation("list_images", "all"):
            return self.runtime.list_images()

    def remove_image(self, image_id: str, force: bool = False):
        with self._operation("remove_image", image_id, conflict=InUseException):
            self.runtime.remove_image(image_id, force=force)

    # Volumes

    def create_volume(self, name: str) -> VolumeRef:
        with self._operation("create_volume", name):
            return self.runtime.create_volume(name)

    def list_volumes(self) -> List[VolumeRef]:
        with self._operation("list_volumes", "all"):
            return self.runtime.list_volumes()

    def remove_volume(self, name: str):
        with self._operation("remove_volume", name, conflict=InUseException):
            self.runtime.remove_volume(name)

    def ping(self) -> bool:
        """True if the daemon answers; raises TransportException if it cannot be reached"""
        try:
            return self.runtime.ping()
        except DaemonAPIException as e:
            logger.warning("Daemon ping rejected", error=e.message)
            return False
