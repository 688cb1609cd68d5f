"""
Models Module

Value types shared by the orchestrator, the runtime client and the HTTP layer.
ContainerSpec is immutable; ContainerSpecBuilder is the only mutable way to
assemble one.
"""

from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from utils import InvalidSpecException

MIN_PORT = 1
MAX_PORT = 65535
SERVICE_TYPE_LABEL = "dockmaster.service-type"


class ContainerState(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    PAUSED = "paused"
    EXITED = "exited"
    REMOVED = "removed"
    UNKNOWN = "unknown"

    @classmethod
    def from_daemon(cls, state: Optional[str]) -> "ContainerState":
        """Map a daemon state string onto the enum"""
        if not state:
            return cls.UNKNOWN
        state = state.lower()
        aliases = {"restarting": cls.RUNNING, "dead": cls.EXITED, "removing": cls.REMOVED}
        if state in aliases:
            return aliases[state]
        try:
            return cls(state)
        except ValueError:
            return cls.UNKNOWN


class ControlAction(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    PAUSE = "pause"
    UNPAUSE = "unpause"
    REMOVE = "remove"


class PortMapping(BaseModel):
    model_config = ConfigDict(frozen=True)

    host_port: int
    container_port: int

    def __str__(self):
        return f"{self.host_port}:{self.container_port}"


def parse_port_mapping(value: str) -> PortMapping:
    """Parse a "<hostPort>:<containerPort>" string, e.g. "8080:80".

    Both sides must be plain decimal numbers; there is no defaulting and no
    protocol suffix.
    """
    parts = value.split(":") if isinstance(value, str) else []
    if len(parts) != 2 or not all(p.isdigit() and p.isascii() for p in parts):
        raise InvalidSpecException(f"Malformed port mapping: {value!r}")
    return PortMapping(host_port=int(parts[0]), container_port=int(parts[1]))


def _spec_problems(image_name: str, port_mappings) -> List[str]:
    problems = []
    if not image_name or not image_name.strip():
        problems.append("image name must not be empty")

    seen_host_ports = set()
    for mapping in port_mappings:
        for label, port in (
            ("host", mapping.host_port),
            ("container", mapping.container_port),
        ):
            if not MIN_PORT <= port <= MAX_PORT:
                problems.append(
                    f"{label} port {port} in mapping {mapping} is outside "
                    f"{MIN_PORT}-{MAX_PORT}"
                )
        if mapping.host_port in seen_host_ports:
            problems.append(f"host port {mapping.host_port} is mapped more than once")
        seen_host_ports.add(mapping.host_port)
    return problems


class ContainerSpec(BaseModel):
    """Validated description of a container that does not exist yet"""

    model_config = ConfigDict(frozen=True)

    name: Optional[str] = None
    image_name: str
    service_type: Optional[str] = None
    environment: Tuple[str, ...] = ()
    port_mappings: Tuple[PortMapping, ...] = ()
    auto_restart: bool = False

    @model_validator(mode="after")
    def check_spec(self):
        problems = _spec_problems(self.image_name, self.port_mappings)
        if problems:
            raise ValueError("; ".join(problems))
        return self

    @classmethod
    def create(cls, **fields) -> "ContainerSpec":
        """Construct a spec, raising InvalidSpecException instead of ValidationError"""
        try:
            return cls(**fields)
        except ValidationError as e:
            messages = [err["msg"].removeprefix("Value error, ") for err in e.errors()]
            raise InvalidSpecException("; ".join(messages)) from e


def validate_spec(spec: ContainerSpec) -> ContainerSpec:
    """Re-run spec checks; catches specs built with model_construct or copies"""
    if not isinstance(spec, ContainerSpec):
        raise InvalidSpecException(f"Expected ContainerSpec, got {type(spec).__name__}")
    problems = _spec_problems(spec.image_name, spec.port_mappings)
    if problems:
        raise InvalidSpecException("; ".join(problems))
    return spec


class ContainerSpecBuilder:
    """Fluent, mutable builder that produces an immutable ContainerSpec.

    Example:
        spec = (
            ContainerSpecBuilder()
            .image("nginx:latest")
            .port(8080, 80)
            .auto_restart()
            .build()
        )
    """

    def __init__(self):
        self._name = None
        self._image_name = ""
        self._service_type = None
        self._environment = []
        self._port_mappings = []
        self._auto_restart = False

    def name(self, name: str):
        self._name = name
        return self

    def image(self, image_name: str):
        self._image_name = image_name
        return self

    def service_type(self, service_type: str):
        self._service_type = service_type
        return self

    def env(self, key: str, value: str):
        self._environment.append(f"{key}={value}")
        return self

    def environment(self, entries: Union[List[str], Dict[str, str]]):
        if isinstance(entries, dict):
            entries = [f"{k}={v}" for k, v in entries.items()]
        self._environment.extend(entries)
        return self

    def port(self, host_port: int, container_port: int):
        try:
            mapping = PortMapping(host_port=host_port, container_port=container_port)
        except ValidationError as e:
            raise InvalidSpecException(
                f"Malformed port mapping: {host_port!r}:{container_port!r}"
            ) from e
        self._port_mappings.append(mapping)
        return self

    def ports(self, mappings: List[str]):
        self._port_mappings.extend(parse_port_mapping(m) for m in mappings)
        return self

    def auto_restart(self, enabled: bool = True):
        self._auto_restart = enabled
        return self

    def build(self) -> ContainerSpec:
        return ContainerSpec.create(
            name=self._name,
            image_name=self._image_name,
            service_type=self._service_type,
            environment=tuple(self._environment),
            port_mappings=tuple(self._port_mappings),
            auto_restart=self._auto_restart,
        )


class ContainerHandle(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)

    def __str__(self):
        return self.id


class HostConfig(BaseModel):
    """Daemon host configuration derived from a ContainerSpec"""

    port_bindings: Dict[str, int] = {}
    restart_policy: Optional[Dict[str, str]] = None

    @property
    def exposed_ports(self) -> List[str]:
        return list(self.port_bindings)


class ContainerSummary(BaseModel):
    id: str
    names: List[str] = []
    image: Optional[str] = None
    state: ContainerState = ContainerState.UNKNOWN


class ImageRef(BaseModel):
    id: str
    tags: List[str] = []


class VolumeRef(BaseModel):
    name: str
    driver: Optional[str] = None
    mountpoint: Optional[str] = None


class Statistics(BaseModel):
    """One point-in-time resource usage reading for a container"""

    read: Optional[str] = None
    cpu_percent: float = 0.0
    cpu_total_usage: int = 0
    system_cpu_usage: int = 0
    online_cpus: int = 0
    memory_usage: int = 0
    memory_limit: int = 0
    memory_percent: float = 0.0
    network_rx_bytes: int = 0
    network_tx_bytes: int = 0
    block_read_bytes: int = 0
    block_write_bytes: int = 0
    pids: int = 0
    raw: Dict[str, Any] = {}

    @classmethod
    def from_daemon(cls, payload: Dict[str, Any]) -> "Statistics":
        """Build a snapshot from the daemon's stats JSON, as `docker stats` does"""
        cpu_stats = payload.get("cpu_stats") or {}
        precpu_stats = payload.get("precpu_stats") or {}
        cpu_usage = cpu_stats.get("cpu_usage") or {}
        precpu_usage = precpu_stats.get("cpu_usage") or {}

        total_usage = cpu_usage.get("total_usage", 0)
        system_usage = cpu_stats.get("system_cpu_usage", 0)
        online_cpus = cpu_stats.get("online_cpus") or len(
            cpu_usage.get("percpu_usage") or []
        )

        # The first frame of a stream carries a zeroed precpu_stats; without a
        # previous reading there is no interval to measure
        previous_total = precpu_usage.get("total_usage") or 0
        previous_system = precpu_stats.get("system_cpu_usage") or 0
        cpu_delta = total_usage - previous_total
        system_delta = system_usage - previous_system
        cpu_percent = 0.0
        if previous_total and previous_system and cpu_delta > 0 and system_delta > 0:
            cpu_percent = (cpu_delta / system_delta) * (online_cpus or 1) * 100.0

        memory_stats = payload.get("memory_stats") or {}
        memory_usage = memory_stats.get("usage", 0)
        # cgroup v1 reports page cache as "cache", v2 as "inactive_file"
        detail = memory_stats.get("stats") or {}
        cache = detail.get("inactive_file", detail.get("cache", 0))
        memory_usage = max(memory_usage - cache, 0)
        memory_limit = memory_stats.get("limit", 0)
        memory_percent = (memory_usage / memory_limit * 100.0) if memory_limit else 0.0

        rx_bytes = tx_bytes = 0
        for interface in (payload.get("networks") or {}).values():
            rx_bytes += interface.get("rx_bytes", 0)
            tx_bytes += interface.get("tx_bytes", 0)

        read_bytes = write_bytes = 0
        io_entries = (payload.get("blkio_stats") or {}).get(
            "io_service_bytes_recursive"
        ) or []
        for entry in io_entries:
            op = (entry.get("op") or "").lower()
            if op == "read":
                read_bytes += entry.get("value", 0)
            elif op == "write":
                write_bytes += entry.get("value", 0)

        return cls(
            read=payload.get("read"),
            cpu_percent=round(cpu_percent, 2),
            cpu_total_usage=total_usage,
            system_cpu_usage=system_usage,
            online_cpus=online_cpus,
            memory_usage=memory_usage,
            memory_limit=memory_limit,
            memory_percent=round(memory_percent, 2),
            network_rx_bytes=rx_bytes,
            network_tx_bytes=tx_bytes,
            block_read_bytes=read_bytes,
            block_write_bytes=write_bytes,
            pids=(payload.get("pids_stats") or {}).get("current", 0),
            raw=payload,
        )


class ContainerConfig(BaseModel):
    """Request body for POST /containers"""

    image: str
    name: Optional[str] = None
    service_type: Optional[str] = None
    env: Union[Dict[str, str], List[str]] = {}  # {"KEY": "value"} or ["KEY=value"]
    ports: List[str] = []  # e.g. ["8080:80"]
    auto_restart: bool = False

    def to_spec(self) -> ContainerSpec:
        builder = ContainerSpecBuilder().image(self.image).environment(self.env)
        if self.name:
            builder.name(self.name)
        if self.service_type:
            builder.service_type(self.service_type)
        return builder.ports(self.ports).auto_restart(self.auto_restart).build()


class ImagePullRequest(BaseModel):
    image: str


class VolumeCreateRequest(BaseModel):
    name: str
