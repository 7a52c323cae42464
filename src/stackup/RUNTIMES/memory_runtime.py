"""
In-memory runtime for dry runs and tests.

Nothing is executed. Every call is appended to ``events`` so callers can
inspect the exact sequence of operations, and failures can be scripted per
image or per service.
"""
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from ..errors import RuntimeOperationError
from ..MODELS.network_definition import NetworkDefinition
from ..MODELS.service_definition import BuildContext
from ..MODELS.volume_definition import VolumeDefinition
from .base import ContainerRecord, ContainerRuntime, ContainerSpec, NetworkRecord, VolumeRecord

logger = logging.getLogger(__name__)


@dataclass
class _MemoryContainer:
    spec: ContainerSpec
    status: str = "created"
    exit_code: Optional[int] = None
    health: Optional[str] = None
    started_at: Optional[str] = None
    pending_polls: int = 0


@dataclass
class InMemoryRuntime(ContainerRuntime):
    """
    A deterministic runtime that only records what it is asked to do.

    ``start_delay`` makes a started container report ``starting`` for that many
    inspections before it is ``running``. Services in ``fail_start`` exit with
    the mapped code as soon as they are started.
    """

    name = "memory"

    images: Set[str] = field(default_factory=set)
    fail_pull: Set[str] = field(default_factory=set)
    fail_build: Set[str] = field(default_factory=set)
    fail_start: Dict[str, int] = field(default_factory=dict)
    unhealthy: Set[str] = field(default_factory=set)
    start_delay: int = 0
    networks: Dict[str, NetworkRecord] = field(default_factory=dict)
    volumes: Dict[str, VolumeRecord] = field(default_factory=dict)
    containers: Dict[str, _MemoryContainer] = field(default_factory=dict)
    events: List[Tuple[str, str]] = field(default_factory=list)

    def __post_init__(self):
        self._ids = itertools.count(1)

    def _record(self, action: str, subject: str) -> None:
        logger.debug("memory runtime: %s %s", action, subject)
        self.events.append((action, subject))

    def started_services(self) -> List[str]:
        """Service names in the order their containers were started."""
        return [subject for action, subject in self.events if action == "start_container"]

    # Networks

    def list_networks(self) -> List[NetworkRecord]:
        return list(self.networks.values())

    def create_network(self, network: NetworkDefinition, labels: Dict[str, str]) -> NetworkRecord:
        if network.runtime_name in self.networks:
            raise RuntimeOperationError(f"Network {network.runtime_name} already exists")
        self._record("create_network", network.runtime_name)
        record = NetworkRecord(
            name=network.runtime_name,
            id=f"net{next(self._ids)}",
            driver=network.driver.value,
            subnets=[network.subnet] if network.subnet else [],
            labels=dict(labels),
        )
        self.networks[record.name] = record
        return record

    def remove_network(self, name: str) -> None:
        self._record("remove_network", name)
        self.networks.pop(name, None)

    # Volumes

    def list_volumes(self) -> List[VolumeRecord]:
        return list(self.volumes.values())

    def create_volume(self, volume: VolumeDefinition, labels: Dict[str, str]) -> VolumeRecord:
        if volume.runtime_name in self.volumes:
            raise RuntimeOperationError(f"Volume {volume.runtime_name} already exists")
        self._record("create_volume", volume.runtime_name)
        record = VolumeRecord(name=volume.runtime_name, driver=volume.driver, labels=dict(labels))
        self.volumes[record.name] = record
        return record

    def remove_volume(self, name: str) -> None:
        self._record("remove_volume", name)
        self.volumes.pop(name, None)

    # Images

    def image_exists(self, reference: str) -> bool:
        return reference in self.images

    def pull_image(self, reference: str) -> None:
        self._record("pull_image", reference)
        if reference in self.fail_pull:
            raise RuntimeOperationError(f"manifest for {reference} not found")
        self.images.add(reference)

    def build_image(self, build: BuildContext, tag: str) -> str:
        self._record("build_image", tag)
        if tag in self.fail_build or build.context in self.fail_build:
            raise RuntimeOperationError(f"build of {build.context} failed")
        self.images.add(tag)
        return tag

    # Containers

    def create_container(self, spec: ContainerSpec) -> str:
        if spec.image not in self.images:
            raise RuntimeOperationError(f"No such image: {spec.image}")
        container_id = f"{next(self._ids):064x}"
        self._record("create_container", spec.service)
        self.containers[container_id] = _MemoryContainer(spec=spec)
        return container_id

    def start_container(self, container_id: str) -> None:
        container = self.containers.get(container_id)
        if container is None:
            raise RuntimeOperationError(f"No such container: {container_id[:12]}")
        self._record("start_container", container.spec.service)
        container.started_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        if container.spec.service in self.fail_start:
            container.status = "exited"
            container.exit_code = self.fail_start[container.spec.service]
            return
        container.status = "running"
        container.exit_code = None
        container.pending_polls = self.start_delay
        if container.spec.health_check is not None:
            container.health = "unhealthy" if container.spec.service in self.unhealthy else "healthy"

    def inspect_container(self, container_id: str) -> Optional[ContainerRecord]:
        container = self.containers.get(container_id)
        if container is None:
            return None
        status = container.status
        if status == "running" and container.pending_polls > 0:
            container.pending_polls -= 1
            status = "starting"
        return ContainerRecord(
            id=container_id,
            name=container.spec.name,
            status=status,
            exit_code=container.exit_code,
            health=container.health,
            started_at=container.started_at,
            labels=dict(container.spec.labels),
        )

    def exit_container(self, container_id: str, exit_code: int) -> None:
        """Simulates the container's process exiting."""
        container = self.containers[container_id]
        container.status = "exited"
        container.exit_code = exit_code

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        container = self.containers.get(container_id)
        if container is None:
            return
        self._record("stop_container", container.spec.service)
        if container.status == "running":
            container.status = "exited"
            container.exit_code = 0

    def remove_container(self, container_id: str) -> None:
        container = self.containers.pop(container_id, None)
        if container is not None:
            self._record("remove_container", container.spec.service)

    def list_containers(self, project: str) -> List[ContainerRecord]:
        return [
            self.inspect_container(cid)
            for cid, container in list(self.containers.items())
            if container.spec.project == project
        ]
