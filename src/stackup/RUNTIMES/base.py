# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
The container runtime contract consumed by the orchestrator.

A runtime owns the actual networks, volumes, images and containers. Every
method raises RuntimeOperationError when the runtime refuses an operation;
lookups of things that do not exist return None or an empty list instead.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..MODELS.network_definition import NetworkDefinition
from ..MODELS.service_definition import BuildContext, HealthCheck, PortMapping, RestartPolicy
from ..MODELS.volume_definition import VolumeDefinition

PROJECT_LABEL = "com.stackup.project"
SERVICE_LABEL = "com.stackup.service"
NETWORK_LABEL = "com.stackup.network"
VOLUME_LABEL = "com.stackup.volume"


@dataclass
class NetworkRecord:
    """A network known to the runtime."""

    name: str
    id: str = ""
    driver: str = "bridge"
    subnets: List[str] = field(default_factory=list)
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def project(self) -> Optional[str]:
        return self.labels.get(PROJECT_LABEL)


@dataclass
class VolumeRecord:
    """A volume known to the runtime."""

    name: str
    driver: str = "local"
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def project(self) -> Optional[str]:
        return self.labels.get(PROJECT_LABEL)


@dataclass
class Mount:
    """A resolved mount: runtime volume name or host path onto a container path."""

    type: str
    source: Optional[str]
    target: str
    read_only: bool = False


@dataclass
class ContainerSpec:
    """Everything the runtime needs to create one service container."""

    name: str
    service: str
    project: str
    image: str
    command: List[str] = field(default_factory=list)
    entrypoint: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    ports: List[PortMapping] = field(default_factory=list)
    mounts: List[Mount] = field(default_factory=list)
    networks: Dict[str, List[str]] = field(default_factory=dict)  # {runtime network: aliases}
    labels: Dict[str, str] = field(default_factory=dict)
    working_dir: Optional[str] = None
    stdin_open: bool = False
    tty: bool = False
    health_check: Optional[HealthCheck] = None
    # Set only when restarts are delegated to the runtime (detached mode)
    restart_policy: Optional[RestartPolicy] = None


@dataclass
class ContainerRecord:
    """Observed state of a container."""

    id: str
    name: str
    status: str
    exit_code: Optional[int] = None
    health: Optional[str] = None
    started_at: Optional[str] = None
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def service(self) -> Optional[str]:
        return self.labels.get(SERVICE_LABEL)


class ContainerRuntime(ABC):
    """
    Abstract container runtime. Implementations: Docker Engine, host processes, in-memory.
    """

    name = "abstract"

    @abstractmethod
    def list_networks(self) -> List[NetworkRecord]:
        ...

    @abstractmethod
    def create_network(self, network: NetworkDefinition, labels: Dict[str, str]) -> NetworkRecord:
        ...

    @abstractmethod
    def remove_network(self, name: str) -> None:
        ...

    @abstractmethod
    def list_volumes(self) -> List[VolumeRecord]:
        ...

    @abstractmethod
    def create_volume(self, volume: VolumeDefinition, labels: Dict[str, str]) -> VolumeRecord:
        ...

    @abstractmethod
    def remove_volume(self, name: str) -> None:
        ...

    @abstractmethod
    def image_exists(self, reference: str) -> bool:
        ...

    @abstractmethod
    def pull_image(self, reference: str) -> None:
        ...

    @abstractmethod
    def build_image(self, build: BuildContext, tag: str) -> str:
        ...

    @abstractmethod
    def create_container(self, spec: ContainerSpec) -> str:
        ...

    @abstractmethod
    def start_container(self, container_id: str) -> None:
        ...

    @abstractmethod
    def inspect_container(self, container_id: str) -> Optional[ContainerRecord]:
        ...

    @abstractmethod
    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        ...

    @abstractmethod
    def remove_container(self, container_id: str) -> None:
        ...

    @abstractmethod
    def list_containers(self, project: str) -> List[ContainerRecord]:
        ...

    def supports_detach(self) -> bool:
        """Whether containers keep running after this process exits."""
        return True

    def close(self) -> None:
        """Release client resources."""
        return None
