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
Docker Engine runtime, a thin wrapper around the Docker SDK.
"""
import logging
from typing import Dict, List, Optional

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound
from docker.types import IPAMConfig, IPAMPool, Mount as DockerMount

from ..errors import RuntimeOperationError
from ..MODELS.network_definition import NetworkDefinition
from ..MODELS.service_definition import BuildContext, RestartPolicyCondition
from ..MODELS.volume_definition import VolumeDefinition
from ..REGISTRY.image_reference import ImageReference
from .base import (
    PROJECT_LABEL,
    ContainerRecord,
    ContainerRuntime,
    ContainerSpec,
    NetworkRecord,
    VolumeRecord,
)

logger = logging.getLogger(__name__)

NANOSECONDS = 1_000_000_000


class DockerRuntime(ContainerRuntime):
    """
    Runs services as Docker containers.

    Ownership of networks, volumes and containers is recorded in labels so a
    later invocation (``ps``, ``down``) can find what an earlier ``up`` created.
    """

    name = "docker"

    def __init__(self, client: Optional[docker.DockerClient] = None):
        """
        Initializes the runtime.

        :param client: A Docker client; defaults to one configured from the environment.
        :raises RuntimeOperationError: If the Docker daemon is unreachable.
        """
        try:
            self.client = client or docker.from_env()
            self.client.ping()
        except DockerException as e:
            raise RuntimeOperationError(f"Docker Engine is not available: {e}") from e

    # Networks

    def list_networks(self) -> List[NetworkRecord]:
        records = []
        for network in self.client.networks.list():
            attrs = network.attrs or {}
            ipam = (attrs.get("IPAM") or {}).get("Config") or []
            records.append(
                NetworkRecord(
                    name=network.name,
                    id=network.id,
                    driver=attrs.get("Driver", "bridge"),
                    subnets=[pool["Subnet"] for pool in ipam if pool.get("Subnet")],
                    labels=attrs.get("Labels") or {},
                )
            )
        return records

    def create_network(self, network: NetworkDefinition, labels: Dict[str, str]) -> NetworkRecord:
        ipam = None
        if network.subnet:
            ipam = IPAMConfig(pool_configs=[IPAMPool(subnet=network.subnet, iprange=network.ip_range)])
        try:
            created = self.client.networks.create(
                network.runtime_name,
                driver=network.driver.value,
                ipam=ipam,
                attachable=network.attachable,
                labels=labels,
            )
        except APIError as e:
            raise RuntimeOperationError(f"Cannot create network {network.runtime_name}: {e}") from e
        return NetworkRecord(
            name=network.runtime_name,
            id=created.id,
            driver=network.driver.value,
            subnets=[network.subnet] if network.subnet else [],
            labels=labels,
        )

    def remove_network(self, name: str) -> None:
        try:
            self.client.networks.get(name).remove()
        except NotFound:
            logger.debug("Network %s already removed", name)
        except APIError as e:
            raise RuntimeOperationError(f"Cannot remove network {name}: {e}") from e

    # Volumes

    def list_volumes(self) -> List[VolumeRecord]:
        return [
            VolumeRecord(
                name=volume.name,
                driver=volume.attrs.get("Driver", "local"),
                labels=volume.attrs.get("Labels") or {},
            )
            for volume in self.client.volumes.list()
        ]

    def create_volume(self, volume: VolumeDefinition, labels: Dict[str, str]) -> VolumeRecord:
        try:
            self.client.volumes.create(
                name=volume.runtime_name,
                driver=volume.driver,
                driver_opts=volume.driver_opts or None,
                labels=labels,
            )
        except APIError as e:
            raise RuntimeOperationError(f"Cannot create volume {volume.runtime_name}: {e}") from e
        return VolumeRecord(name=volume.runtime_name, driver=volume.driver, labels=labels)

    def remove_volume(self, name: str) -> None:
        try:
            self.client.volumes.get(name).remove()
        except NotFound:
            logger.debug("Volume %s already removed", name)
        except APIError as e:
            raise RuntimeOperationError(f"Cannot remove volume {name}: {e}") from e

    # Images

    def image_exists(self, reference: str) -> bool:
        try:
            self.client.images.get(reference)
            return True
        except ImageNotFound:
            return False

    def pull_image(self, reference: str) -> None:
        ref = ImageReference.parse(reference)
        logger.info("Pulling %s", ref.full_name)
        try:
            self.client.images.pull(reference)
        except (APIError, DockerException) as e:
            raise RuntimeOperationError(f"Pull of {ref.full_name} failed: {e}") from e

    def build_image(self, build: BuildContext, tag: str) -> str:
        logger.info("Building %s from %s", tag, build.context)
        try:
            image, _ = self.client.images.build(
                path=build.context,
                dockerfile=build.dockerfile,
                target=build.target,
                buildargs=build.args or None,
                tag=tag,
                rm=True,
            )
        except BuildError as e:
            raise RuntimeOperationError(f"Build of {tag} failed: {e.msg}") from e
        except (APIError, TypeError) as e:
            raise RuntimeOperationError(f"Build of {tag} failed: {e}") from e
        return image.id

    # Containers

    def create_container(self, spec: ContainerSpec) -> str:
        ports = {}
        for port in spec.ports:
            key = f"{port.container_port}/{port.protocol}"
            if port.host_ip:
                ports[key] = (port.host_ip, port.host_port)
            else:
                ports[key] = port.host_port

        mounts = [
            DockerMount(target=m.target, source=m.source, type=m.type, read_only=m.read_only)
            for m in spec.mounts
        ]

        options = dict(
            name=spec.name,
            command=spec.command or None,
            entrypoint=spec.entrypoint or None,
            environment=spec.environment,
            ports=ports,
            mounts=mounts,
            labels=spec.labels,
            working_dir=spec.working_dir,
            stdin_open=spec.stdin_open,
            tty=spec.tty,
        )
        if spec.restart_policy is not None:
            condition = spec.restart_policy.condition
            options["restart_policy"] = {
                "Name": condition.value,
                # The engine only accepts a retry count with on-failure
                "MaximumRetryCount": (
                    spec.restart_policy.max_retries if condition == RestartPolicyCondition.ON_FAILURE else 0
                ),
            }
        if spec.health_check is not None:
            hc = spec.health_check
            options["healthcheck"] = {
                "test": hc.test,
                "interval": int(hc.interval * NANOSECONDS),
                "timeout": int(hc.timeout * NANOSECONDS),
                "retries": hc.retries,
                "start_period": int(hc.start_period * NANOSECONDS),
            }

        networks = list(spec.networks.items())
        if networks:
            primary, aliases = networks[0]
            options["network"] = primary
            options["networking_config"] = {primary: self.client.api.create_endpoint_config(aliases=aliases)}

        try:
            container = self.client.containers.create(spec.image, **options)
        except (APIError, ImageNotFound) as e:
            raise RuntimeOperationError(f"Cannot create container {spec.name}: {e}") from e

        try:
            for network_name, aliases in networks[1:]:
                self.client.networks.get(network_name).connect(container, aliases=aliases)
        except APIError as e:
            self._discard(container)
            raise RuntimeOperationError(f"Cannot attach container {spec.name} to its networks: {e}") from e
        return container.id

    def _discard(self, container) -> None:
        try:
            container.remove(force=True)
        except APIError as e:
            logger.warning("Cannot remove half-created container %s: %s", container.id[:12], e)

    def start_container(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).start()
        except APIError as e:
            raise RuntimeOperationError(f"Cannot start container {container_id[:12]}: {e}") from e

    def inspect_container(self, container_id: str) -> Optional[ContainerRecord]:
        try:
            container = self.client.containers.get(container_id)
        except NotFound:
            return None
        return self._record(container)

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        try:
            self.client.containers.get(container_id).stop(timeout=timeout)
        except NotFound:
            logger.debug("Container %s already gone", container_id[:12])
        except APIError as e:
            raise RuntimeOperationError(f"Cannot stop container {container_id[:12]}: {e}") from e

    def remove_container(self, container_id: str) -> None:
        try:
            self.client.containers.get(container_id).remove(force=True)
        except NotFound:
            logger.debug("Container %s already removed", container_id[:12])
        except APIError as e:
            raise RuntimeOperationError(f"Cannot remove container {container_id[:12]}: {e}") from e

    def list_containers(self, project: str) -> List[ContainerRecord]:
        containers = self.client.containers.list(all=True, filters={"label": f"{PROJECT_LABEL}={project}"})
        return [self._record(c) for c in containers]

    def close(self) -> None:
        self.client.close()

    @staticmethod
    def _record(container) -> ContainerRecord:
        state = (container.attrs or {}).get("State") or {}
        health = state.get("Health") or {}
        return ContainerRecord(
            id=container.id,
            name=container.name,
            status=state.get("Status", container.status),
            exit_code=state.get("ExitCode"),
            health=health.get("Status"),
            started_at=state.get("StartedAt"),
            labels=container.labels or {},
        )
