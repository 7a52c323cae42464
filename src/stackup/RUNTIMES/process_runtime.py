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
Host process runtime: each service command runs as a native process.

Named volumes are directories under ``<state_dir>/volumes`` and survive
between runs. Networks only exist for the lifetime of this process, and
images are bookkeeping entries since nothing is unpacked.
"""
import json
import logging
import os
import shutil
import subprocess
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from ..errors import RuntimeOperationError
from ..MODELS.network_definition import NetworkDefinition
from ..MODELS.service_definition import BuildContext
from ..MODELS.volume_definition import VolumeDefinition
from ..RUNNERS.process_runner import ProcessRunner
from .base import ContainerRecord, ContainerRuntime, ContainerSpec, NetworkRecord, VolumeRecord

logger = logging.getLogger(__name__)

VOLUME_METADATA = ".stackup-volume.json"


def full_command(entrypoint: List[str], cmd: List[str]) -> List[str]:
    """
    Combines entrypoint and command: a set entrypoint is the executable and the
    command becomes its arguments.
    """
    if entrypoint:
        return entrypoint + cmd
    return list(cmd)


@dataclass
class _ProcessContainer:
    spec: ContainerSpec
    runner: ProcessRunner
    started: float = 0.0
    started_at: Optional[str] = None


class ProcessRuntime(ContainerRuntime):
    """
    Runs services as host processes with container-like bookkeeping.
    """

    name = "process"

    def __init__(self, base_dir: str = ".", state_dir: str = ".stackup"):
        """
        Initializes the runtime.

        :param base_dir: The base directory for resolving relative paths.
        :param state_dir: Directory, relative to base_dir, for logs, volumes and mounts.
        """
        self.base_dir = os.path.abspath(base_dir)
        self.state_dir = os.path.join(self.base_dir, state_dir)
        self.volumes_root = os.path.join(self.state_dir, "volumes")
        self.logs_root = os.path.join(self.state_dir, "logs")
        os.makedirs(self.volumes_root, exist_ok=True)

        self._networks: Dict[str, NetworkRecord] = {}
        self._images: Set[str] = set()
        self._containers: Dict[str, _ProcessContainer] = {}

    def supports_detach(self) -> bool:
        return False

    # Networks

    def list_networks(self) -> List[NetworkRecord]:
        return list(self._networks.values())

    def create_network(self, network: NetworkDefinition, labels: Dict[str, str]) -> NetworkRecord:
        if network.runtime_name in self._networks:
            raise RuntimeOperationError(f"Network {network.runtime_name} already exists")
        record = NetworkRecord(
            name=network.runtime_name,
            id=uuid.uuid4().hex,
            driver=network.driver.value,
            subnets=[network.subnet] if network.subnet else [],
            labels=dict(labels),
        )
        self._networks[record.name] = record
        return record

    def remove_network(self, name: str) -> None:
        self._networks.pop(name, None)

    # Volumes

    def _volume_path(self, name: str) -> str:
        return os.path.join(self.volumes_root, name)

    def list_volumes(self) -> List[VolumeRecord]:
        records = []
        for name in sorted(os.listdir(self.volumes_root)):
            meta_path = os.path.join(self._volume_path(name), VOLUME_METADATA)
            if not os.path.isfile(meta_path):
                continue
            with open(meta_path, 'r') as f:
                meta = json.load(f)
            records.append(VolumeRecord(name=name, driver=meta.get("driver", "local"), labels=meta.get("labels", {})))
        return records

    def create_volume(self, volume: VolumeDefinition, labels: Dict[str, str]) -> VolumeRecord:
        if volume.driver != "local":
            raise RuntimeOperationError(f"Volume driver {volume.driver} is not supported by the process runtime")
        path = self._volume_path(volume.runtime_name)
        os.makedirs(path, exist_ok=True)
        with open(os.path.join(path, VOLUME_METADATA), 'w') as f:
            json.dump({"driver": volume.driver, "labels": labels}, f)
        return VolumeRecord(name=volume.runtime_name, driver=volume.driver, labels=dict(labels))

    def remove_volume(self, name: str) -> None:
        path = self._volume_path(name)
        if os.path.isdir(path):
            shutil.rmtree(path)

    # Images

    def image_exists(self, reference: str) -> bool:
        return reference in self._images

    def pull_image(self, reference: str) -> None:
        logger.debug("Process runtime records image %s without pulling", reference)
        self._images.add(reference)

    def build_image(self, build: BuildContext, tag: str) -> str:
        context = os.path.join(self.base_dir, build.context)
        if not os.path.isdir(context):
            raise RuntimeOperationError(f"Build context {context} does not exist")
        dockerfile = os.path.join(context, build.dockerfile or "Dockerfile")
        if not os.path.isfile(dockerfile):
            raise RuntimeOperationError(f"Dockerfile {dockerfile} does not exist")
        self._images.add(tag)
        return tag

    # Containers

    def create_container(self, spec: ContainerSpec) -> str:
        if not full_command(spec.entrypoint, spec.command):
            raise RuntimeOperationError(f"Service {spec.service} has no command to run as a process")
        for existing in self._containers.values():
            if existing.spec.name == spec.name:
                raise RuntimeOperationError(f"Container name {spec.name} is already in use")
        container_id = uuid.uuid4().hex
        log_path = os.path.join(self.logs_root, f"{spec.service}.log")
        self._containers[container_id] = _ProcessContainer(spec=spec, runner=ProcessRunner(spec.name, log_file=log_path))
        return container_id

    def _get(self, container_id: str) -> _ProcessContainer:
        try:
            return self._containers[container_id]
        except KeyError:
            raise RuntimeOperationError(f"No such container: {container_id[:12]}") from None

    def start_container(self, container_id: str) -> None:
        container = self._get(container_id)
        spec = container.spec
        env = os.environ.copy()
        env.update(spec.environment)
        working_dir = self._prepare_mounts(spec)
        try:
            container.runner.start(full_command(spec.entrypoint, spec.command), env=env, working_dir=working_dir)
        except OSError as e:
            raise RuntimeOperationError(f"Cannot start {spec.name}: {e}") from e
        container.started = time.monotonic()
        container.started_at = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")

    def _prepare_mounts(self, spec: ContainerSpec) -> str:
        """
        Links each mount source into a per-service root and returns the working directory.
        """
        root = os.path.join(self.state_dir, "mounts", spec.service)
        os.makedirs(root, exist_ok=True)
        for mount in spec.mounts:
            if mount.type == "tmpfs" or not mount.source:
                continue
            source = self._volume_path(mount.source) if mount.type == "volume" else mount.source
            target = os.path.join(root, mount.target.lstrip("/\\"))
            os.makedirs(os.path.dirname(target), exist_ok=True)
            if os.path.islink(target):
                if os.path.realpath(target) == os.path.realpath(source):
                    continue
                os.unlink(target)
            os.makedirs(source, exist_ok=True)
            try:
                os.symlink(source, target, target_is_directory=os.path.isdir(source))
            except OSError as e:
                logger.warning("Cannot link %s -> %s: %s", source, target, e)
        if spec.working_dir:
            return os.path.join(root, spec.working_dir.lstrip("/\\"))
        return self.base_dir

    def inspect_container(self, container_id: str) -> Optional[ContainerRecord]:
        container = self._containers.get(container_id)
        if container is None:
            return None
        runner = container.runner
        if runner.is_running():
            status = "running"
        elif runner.process is None:
            status = "created"
        else:
            status = "exited"
        health = None
        if status == "running" and container.spec.health_check is not None:
            health = self._health(container)
        return ContainerRecord(
            id=container_id,
            name=container.spec.name,
            status=status,
            exit_code=runner.get_exit_code(),
            health=health,
            started_at=container.started_at,
            labels=dict(container.spec.labels),
        )

    def _health(self, container: _ProcessContainer) -> str:
        """
        Runs the declared health check command on the host.
        """
        hc = container.spec.health_check
        if time.monotonic() - container.started < hc.start_period:
            return "starting"
        test = hc.test
        if not test or test[0] == "NONE":
            return "healthy"
        use_shell = test[0] == "CMD-SHELL"
        if test[0] == "CMD":
            command = test[1:]
        elif use_shell:
            command = " ".join(test[1:])
        else:
            command = test
        env = os.environ.copy()
        env.update(container.spec.environment)
        try:
            result = subprocess.run(command, shell=use_shell, env=env, capture_output=True, timeout=hc.timeout)
        except subprocess.TimeoutExpired:
            return "unhealthy"
        except OSError as e:
            logger.debug("Health check for %s could not run: %s", container.spec.name, e)
            return "unhealthy"
        return "healthy" if result.returncode == 0 else "unhealthy"

    def stop_container(self, container_id: str, timeout: int = 10) -> None:
        container = self._containers.get(container_id)
        if container is not None:
            container.runner.stop(timeout=timeout)

    def remove_container(self, container_id: str) -> None:
        container = self._containers.pop(container_id, None)
        if container is not None:
            container.runner.stop(timeout=1)

    def list_containers(self, project: str) -> List[ContainerRecord]:
        records = []
        for container_id, container in list(self._containers.items()):
            if container.spec.project == project:
                records.append(self.inspect_container(container_id))
        return records

    def close(self) -> None:
        for container in self._containers.values():
            container.runner.stop()
