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
Orchestration for multiple services: provisioning, ordered start, restart policy and teardown.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from tenacity import RetryError, Retrying, retry_if_result, stop_after_delay, wait_fixed

from ..errors import ImageResolutionError, RuntimeOperationError, StackupError, StartFailure
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.running_instance import InstanceState, RunningInstance
from ..MODELS.service_definition import DependencyCondition, RestartPolicyCondition, ServiceDefinition
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNTIMES.base import PROJECT_LABEL, SERVICE_LABEL, ContainerRecord, ContainerRuntime, ContainerSpec, Mount
from .image_manager import ImageManager, PullPolicy
from .network_manager import NetworkManager
from .volume_manager import VolumeManager

logger = logging.getLogger(__name__)

_PENDING_STATUSES = ("created", "starting", "restarting")
_EXITED_STATUSES = ("exited", "dead", "removing")


@dataclass
class UpResult:
    """Outcome of bringing a deployment up."""

    order: List[str] = field(default_factory=list)
    started: List[str] = field(default_factory=list)
    failed: Dict[str, StackupError] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)  # service -> failed dependency

    @property
    def ok(self) -> bool:
        return not self.failed and not self.skipped

    @property
    def first_error(self) -> Optional[StackupError]:
        return next(iter(self.failed.values()), None)


class ServiceOrchestrator:
    """
    Orchestrates multiple services based on their dependencies.

    The orchestrator is the only owner of the RunningInstance set; the restart
    monitor and the CLI read it through ``ps`` and ``poll_instances``.
    """
    def __init__(self,
                 config: OrchestrationConfig,
                 runtime: ContainerRuntime,
                 pull_policy: PullPolicy = PullPolicy.MISSING,
                 max_restarts: int = 5,
                 start_timeout: float = 60.0,
                 poll_interval: float = 0.5,
                 parallel: bool = True,
                 max_workers: int = 4):
        """
        Initializes the orchestrator.

        :param config: Validated configuration for all services.
        :param runtime: The container runtime to drive.
        :param pull_policy: When pre-built images are pulled.
        :param max_restarts: Restart ceiling for services whose policy sets none.
        :param start_timeout: Seconds a container may take to reach running.
        :param poll_interval: Seconds between state polls while waiting.
        :param parallel: Start independent services concurrently.
        :param max_workers: Upper bound on concurrent starts.
        """
        self.config = config
        self.runtime = runtime
        self.project = config.project_name
        self.max_restarts = max(1, max_restarts)
        self.start_timeout = start_timeout
        self.poll_interval = poll_interval
        self.parallel = parallel
        self.max_workers = max(1, max_workers)

        self.resolver = DependencyResolver()
        self.network_manager = NetworkManager(runtime, self.project)
        self.volume_manager = VolumeManager(runtime, self.project)
        self.image_manager = ImageManager(runtime, self.project, pull_policy)

        self.instances: Dict[str, RunningInstance] = {}
        self._lock = threading.RLock()

    # Provisioning

    def provision_networks(self):
        """Creates the descriptor's networks, reusing ones this project already owns."""
        return self.network_manager.provision_networks(self.config.networks.values())

    def provision_volumes(self):
        """Creates the descriptor's volumes without touching existing data."""
        return self.volume_manager.provision_volumes(self.config.volumes.values())

    def materialize_image(self, service: ServiceDefinition) -> str:
        """Pulls or builds the image of a service."""
        return self.image_manager.materialize_image(service)

    # Starting

    def container_name(self, service: ServiceDefinition) -> str:
        return service.container_name or f"{self.project}-{service.name}-1"

    def container_spec(self, service: ServiceDefinition, image: str, detach: bool = False) -> ContainerSpec:
        """
        Translates a service definition into what the runtime needs to create its container.

        :param service: The service definition.
        :param image: The materialized image reference.
        :param detach: Whether restarts are handed over to the runtime.
        """
        mounts = []
        for m in service.volumes:
            source = m.source
            if m.type == "volume" and source:
                source = self.config.volumes[source].runtime_name
            mounts.append(Mount(type=m.type, source=source, target=m.target, read_only=m.read_only))

        networks = {}
        for name, aliases in service.networks.items():
            runtime_aliases = [service.name] + [a for a in aliases if a != service.name]
            networks[self.config.networks[name].runtime_name] = runtime_aliases

        labels = dict(service.labels)
        labels[PROJECT_LABEL] = self.project
        labels[SERVICE_LABEL] = service.name

        return ContainerSpec(
            name=self.container_name(service),
            service=service.name,
            project=self.project,
            image=image,
            command=list(service.command),
            entrypoint=list(service.entrypoint),
            environment=dict(service.environment),
            ports=list(service.ports),
            mounts=mounts,
            networks=networks,
            labels=labels,
            working_dir=service.working_dir,
            stdin_open=service.stdin_open,
            tty=service.tty,
            health_check=service.health_check,
            restart_policy=service.restart_policy if detach else None,
        )

    def start_service(self, service: ServiceDefinition, position: Optional[int] = None,
                      detach: bool = False) -> RunningInstance:
        """
        Creates and starts the container of one service and waits until it runs.

        :param service: The service definition.
        :param position: Index of the service in the resolved start order, for logging.
        :param detach: Whether restarts are handed over to the runtime.
        :return: The running instance.
        :raises StartFailure: If a dependency is not satisfied, or the container never
            reaches running within the restart ceiling.
        :raises ImageResolutionError: If the image cannot be pulled or built.
        """
        for dep, condition in service.depends_on.items():
            self._wait_for_dependency(service.name, dep, condition)

        step = f"[{position + 1}/{len(self.config.services)}] " if position is not None else ""
        logger.info("%sStarting service %s", step, service.name)

        try:
            image = self.materialize_image(service)
        except ImageResolutionError as e:
            self._record_failure(service.name, None, str(e))
            raise

        adopted = self._adopt_running(service)
        if adopted is not None:
            logger.info("Service %s is already running (%s)", service.name, adopted.short_id)
            return adopted

        spec = self.container_spec(service, image, detach=detach)
        try:
            container_id = self.runtime.create_container(spec)
        except RuntimeOperationError as e:
            self._record_failure(service.name, None, str(e))
            raise StartFailure(service.name, str(e)) from e

        instance = RunningInstance(service_name=service.name, container_id=container_id)
        with self._lock:
            self.instances[service.name] = instance

        try:
            self.runtime.start_container(container_id)
        except RuntimeOperationError as e:
            with self._lock:
                instance.state = InstanceState.FAILED
                instance.error = str(e)
            raise StartFailure(service.name, str(e)) from e
        with self._lock:
            instance.state = InstanceState.STARTING

        while True:
            record = self._wait_until_settled(instance)
            if record is not None and record.status == "running":
                with self._lock:
                    instance.mark_started()
                logger.info("Service %s is running (%s)", service.name, instance.short_id)
                return instance
            if record is None:
                with self._lock:
                    instance.state = InstanceState.FAILED
                    instance.error = f"did not reach running within {self.start_timeout}s"
                raise StartFailure(service.name, instance.error)

            exit_code = record.exit_code
            logger.warning("Service %s exited with code %s while starting", service.name, exit_code)
            if not self.apply_restart_policy(instance, exit_code):
                raise StartFailure(service.name, f"exited with code {exit_code}", exit_code=exit_code)

    def _record_failure(self, name: str, container_id: Optional[str], error: str) -> None:
        with self._lock:
            instance = self.instances.setdefault(name, RunningInstance(service_name=name))
            instance.container_id = container_id
            instance.state = InstanceState.FAILED
            instance.error = error

    def _adopt_running(self, service: ServiceDefinition) -> Optional[RunningInstance]:
        """
        Reuses a running container left by an earlier ``up``; removes a stale one.
        """
        for record in self.runtime.list_containers(self.project):
            if record.service != service.name:
                continue
            if record.status == "running":
                instance = RunningInstance(service_name=service.name, container_id=record.id)
                instance.mark_started()
                if record.started_at:
                    instance.started_at = record.started_at
                with self._lock:
                    self.instances[service.name] = instance
                return instance
            logger.debug("Removing stale container %s of %s", record.id[:12], service.name)
            self.runtime.remove_container(record.id)
        return None

    def _poll(self, instance: RunningInstance) -> Optional[ContainerRecord]:
        return self.runtime.inspect_container(instance.container_id)

    def _wait_until_settled(self, instance: RunningInstance) -> Optional[ContainerRecord]:
        """
        Polls a container until it is running or has exited.

        :return: The last record, or None when the start timeout elapsed.
        """
        def pending(record: Optional[ContainerRecord]) -> bool:
            return record is not None and record.status in _PENDING_STATUSES

        retrying = Retrying(
            stop=stop_after_delay(self.start_timeout),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(pending),
        )
        try:
            record = retrying(self._poll, instance)
        except RetryError:
            return None
        if record is None:
            return ContainerRecord(id=instance.container_id or "", name=instance.service_name, status="exited")
        return record

    def _wait_for_dependency(self, name: str, dep: str, condition: DependencyCondition) -> None:
        """
        Ensures a dependency's instance is running (and healthy when required).

        :raises StartFailure: If the dependency is not running or never turns healthy.
        """
        with self._lock:
            instance = self.instances.get(dep)
        if instance is None or instance.state != InstanceState.RUNNING:
            raise StartFailure(name, f"dependency '{dep}' is not running")

        dep_service = self.config.services[dep]
        if condition != DependencyCondition.SERVICE_HEALTHY or dep_service.health_check is None:
            return

        logger.info("Waiting for %s to become healthy", dep)
        retrying = Retrying(
            stop=stop_after_delay(self.start_timeout),
            wait=wait_fixed(self.poll_interval),
            retry=retry_if_result(lambda record: record is not None and record.health in (None, "starting")),
        )
        try:
            record = retrying(self._poll, instance)
        except RetryError:
            raise StartFailure(name, f"dependency '{dep}' did not become healthy in time") from None
        if record is None or record.health != "healthy":
            raise StartFailure(name, f"dependency '{dep}' is unhealthy")

    # Restart policy

    def _restart_limit(self, service: ServiceDefinition) -> int:
        return service.restart_policy.max_retries or self.max_restarts

    def apply_restart_policy(self, instance: RunningInstance, exit_code: Optional[int]) -> bool:
        """
        Decides whether an exited instance is restarted and restarts it if so.

        :param instance: The instance whose process exited.
        :param exit_code: The process exit code, None if unknown.
        :return: True if the instance was restarted.
        """
        service = self.config.services[instance.service_name]
        policy = service.restart_policy
        condition = policy.condition

        with self._lock:
            instance.exit_code = exit_code
            if instance.stopped_by_operator or condition == RestartPolicyCondition.NO:
                instance.state = InstanceState.EXITED
                return False
            if condition == RestartPolicyCondition.ON_FAILURE and exit_code == 0:
                instance.state = InstanceState.EXITED
                return False

            limit = self._restart_limit(service)
            if instance.restart_count >= limit:
                instance.state = InstanceState.FAILED
                instance.error = f"exceeded {limit} restart attempts"
                logger.error("Service %s exceeded %d restart attempts", service.name, limit)
                return False

            instance.state = InstanceState.RESTARTING
            instance.restart_count += 1

        if policy.delay > 0:
            time.sleep(policy.delay)

        logger.info("Restarting service %s (attempt %d)", service.name, instance.restart_count)
        try:
            self.runtime.start_container(instance.container_id)
        except RuntimeOperationError as e:
            with self._lock:
                instance.state = InstanceState.FAILED
                instance.error = str(e)
            logger.error("Failed to restart %s: %s", service.name, e)
            return False
        with self._lock:
            instance.state = InstanceState.STARTING
        return True

    def poll_instances(self) -> Dict[str, InstanceState]:
        """
        Reconciles instance states with the runtime and applies restart policies to exits.

        :return: The state of every tracked instance after reconciliation.
        """
        with self._lock:
            instances = list(self.instances.values())

        for instance in instances:
            if instance.state not in (InstanceState.RUNNING, InstanceState.STARTING) or instance.stopped_by_operator:
                continue
            record = self._poll(instance)
            if record is not None and record.status == "running":
                if instance.state == InstanceState.STARTING:
                    with self._lock:
                        instance.mark_started()
                continue
            if record is not None and record.status in _PENDING_STATUSES:
                continue
            exit_code = record.exit_code if record is not None else None
            logger.warning("Service %s exited with code %s", instance.service_name, exit_code)
            self.apply_restart_policy(instance, exit_code)

        with self._lock:
            return {name: instance.state for name, instance in self.instances.items()}

    # Deployment

    def up(self, detach: bool = False) -> UpResult:
        """
        Provisions networks and volumes, then starts all services in dependency order.

        Resolver and provisioning errors are raised. Image and start failures are
        collected per service; dependents of a failed service are skipped and the
        services already started are left running.

        :param detach: Whether restarts are handed over to the runtime.
        :raises CyclicDependency: If depends_on forms a cycle.
        :raises NetworkConflict: If a network cannot be provisioned.
        :raises VolumeConflict: If a volume cannot be provisioned.
        """
        self.config.check_integrity()
        result = UpResult(order=self.resolver.resolve_order(self.config))
        logger.info("Starting services in order: %s", ", ".join(result.order))

        # Networks and volumes are independent; both must finish before any start
        with ThreadPoolExecutor(max_workers=2) as pool:
            networks = pool.submit(self.provision_networks)
            volumes = pool.submit(self.provision_volumes)
        networks.result()
        volumes.result()

        position = {name: index for index, name in enumerate(result.order)}
        if self.parallel:
            batches = self.resolver.resolve_levels(self.config)
        else:
            batches = [[name] for name in result.order]

        for batch in batches:
            runnable = [name for name in batch if name not in result.skipped]
            if len(runnable) > 1:
                with ThreadPoolExecutor(max_workers=min(self.max_workers, len(runnable))) as pool:
                    futures = {
                        name: pool.submit(self.start_service, self.config.services[name], position[name], detach)
                        for name in runnable
                    }
                outcomes = [(name, futures[name].exception()) for name in runnable]
            else:
                outcomes = [(name, self._start_capturing(name, position[name], detach)) for name in runnable]

            for name, error in outcomes:
                if error is None:
                    result.started.append(name)
                    continue
                if not isinstance(error, StackupError):
                    raise error
                logger.error("%s", error)
                result.failed[name] = error
                for dependent in sorted(self.resolver.dependents_of(self.config, name)):
                    result.skipped.setdefault(dependent, name)

        for name, cause in result.skipped.items():
            logger.warning("Skipped %s because %s failed", name, cause)
        return result

    def _start_capturing(self, name: str, position: int, detach: bool) -> Optional[BaseException]:
        try:
            self.start_service(self.config.services[name], position, detach)
        except StackupError as e:
            return e
        return None

    def down(self, remove_volumes: bool = False) -> List[str]:
        """
        Stops all services in reverse dependency order, then releases networks and,
        when asked, volumes.

        :param remove_volumes: Also destroy the named volumes and their data.
        :return: Names of the services whose containers were removed.
        """
        self.refresh()
        stopped = []
        for name in self.resolver.shutdown_order(self.config):
            with self._lock:
                instance = self.instances.get(name)
            if instance is None or not instance.container_id:
                continue
            with self._lock:
                instance.stopped_by_operator = True
            logger.info("Stopping service %s", name)
            self.runtime.stop_container(instance.container_id)
            self.runtime.remove_container(instance.container_id)
            with self._lock:
                instance.state = InstanceState.EXITED
            stopped.append(name)

        for record in self.runtime.list_containers(self.project):
            logger.info("Removing orphan container %s", record.name)
            self.runtime.stop_container(record.id)
            self.runtime.remove_container(record.id)

        self.network_manager.remove_networks(self.config.networks.values())
        if remove_volumes:
            self.volume_manager.remove_volumes(self.config.volumes.values())

        with self._lock:
            self.instances.clear()
        return stopped

    def refresh(self) -> None:
        """
        Adopts containers the runtime knows for this project and syncs their state.
        """
        for record in self.runtime.list_containers(self.project):
            name = record.service
            if name is None:
                continue
            with self._lock:
                instance = self.instances.get(name)
                if instance is None or instance.container_id != record.id:
                    instance = RunningInstance(service_name=name, container_id=record.id, started_at=record.started_at)
                    self.instances[name] = instance
                if instance.state in (InstanceState.FAILED, InstanceState.RESTARTING):
                    continue
                instance.state = _state_from_status(record.status)
                instance.exit_code = record.exit_code

    def ps(self) -> List[RunningInstance]:
        """
        Returns the instances of all services, in start order.
        """
        self.refresh()
        order = {name: index for index, name in enumerate(self.resolver.resolve_order(self.config))}
        with self._lock:
            return sorted(self.instances.values(), key=lambda i: (order.get(i.service_name, len(order)), i.service_name))


def _state_from_status(status: str) -> InstanceState:
    if status == "running":
        return InstanceState.RUNNING
    if status == "restarting":
        return InstanceState.RESTARTING
    if status == "created":
        return InstanceState.CREATED
    if status in _EXITED_STATUSES:
        return InstanceState.EXITED
    return InstanceState.STARTING
