"""
Shared fixtures: an in-memory runtime and a factory for validated configurations.
"""
import pytest

from stackup.MODELS.network_definition import NetworkDefinition
from stackup.MODELS.orchestration_config import OrchestrationConfig
from stackup.MODELS.service_definition import ServiceDefinition
from stackup.MODELS.volume_definition import VolumeDefinition
from stackup.RUNTIMES.memory_runtime import InMemoryRuntime


@pytest.fixture
def runtime():
    return InMemoryRuntime()


@pytest.fixture
def make_config():
    """
    Builds an OrchestrationConfig from plain keyword dictionaries.

    Services default to an ``<name>:latest`` image; networks and volumes get
    ``<project>_<name>`` runtime names unless given.
    """
    def factory(services, networks=None, volumes=None, project="test"):
        return OrchestrationConfig(
            project_name=project,
            services={
                name: ServiceDefinition(name=name, **{"image": f"{name}:latest", **(spec or {})})
                for name, spec in services.items()
            },
            networks={
                name: NetworkDefinition(name=name, **{"external_name": f"{project}_{name}", **(spec or {})})
                for name, spec in (networks or {}).items()
            },
            volumes={
                name: VolumeDefinition(name=name, **{"external_name": f"{project}_{name}", **(spec or {})})
                for name, spec in (volumes or {}).items()
            },
        )
    return factory
