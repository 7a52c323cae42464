"""
Models for overall orchestration configuration.
"""
from typing import Dict
from pydantic import BaseModel, ConfigDict

from ..errors import UnknownReference
from .network_definition import NetworkDefinition, check_subnet_overlaps
from .service_definition import ServiceDefinition
from .volume_definition import VolumeDefinition


class OrchestrationConfig(BaseModel):
    """
    Complete configuration for a multi-service stack.
    Equivalent to a parsed docker-compose.yml file.
    """
    model_config = ConfigDict(frozen=True)

    project_name: str = "default"
    services: Dict[str, ServiceDefinition]
    networks: Dict[str, NetworkDefinition] = {}
    volumes: Dict[str, VolumeDefinition] = {}

    def check_integrity(self) -> "OrchestrationConfig":
        """
        Validates references between services, networks and volumes.

        :return: The same configuration, for chaining.
        :raises UnknownReference: If a service names something undefined.
        :raises NetworkConflict: If two networks claim overlapping subnets.
        :raises CyclicDependency: If depends_on forms a cycle.
        """
        for name, svc in self.services.items():
            for dep in svc.depends_on:
                if dep not in self.services:
                    raise UnknownReference(name, "service", dep)
            for network in svc.networks:
                if network not in self.networks:
                    raise UnknownReference(name, "network", network)
            for volume in svc.named_volumes():
                if volume not in self.volumes:
                    raise UnknownReference(name, "volume", volume)

        check_subnet_overlaps(self.networks.values())

        from ..RUNNERS.dependency_resolver import DependencyResolver
        DependencyResolver().resolve_order(self)
        return self
