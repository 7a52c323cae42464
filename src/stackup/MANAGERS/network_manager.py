"""
Network provisioning for a deployment: create-if-absent over the runtime's network namespace.
"""
import logging
from typing import Dict, Iterable, List

from ..errors import NetworkConflict
from ..MODELS.network_definition import NetworkDefinition, check_subnet_overlaps
from ..RUNTIMES.base import NETWORK_LABEL, PROJECT_LABEL, ContainerRuntime, NetworkRecord

logger = logging.getLogger(__name__)


class NetworkManager:
    """
    Creates and removes the networks a deployment declares.
    """
    def __init__(self, runtime: ContainerRuntime, project: str):
        """
        Initializes the network manager.

        :param runtime: The container runtime that owns the networks.
        :param project: Name of the deployment owning the networks.
        """
        self.runtime = runtime
        self.project = project

    def _labels(self, network: NetworkDefinition) -> Dict[str, str]:
        labels = dict(network.labels)
        labels[PROJECT_LABEL] = self.project
        labels[NETWORK_LABEL] = network.name
        return labels

    def provision_networks(self, networks: Iterable[NetworkDefinition]) -> Dict[str, NetworkRecord]:
        """
        Idempotently creates each network.

        :param networks: The networks of this deployment.
        :return: Mapping from descriptor network name to the runtime record.
        :raises NetworkConflict: If a subnet overlaps another one in the descriptor,
            or a name or subnet is already taken by a different deployment.
        """
        networks = list(networks)
        check_subnet_overlaps(networks)

        existing = {record.name: record for record in self.runtime.list_networks()}
        provisioned = {}
        for network in networks:
            record = existing.get(network.runtime_name)
            if network.external:
                if record is None:
                    raise NetworkConflict(network.name, f"external network {network.runtime_name} does not exist")
                provisioned[network.name] = record
                continue

            if record is not None:
                if record.project != self.project:
                    owner = record.project or "another deployment"
                    raise NetworkConflict(network.name, f"{network.runtime_name} already exists and belongs to {owner}")
                logger.debug("Network %s already exists", network.runtime_name)
                provisioned[network.name] = record
                continue

            for other in existing.values():
                if other.project == self.project:
                    continue
                for subnet in other.subnets:
                    if network.overlaps(subnet):
                        raise NetworkConflict(
                            network.name,
                            f"subnet {network.subnet} overlaps {subnet} of existing network {other.name}",
                        )

            logger.info("Creating network %s", network.runtime_name)
            record = self.runtime.create_network(network, self._labels(network))
            existing[record.name] = record
            provisioned[network.name] = record
        return provisioned

    def remove_networks(self, networks: Iterable[NetworkDefinition]) -> List[str]:
        """
        Removes the project-owned networks; external ones are left alone.

        :return: Runtime names of the removed networks.
        """
        existing = {record.name: record for record in self.runtime.list_networks()}
        removed = []
        for network in networks:
            record = existing.get(network.runtime_name)
            if network.external or record is None or record.project != self.project:
                continue
            logger.info("Removing network %s", network.runtime_name)
            self.runtime.remove_network(network.runtime_name)
            removed.append(network.runtime_name)
        return removed
