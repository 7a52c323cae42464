"""
Models for virtual networks that service containers attach to.
"""
import ipaddress
from enum import Enum
from typing import Dict, Iterable, List, Optional
from pydantic import BaseModel, ConfigDict, field_validator, model_validator

from ..errors import NetworkConflict


class NetworkDriver(str, Enum):
    """
    Network drivers understood by the container runtime.
    """
    BRIDGE = "bridge"
    OVERLAY = "overlay"
    HOST = "host"
    NONE = "none"
    MACVLAN = "macvlan"


class NetworkDefinition(BaseModel):
    """
    A named network with optional IPAM addressing.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    external_name: Optional[str] = None
    driver: NetworkDriver = NetworkDriver.BRIDGE
    subnet: Optional[str] = None
    ip_range: Optional[str] = None
    attachable: bool = False
    external: bool = False
    labels: Dict[str, str] = {}

    @field_validator("subnet", "ip_range")
    @classmethod
    def _valid_cidr(cls, value):
        if value is None:
            return value
        return str(ipaddress.ip_network(value, strict=False))

    @model_validator(mode="after")
    def _range_within_subnet(self):
        if self.ip_range and self.subnet:
            if not ipaddress.ip_network(self.ip_range).subnet_of(ipaddress.ip_network(self.subnet)):
                raise ValueError(f"ip_range {self.ip_range} is not inside subnet {self.subnet}")
        return self

    @property
    def runtime_name(self) -> str:
        """Name of the network as seen by the runtime."""
        return self.external_name or self.name

    def overlaps(self, subnet: Optional[str]) -> bool:
        """
        Checks whether this network's subnet overlaps another CIDR.
        """
        if not self.subnet or not subnet:
            return False
        mine = ipaddress.ip_network(self.subnet)
        other = ipaddress.ip_network(subnet, strict=False)
        return mine.version == other.version and mine.overlaps(other)


def check_subnet_overlaps(networks: Iterable[NetworkDefinition]) -> None:
    """
    Ensures no two networks of one deployment claim overlapping subnets.

    :param networks: The networks of a single descriptor.
    :raises NetworkConflict: Naming the later network of the first clashing pair.
    """
    seen: List[NetworkDefinition] = []
    for network in networks:
        for other in seen:
            if network.overlaps(other.subnet):
                raise NetworkConflict(
                    network.name,
                    f"subnet {network.subnet} overlaps {other.subnet} of network '{other.name}'",
                )
        seen.append(network)
