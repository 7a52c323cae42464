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
Exception hierarchy for descriptor loading, provisioning and service startup.

Every error carries the name of the resource responsible for it so that the
CLI can report it to the operator as-is.
"""
from typing import Iterable, List, Optional


class StackupError(Exception):
    """Base class for all errors raised by stackup."""

    def __init__(self, message: str, resource: Optional[str] = None):
        super().__init__(message)
        self.resource = resource


class DescriptorError(StackupError):
    """The deployment descriptor could not be read or is malformed."""

    pass


class UnknownReference(DescriptorError):
    """A service references a service, network or volume that is not defined."""

    def __init__(self, owner: str, kind: str, name: str):
        super().__init__(f"Service '{owner}' references undefined {kind} '{name}'", resource=name)
        self.owner = owner
        self.kind = kind
        self.name = name


class CyclicDependency(StackupError):
    """The depends_on relation between services contains a cycle."""

    def __init__(self, services: Iterable[str]):
        self.services: List[str] = sorted(services)
        super().__init__(
            f"Circular dependency detected between services: {', '.join(self.services)}",
            resource=self.services[0] if self.services else None,
        )


class NetworkConflict(StackupError):
    """A requested network clashes with another network by name or subnet."""

    def __init__(self, network: str, reason: str):
        super().__init__(f"Network '{network}' conflicts: {reason}", resource=network)
        self.network = network


class VolumeConflict(StackupError):
    """A requested volume clashes with an existing volume."""

    def __init__(self, volume: str, reason: str):
        super().__init__(f"Volume '{volume}' conflicts: {reason}", resource=volume)
        self.volume = volume


class ImageResolutionError(StackupError):
    """An image could not be pulled or built for a service."""

    def __init__(self, service: str, reference: str, reason: str):
        super().__init__(
            f"Cannot resolve image '{reference}' for service '{service}': {reason}",
            resource=service,
        )
        self.service = service
        self.reference = reference


class StartFailure(StackupError):
    """A service container did not reach the running state."""

    def __init__(self, service: str, reason: str, exit_code: Optional[int] = None):
        super().__init__(f"Service '{service}' failed to start: {reason}", resource=service)
        self.service = service
        self.exit_code = exit_code


class RuntimeOperationError(StackupError):
    """The underlying container runtime rejected an operation."""

    pass
