"""
Resolution of a runnable image for each service: pull a reference or build a context.
"""
import logging
from enum import Enum

from ..errors import ImageResolutionError, RuntimeOperationError
from ..MODELS.service_definition import ServiceDefinition
from ..REGISTRY.image_reference import ImageReference
from ..RUNTIMES.base import ContainerRuntime

logger = logging.getLogger(__name__)


class PullPolicy(str, Enum):
    """When a pre-built image is pulled from its registry."""

    ALWAYS = "always"
    MISSING = "missing"
    NEVER = "never"


class ImageManager:
    """
    Materializes service images through the runtime. Failures are reported, not retried.
    """
    def __init__(self, runtime: ContainerRuntime, project: str, pull_policy: PullPolicy = PullPolicy.MISSING):
        """
        Initializes the image manager.

        :param runtime: The container runtime that stores images.
        :param project: Deployment name, used to tag images built without an explicit name.
        :param pull_policy: When to pull pre-built images.
        """
        self.runtime = runtime
        self.project = project
        self.pull_policy = PullPolicy(pull_policy)

    def image_tag(self, service: ServiceDefinition) -> str:
        """
        The reference a service's container will run.
        """
        if service.image:
            return service.image
        return f"{self.project}-{service.name}".lower()

    def materialize_image(self, service: ServiceDefinition) -> str:
        """
        Pulls or builds the image for a service.

        :param service: The service definition.
        :return: The image reference to create the container from.
        :raises ImageResolutionError: If the reference is invalid or the pull/build fails.
        """
        reference = self.image_tag(service)
        try:
            ImageReference.parse(reference)
        except ValueError as e:
            raise ImageResolutionError(service.name, reference, str(e)) from e

        if service.build is not None:
            logger.info("Building image %s for %s", reference, service.name)
            try:
                self.runtime.build_image(service.build, reference)
            except RuntimeOperationError as e:
                raise ImageResolutionError(service.name, reference, str(e)) from e
            return reference

        present = self.runtime.image_exists(reference)
        if self.pull_policy == PullPolicy.NEVER:
            if not present:
                raise ImageResolutionError(service.name, reference, "image is not present and pulling is disabled")
            return reference
        if present and self.pull_policy == PullPolicy.MISSING:
            logger.debug("Image %s already present", reference)
            return reference

        logger.info("Pulling image %s for %s", reference, service.name)
        try:
            self.runtime.pull_image(reference)
        except RuntimeOperationError as e:
            raise ImageResolutionError(service.name, reference, str(e)) from e
        return reference
