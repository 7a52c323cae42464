"""
Volume provisioning for a deployment. Provisioning never deletes data; removal is explicit.
"""
import logging
from typing import Dict, Iterable, List

from ..errors import VolumeConflict
from ..MODELS.volume_definition import VolumeDefinition
from ..RUNTIMES.base import PROJECT_LABEL, VOLUME_LABEL, ContainerRuntime, VolumeRecord

logger = logging.getLogger(__name__)


class VolumeManager:
    """
    Creates named volumes on the runtime and removes them on request.
    """
    def __init__(self, runtime: ContainerRuntime, project: str):
        """
        Initializes the volume manager.

        :param runtime: The container runtime that stores the volumes.
        :param project: Name of the deployment owning the volumes.
        """
        self.runtime = runtime
        self.project = project

    def provision_volumes(self, volumes: Iterable[VolumeDefinition]) -> Dict[str, VolumeRecord]:
        """
        Idempotently creates each named volume. Existing volumes are reused as they are.

        :param volumes: The volumes of this deployment.
        :return: Mapping from descriptor volume name to the runtime record.
        :raises VolumeConflict: If a volume exists with another owner or driver,
            or an external volume is missing.
        """
        existing = {record.name: record for record in self.runtime.list_volumes()}
        provisioned = {}
        for volume in volumes:
            record = existing.get(volume.runtime_name)
            if volume.external:
                if record is None:
                    raise VolumeConflict(volume.name, f"external volume {volume.runtime_name} does not exist")
                provisioned[volume.name] = record
                continue

            if record is not None:
                if record.project not in (None, self.project):
                    raise VolumeConflict(volume.name, f"{volume.runtime_name} belongs to {record.project}")
                if record.driver != volume.driver:
                    raise VolumeConflict(
                        volume.name,
                        f"{volume.runtime_name} uses driver {record.driver}, not {volume.driver}",
                    )
                logger.debug("Volume %s already exists", volume.runtime_name)
                provisioned[volume.name] = record
                continue

            logger.info("Creating volume %s", volume.runtime_name)
            labels = dict(volume.labels)
            labels[PROJECT_LABEL] = self.project
            labels[VOLUME_LABEL] = volume.name
            record = self.runtime.create_volume(volume, labels)
            existing[record.name] = record
            provisioned[volume.name] = record
        return provisioned

    def remove_volumes(self, volumes: Iterable[VolumeDefinition]) -> List[str]:
        """
        Destroys the project-owned volumes and their data. External volumes are kept.

        :return: Runtime names of the removed volumes.
        """
        existing = {record.name: record for record in self.runtime.list_volumes()}
        removed = []
        for volume in volumes:
            record = existing.get(volume.runtime_name)
            if volume.external or record is None or record.project != self.project:
                continue
            logger.info("Removing volume %s", volume.runtime_name)
            self.runtime.remove_volume(volume.runtime_name)
            removed.append(volume.runtime_name)
        return removed
