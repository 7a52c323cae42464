"""
Models for named persistent volumes.
"""
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict


class VolumeDefinition(BaseModel):
    """
    A named storage unit that survives container recreation.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    external_name: Optional[str] = None
    driver: str = "local"
    driver_opts: Dict[str, str] = {}
    external: bool = False
    labels: Dict[str, str] = {}

    @property
    def runtime_name(self) -> str:
        """Name of the volume as seen by the runtime."""
        return self.external_name or self.name
