"""
Models for defining services, including restart policies, health checks, ports and mounts.
"""
from typing import List, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from enum import Enum


class RestartPolicyCondition(str, Enum):
    """
    Conditions under which a service should be restarted.
    """
    NO = "no"
    ALWAYS = "always"
    ON_FAILURE = "on-failure"
    UNLESS_STOPPED = "unless-stopped"

    @classmethod
    def _missing_(cls, value):
        aliases = {
            "never": cls.NO,
            "none": cls.NO,
            "false": cls.NO,
            "onfailure": cls.ON_FAILURE,
            "on_failure": cls.ON_FAILURE,
            "unlessstopped": cls.UNLESS_STOPPED,
            "unless_stopped": cls.UNLESS_STOPPED,
            "any": cls.ALWAYS,
        }
        if isinstance(value, bool):
            return cls.ALWAYS if value else cls.NO
        if isinstance(value, str):
            return aliases.get(value.lower())
        return None


class RestartPolicy(BaseModel):
    """
    Defines how a service should be restarted on failure or exit.

    ``max_retries`` of 0 defers to the operator's ceiling.
    """
    model_config = ConfigDict(frozen=True)

    condition: RestartPolicyCondition = RestartPolicyCondition.NO
    max_retries: int = 0
    delay: float = 0.0


class HealthCheck(BaseModel):
    """
    Defines a command to run to check the health of a service.
    """
    model_config = ConfigDict(frozen=True)

    test: List[str]
    interval: float = 30.0
    timeout: float = 30.0
    retries: int = 3
    start_period: float = 0.0


class DependencyCondition(str, Enum):
    """
    What a dependent service waits for before it is started.
    """
    SERVICE_STARTED = "service_started"
    SERVICE_HEALTHY = "service_healthy"


class PortMapping(BaseModel):
    """
    A container port published on the host.
    """
    model_config = ConfigDict(frozen=True)

    container_port: int
    host_port: Optional[int] = None
    host_ip: Optional[str] = None
    protocol: str = "tcp"

    @field_validator("container_port", "host_port")
    @classmethod
    def _valid_port(cls, value):
        if value is not None and not 0 < value < 65536:
            raise ValueError(f"port {value} is out of range")
        return value

    def __str__(self) -> str:
        prefix = f"{self.host_ip}:" if self.host_ip else ""
        host = f"{self.host_port}:" if self.host_port is not None else ""
        return f"{prefix}{host}{self.container_port}/{self.protocol}"


class VolumeMount(BaseModel):
    """
    Defines a mapping between a named volume or host path and a path in the container.
    """
    model_config = ConfigDict(frozen=True)

    type: str = "volume"
    source: Optional[str] = None
    target: str
    read_only: bool = False


class BuildContext(BaseModel):
    """
    Local build instructions for a service image.
    """
    model_config = ConfigDict(frozen=True)

    context: str = "."
    dockerfile: Optional[str] = None
    target: Optional[str] = None
    args: Dict[str, str] = {}


class ServiceDefinition(BaseModel):
    """
    The full definition of a single service, translated from the deployment descriptor.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    image: Optional[str] = None
    build: Optional[BuildContext] = None
    container_name: Optional[str] = None

    # Execution
    command: List[str] = []
    entrypoint: List[str] = []
    working_dir: Optional[str] = None
    stdin_open: bool = False
    tty: bool = False

    # Environment
    environment: Dict[str, str] = {}
    env_files: List[str] = []

    # Networking
    ports: List[PortMapping] = []
    networks: Dict[str, List[str]] = {}  # {network: aliases}

    # Storage
    volumes: List[VolumeMount] = []

    # Lifecycle
    restart_policy: RestartPolicy = Field(default_factory=RestartPolicy)
    health_check: Optional[HealthCheck] = None
    depends_on: Dict[str, DependencyCondition] = {}

    # Metadata
    labels: Dict[str, str] = {}

    @model_validator(mode="after")
    def _image_or_build(self):
        if not self.image and self.build is None:
            raise ValueError(f"service '{self.name}' needs either an image or a build context")
        return self

    def named_volumes(self) -> List[str]:
        """
        Names of the descriptor volumes this service mounts.
        """
        return [m.source for m in self.volumes if m.type == "volume" and m.source]
