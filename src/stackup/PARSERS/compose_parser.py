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
Parser for compose-style deployment descriptors.
"""
import logging
import os
import re
import shlex
from typing import Dict, Any, List, Optional, Mapping

import yaml
from dotenv import dotenv_values
from pydantic import ValidationError

from ..errors import DescriptorError
from ..MODELS.network_definition import NetworkDefinition
from ..MODELS.orchestration_config import OrchestrationConfig
from ..MODELS.service_definition import (
    BuildContext,
    DependencyCondition,
    HealthCheck,
    PortMapping,
    RestartPolicy,
    RestartPolicyCondition,
    ServiceDefinition,
    VolumeMount,
)
from ..MODELS.volume_definition import VolumeDefinition
from ..UTILS.string_interpolation import EnvironmentInterpolator, build_context

logger = logging.getLogger(__name__)

DEFAULT_NETWORK = "default"

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(us|ms|s|m|h)")
_DURATION_UNITS = {"us": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def normalize_project_name(name: str) -> str:
    """
    Lowercases a project name and drops characters runtimes reject in resource names.
    """
    normalized = re.sub(r"[^a-z0-9_-]", "", name.lower()).lstrip("_-")
    if not normalized:
        raise DescriptorError(f"Invalid project name: {name!r}")
    return normalized


def parse_duration(value: Any) -> float:
    """
    Converts a compose duration ('1m30s', '500ms', 10) to seconds.
    """
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    parts = _DURATION_PART.findall(text)
    if not parts or "".join(n + u for n, u in parts) != text:
        raise DescriptorError(f"Invalid duration: {value!r}")
    return sum(float(number) * _DURATION_UNITS[unit] for number, unit in parts)


class ComposeParser:
    """
    Parser for docker-compose.yml files.
    """
    def __init__(self,
                 context: Optional[Mapping[str, str]] = None,
                 project_name: Optional[str] = None):
        """
        Initializes the parser.

        :param context: Variables for interpolation. Defaults to the .env file next to
            the descriptor overlaid with the process environment.
        :param project_name: Overrides the project name found in the descriptor.
        """
        self.context = context
        self.project_name = project_name

    def parse(self, compose_path: str) -> OrchestrationConfig:
        """
        Parses and validates a compose file from a path.

        :param compose_path: Path to the compose file.
        :return: Parsed configuration.
        :raises DescriptorError: If the file cannot be read or is invalid.
        """
        try:
            with open(compose_path, 'r') as f:
                content = f.read()
        except OSError as e:
            raise DescriptorError(f"Cannot read {compose_path}: {e.strerror}", resource=compose_path) from e

        base_dir = os.path.dirname(os.path.abspath(compose_path))
        return self.parse_from_string(content, base_dir=base_dir)

    def parse_from_string(self, content: str, base_dir: Optional[str] = None) -> OrchestrationConfig:
        """
        Parses and validates a compose file from a string.

        :param content: YAML content of the compose file.
        :param base_dir: Directory relative paths are resolved against.
        :return: Parsed configuration.
        :raises DescriptorError: If the content is invalid.
        """
        base_dir = os.path.abspath(base_dir or os.getcwd())
        try:
            data = yaml.safe_load(content)
        except yaml.YAMLError as e:
            raise DescriptorError(f"Invalid YAML: {e}") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise DescriptorError("The descriptor must be a mapping")
        if not isinstance(data.get('services'), dict):
            raise DescriptorError("The descriptor has no 'services' mapping", resource="services")
        if 'version' in data:
            logger.warning("The top-level 'version' key is obsolete and ignored")

        context = self.context
        if context is None:
            dotenv_path = os.path.join(base_dir, ".env")
            dotenv = dotenv_values(dotenv_path) if os.path.isfile(dotenv_path) else {}
            context = build_context({k: v for k, v in dotenv.items() if v is not None}, os.environ)
        data = EnvironmentInterpolator.interpolate_data(data, context)

        project = normalize_project_name(
            self.project_name or data.get('name') or os.path.basename(base_dir) or "default"
        )

        try:
            networks = {
                name: self._parse_network(project, name, spec or {})
                for name, spec in (data.get('networks') or {}).items()
            }
            volumes = {
                name: self._parse_volume(project, name, spec or {})
                for name, spec in (data.get('volumes') or {}).items()
            }
            services = {}
            for name, spec in data['services'].items():
                if not isinstance(spec, dict):
                    raise DescriptorError(f"Service '{name}' must be a mapping", resource=name)
                services[name] = self._parse_service(name, spec, base_dir, context)

            if any(DEFAULT_NETWORK in svc.networks for svc in services.values()) and DEFAULT_NETWORK not in networks:
                networks[DEFAULT_NETWORK] = NetworkDefinition(
                    name=DEFAULT_NETWORK, external_name=f"{project}_{DEFAULT_NETWORK}"
                )

            config = OrchestrationConfig(
                project_name=project,
                services=services,
                networks=networks,
                volumes=volumes,
            )
        except ValidationError as e:
            raise DescriptorError(f"Invalid descriptor: {e}") from e
        return config.check_integrity()

    def _parse_network(self, project: str, name: str, spec: Dict[str, Any]) -> NetworkDefinition:
        """
        Parses a top-level network entry, accepting both the ipam form and flat subnet keys.
        """
        external = spec.get('external', False)
        if isinstance(external, dict):
            explicit_name = external.get('name') or spec.get('name')
            external = True
        else:
            explicit_name = spec.get('name')
            external = bool(external)

        subnet = spec.get('subnet')
        ip_range = spec.get('ipRange', spec.get('ip_range'))
        ipam_config = (spec.get('ipam') or {}).get('config') or []
        if ipam_config:
            if len(ipam_config) > 1:
                logger.warning("Network %s: only the first IPAM pool is used", name)
            subnet = ipam_config[0].get('subnet', subnet)
            ip_range = ipam_config[0].get('ip_range', ip_range)

        return NetworkDefinition(
            name=name,
            external_name=explicit_name or (name if external else f"{project}_{name}"),
            driver=spec.get('driver', 'bridge'),
            subnet=subnet,
            ip_range=ip_range,
            attachable=bool(spec.get('attachable', False)),
            external=external,
            labels=self._to_dict(spec.get('labels')),
        )

    def _parse_volume(self, project: str, name: str, spec: Dict[str, Any]) -> VolumeDefinition:
        external = spec.get('external', False)
        if isinstance(external, dict):
            explicit_name = external.get('name') or spec.get('name')
            external = True
        else:
            explicit_name = spec.get('name')
            external = bool(external)
        return VolumeDefinition(
            name=name,
            external_name=explicit_name or (name if external else f"{project}_{name}"),
            driver=spec.get('driver', 'local'),
            driver_opts=self._to_dict(spec.get('driver_opts')),
            external=external,
            labels=self._to_dict(spec.get('labels')),
        )

    def _parse_service(self, name: str, spec: Dict[str, Any], base_dir: str,
                       context: Mapping[str, str]) -> ServiceDefinition:
        """
        Parses a single service definition from a compose file.

        :param name: The name of the service.
        :param spec: The service specification dictionary.
        :param base_dir: Directory for relative build contexts, env files and bind mounts.
        :param context: Interpolation context, used for pass-through environment keys.
        :return: A ServiceDefinition instance.
        """
        env_files = self._env_files(spec.get('env_file'))
        environment = {}
        for path, required in env_files:
            full_path = os.path.join(base_dir, path)
            if not os.path.isfile(full_path):
                if required:
                    raise DescriptorError(f"Service '{name}': env file {path} not found", resource=path)
                continue
            environment.update({k: v for k, v in dotenv_values(full_path).items() if v is not None})
        environment.update(self._parse_environment(spec.get('environment'), context))

        depends_on = spec.get('depends_on', spec.get('dependsOn')) or {}
        if isinstance(depends_on, list):
            depends_on = {dep: DependencyCondition.SERVICE_STARTED for dep in depends_on}
        elif isinstance(depends_on, dict):
            parsed = {}
            for dep, options in depends_on.items():
                condition = (options or {}).get('condition', DependencyCondition.SERVICE_STARTED.value)
                try:
                    parsed[dep] = DependencyCondition(condition)
                except ValueError:
                    raise DescriptorError(
                        f"Service '{name}': unsupported depends_on condition {condition!r}", resource=name
                    ) from None
            depends_on = parsed
        else:
            raise DescriptorError(f"Service '{name}': depends_on must be a list or mapping", resource=name)

        networks = spec.get('networks')
        if networks is None:
            networks = {DEFAULT_NETWORK: []}
        elif isinstance(networks, list):
            networks = {network: [] for network in networks}
        else:
            networks = {network: list((options or {}).get('aliases') or []) for network, options in networks.items()}

        return ServiceDefinition(
            name=name,
            image=spec.get('image'),
            build=self._parse_build(spec.get('build'), base_dir),
            container_name=spec.get('container_name'),
            command=self._to_command(spec.get('command')),
            entrypoint=self._to_command(spec.get('entrypoint')),
            working_dir=spec.get('working_dir'),
            stdin_open=bool(spec.get('stdin_open', False)),
            tty=bool(spec.get('tty', False)),
            environment=environment,
            env_files=[path for path, _ in env_files],
            ports=[port for entry in spec.get('ports') or [] for port in self._parse_ports(name, entry)],
            networks=networks,
            volumes=[self._parse_mount(name, entry, base_dir) for entry in spec.get('volumes') or []],
            restart_policy=self._parse_restart(name, spec),
            health_check=self._parse_healthcheck(spec.get('healthcheck')),
            depends_on=depends_on,
            labels=self._to_dict(spec.get('labels')),
        )

    def _parse_build(self, build: Any, base_dir: str) -> Optional[BuildContext]:
        if build is None:
            return None
        if isinstance(build, str):
            return BuildContext(context=os.path.normpath(os.path.join(base_dir, build)))
        return BuildContext(
            context=os.path.normpath(os.path.join(base_dir, build.get('context', '.'))),
            dockerfile=build.get('dockerfile'),
            target=build.get('target'),
            args=self._to_dict(build.get('args')),
        )

    def _parse_environment(self, env_spec: Any, context: Mapping[str, str]) -> Dict[str, str]:
        """
        Parses a list of KEY=value entries or a mapping. A bare KEY takes its value
        from the interpolation context and is dropped when unset there.
        """
        environment = {}
        if not env_spec:
            return environment
        if isinstance(env_spec, list):
            for entry in env_spec:
                entry = str(entry)
                if '=' in entry:
                    key, value = entry.split('=', 1)
                    environment[key] = value
                elif entry in context:
                    environment[entry] = context[entry]
        elif isinstance(env_spec, dict):
            for key, value in env_spec.items():
                if value is None:
                    if key in context:
                        environment[key] = context[key]
                else:
                    environment[key] = self._scalar(value)
        else:
            raise DescriptorError("environment must be a list or mapping")
        return environment

    def _parse_ports(self, service: str, entry: Any) -> List[PortMapping]:
        """
        Parses one ports entry: 3000, "3000:3000", "127.0.0.1:80:80", "53:53/udp",
        "8000-8001:8000-8001" or the long mapping form.
        """
        if isinstance(entry, dict):
            if 'target' not in entry:
                raise DescriptorError(f"Service '{service}': port entry has no target", resource=service)
            published = entry.get('published')
            return [PortMapping(
                container_port=int(entry['target']),
                host_port=int(published) if published not in (None, "") else None,
                host_ip=entry.get('host_ip'),
                protocol=entry.get('protocol', 'tcp'),
            )]

        text = str(entry)
        protocol = "tcp"
        if "/" in text:
            text, protocol = text.rsplit("/", 1)
        parts = text.rsplit(":", 2) if text.count(":") <= 2 else None
        if not parts:
            raise DescriptorError(f"Service '{service}': invalid port {entry!r}", resource=service)
        host_ip = parts[0] if len(parts) == 3 else None
        container = parts[-1]
        host = parts[-2] if len(parts) >= 2 else ""

        try:
            container_ports = self._port_range(container)
            host_ports = self._port_range(host) if host else [None] * len(container_ports)
        except ValueError:
            raise DescriptorError(f"Service '{service}': invalid port {entry!r}", resource=service) from None
        if len(host_ports) != len(container_ports):
            raise DescriptorError(f"Service '{service}': port ranges differ in size in {entry!r}", resource=service)

        return [
            PortMapping(container_port=c, host_port=h, host_ip=host_ip, protocol=protocol)
            for c, h in zip(container_ports, host_ports)
        ]

    @staticmethod
    def _port_range(text: str) -> List[int]:
        if "-" in text:
            start, end = (int(p) for p in text.split("-", 1))
            if end < start:
                raise ValueError(text)
            return list(range(start, end + 1))
        return [int(text)]

    def _parse_mount(self, service: str, entry: Any, base_dir: str) -> VolumeMount:
        """
        Parses a volumes entry of a service: "name:/path[:ro]", "./dir:/path",
        "/path" (anonymous) or the long mapping form.
        """
        if isinstance(entry, dict):
            mount_type = entry.get('type', 'volume')
            source = entry.get('source')
            if mount_type == 'bind' and source:
                source = os.path.normpath(os.path.join(base_dir, os.path.expanduser(source)))
            if 'target' not in entry:
                raise DescriptorError(f"Service '{service}': volume entry has no target", resource=service)
            return VolumeMount(
                type=mount_type,
                source=source,
                target=entry['target'],
                read_only=bool(entry.get('read_only', False)),
            )

        parts = str(entry).split(':')
        if len(parts) == 1:
            return VolumeMount(type='volume', source=None, target=parts[0])
        if len(parts) > 3:
            raise DescriptorError(f"Service '{service}': invalid volume {entry!r}", resource=service)
        source, target = parts[0], parts[1]
        read_only = len(parts) == 3 and 'ro' in parts[2].split(',')
        if source.startswith(('.', '/', '~')):
            return VolumeMount(
                type='bind',
                source=os.path.normpath(os.path.join(base_dir, os.path.expanduser(source))),
                target=target,
                read_only=read_only,
            )
        return VolumeMount(type='volume', source=source, target=target, read_only=read_only)

    def _parse_restart(self, service: str, spec: Dict[str, Any]) -> RestartPolicy:
        """
        Reads ``restart`` ("on-failure:3" style included), falling back to
        ``deploy.restart_policy``.
        """
        try:
            restart = spec.get('restart')
            if restart is not None:
                condition, _, retries = str(restart).partition(':')
                return RestartPolicy(
                    condition=RestartPolicyCondition(condition),
                    max_retries=int(retries) if retries else 0,
                )

            policy = (spec.get('deploy') or {}).get('restart_policy')
            if policy:
                return RestartPolicy(
                    condition=RestartPolicyCondition(policy.get('condition', 'any')),
                    max_retries=int(policy.get('max_attempts', 0)),
                    delay=parse_duration(policy.get('delay', 0)),
                )
        except ValueError as e:
            raise DescriptorError(f"Service '{service}': invalid restart policy: {e}", resource=service) from e
        return RestartPolicy()

    def _parse_healthcheck(self, spec: Optional[Dict[str, Any]]) -> Optional[HealthCheck]:
        if not spec or spec.get('disable'):
            return None
        test = spec.get('test')
        if isinstance(test, str):
            test = ["CMD-SHELL", test]
        if not test:
            return None
        return HealthCheck(
            test=[str(t) for t in test],
            interval=parse_duration(spec.get('interval', '30s')),
            timeout=parse_duration(spec.get('timeout', '30s')),
            retries=int(spec.get('retries', 3)),
            start_period=parse_duration(spec.get('start_period', 0)),
        )

    def _env_files(self, val: Any) -> List[tuple]:
        """
        Normalizes env_file to (path, required) pairs.
        """
        if val is None:
            return []
        if isinstance(val, (str, dict)):
            val = [val]
        files = []
        for entry in val:
            if isinstance(entry, dict):
                files.append((entry['path'], bool(entry.get('required', True))))
            else:
                files.append((str(entry), True))
        return files

    @staticmethod
    def _scalar(value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _to_dict(self, val: Any) -> Dict[str, str]:
        """
        Helper for label-like fields given either as a mapping or as KEY=value entries.
        """
        if not val:
            return {}
        if isinstance(val, dict):
            return {str(k): self._scalar(v) for k, v in val.items()}
        result = {}
        for entry in val:
            key, _, value = str(entry).partition('=')
            result[key] = value
        return result

    def _to_command(self, val: Any) -> List[str]:
        """
        Helper to ensure a command is a list of strings; strings are split shell-style.
        """
        if val is None:
            return []
        if isinstance(val, str):
            return shlex.split(val)
        return [str(v) for v in val]
