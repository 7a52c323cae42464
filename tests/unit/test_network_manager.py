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
Unit tests for the network manager.
"""
import pytest

from stackup.errors import NetworkConflict
from stackup.MANAGERS.network_manager import NetworkManager
from stackup.MODELS.network_definition import NetworkDefinition
from stackup.RUNTIMES.base import NETWORK_LABEL, PROJECT_LABEL


def yolo_network(**overrides):
    values = dict(name="yolo-network", external_name="yolo-network", subnet="172.20.0.0/16",
                  ip_range="172.20.0.0/16", attachable=True)
    values.update(overrides)
    return NetworkDefinition(**values)


class TestNetworkManager:
    """Tests for NetworkManager."""

    def test_create_network(self, runtime):
        """Test network creation with ownership labels."""
        mgr = NetworkManager(runtime, "yolo")
        records = mgr.provision_networks([yolo_network()])
        record = records["yolo-network"]
        assert record.name == "yolo-network"
        assert record.subnets == ["172.20.0.0/16"]
        assert record.labels[PROJECT_LABEL] == "yolo"
        assert record.labels[NETWORK_LABEL] == "yolo-network"

    def test_provision_twice_is_idempotent(self, runtime):
        """Provisioning again reuses the network instead of duplicating it."""
        mgr = NetworkManager(runtime, "yolo")
        first = mgr.provision_networks([yolo_network()])
        second = mgr.provision_networks([yolo_network()])
        assert first["yolo-network"].id == second["yolo-network"].id
        assert len(runtime.networks) == 1
        assert [e for e in runtime.events if e[0] == "create_network"] == [("create_network", "yolo-network")]

    def test_duplicate_subnet_in_descriptor(self, runtime):
        """Two networks claiming 172.20.0.0/16 conflict before anything is created."""
        mgr = NetworkManager(runtime, "yolo")
        networks = [yolo_network(), yolo_network(name="second", external_name="second")]
        with pytest.raises(NetworkConflict) as exc:
            mgr.provision_networks(networks)
        assert exc.value.network == "second"
        assert runtime.networks == {}

    def test_overlapping_subnet_of_other_project(self, runtime):
        NetworkManager(runtime, "other").provision_networks(
            [NetworkDefinition(name="net", external_name="other_net", subnet="172.20.0.0/16")]
        )
        mgr = NetworkManager(runtime, "yolo")
        with pytest.raises(NetworkConflict) as exc:
            mgr.provision_networks([yolo_network(subnet="172.20.5.0/24", ip_range=None)])
        assert "overlaps" in str(exc.value)

    def test_name_taken_by_other_project(self, runtime):
        NetworkManager(runtime, "other").provision_networks([yolo_network()])
        with pytest.raises(NetworkConflict) as exc:
            NetworkManager(runtime, "yolo").provision_networks([yolo_network()])
        assert "belongs to other" in str(exc.value)

    def test_disjoint_subnets(self, runtime):
        mgr = NetworkManager(runtime, "yolo")
        records = mgr.provision_networks([
            yolo_network(),
            NetworkDefinition(name="backend", external_name="yolo_backend", subnet="172.21.0.0/16"),
        ])
        assert set(records) == {"yolo-network", "backend"}

    def test_external_network_must_exist(self, runtime):
        mgr = NetworkManager(runtime, "yolo")
        external = NetworkDefinition(name="shared", external_name="shared", external=True)
        with pytest.raises(NetworkConflict):
            mgr.provision_networks([external])

        NetworkManager(runtime, "infra").provision_networks([external.model_copy(update={"external": False})])
        records = mgr.provision_networks([external])
        assert records["shared"].project == "infra"

    def test_remove_networks(self, runtime):
        """Only networks owned by the project are removed."""
        NetworkManager(runtime, "infra").provision_networks(
            [NetworkDefinition(name="shared", external_name="shared")]
        )
        mgr = NetworkManager(runtime, "yolo")
        networks = [yolo_network(), NetworkDefinition(name="shared", external_name="shared", external=True)]
        mgr.provision_networks(networks)

        removed = mgr.remove_networks(networks)
        assert removed == ["yolo-network"]
        assert set(runtime.networks) == {"shared"}
