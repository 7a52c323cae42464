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
Unit tests for the volume manager.
"""
import pytest

from stackup.errors import VolumeConflict
from stackup.MANAGERS.volume_manager import VolumeManager
from stackup.MODELS.volume_definition import VolumeDefinition
from stackup.RUNTIMES.base import PROJECT_LABEL


MONGO_DATA = VolumeDefinition(name="yolo-mongo-data", external_name="yolo_yolo-mongo-data")


class TestVolumeManager:
    """Tests for VolumeManager."""

    def test_create_volume(self, runtime):
        mgr = VolumeManager(runtime, "yolo")
        records = mgr.provision_volumes([MONGO_DATA])
        assert records["yolo-mongo-data"].name == "yolo_yolo-mongo-data"
        assert records["yolo-mongo-data"].labels[PROJECT_LABEL] == "yolo"

    def test_provision_twice_is_idempotent(self, runtime):
        """Existing volumes are reused, never recreated."""
        mgr = VolumeManager(runtime, "yolo")
        mgr.provision_volumes([MONGO_DATA])
        mgr.provision_volumes([MONGO_DATA])
        assert len(runtime.volumes) == 1
        assert [e for e in runtime.events if e[0] == "create_volume"] == [("create_volume", "yolo_yolo-mongo-data")]

    def test_volume_of_other_project(self, runtime):
        VolumeManager(runtime, "other").provision_volumes([MONGO_DATA])
        with pytest.raises(VolumeConflict) as exc:
            VolumeManager(runtime, "yolo").provision_volumes([MONGO_DATA])
        assert exc.value.volume == "yolo-mongo-data"

    def test_driver_mismatch(self, runtime):
        mgr = VolumeManager(runtime, "yolo")
        mgr.provision_volumes([MONGO_DATA])
        with pytest.raises(VolumeConflict) as exc:
            mgr.provision_volumes([MONGO_DATA.model_copy(update={"driver": "nfs"})])
        assert "driver" in str(exc.value)

    def test_external_volume(self, runtime):
        external = VolumeDefinition(name="backups", external_name="backups", external=True)
        mgr = VolumeManager(runtime, "yolo")
        with pytest.raises(VolumeConflict):
            mgr.provision_volumes([external])

        VolumeManager(runtime, "infra").provision_volumes([external.model_copy(update={"external": False})])
        assert mgr.provision_volumes([external])["backups"].project == "infra"

    def test_remove_volumes_keeps_external(self, runtime):
        VolumeManager(runtime, "infra").provision_volumes(
            [VolumeDefinition(name="backups", external_name="backups")]
        )
        mgr = VolumeManager(runtime, "yolo")
        volumes = [MONGO_DATA, VolumeDefinition(name="backups", external_name="backups", external=True)]
        mgr.provision_volumes(volumes)

        assert mgr.remove_volumes(volumes) == ["yolo_yolo-mongo-data"]
        assert set(runtime.volumes) == {"backups"}
