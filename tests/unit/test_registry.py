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
Unit tests for image reference parsing.
"""
import pytest

from stackup.REGISTRY.image_reference import ImageReference


class TestImageReference:
    """Tests for ImageReference parsing."""

    def test_parse_simple_image(self):
        ref = ImageReference.parse("mongo")
        assert ref.registry == "docker.io"
        assert ref.repository == "library/mongo"
        assert ref.tag == "latest"
        assert ref.digest is None

    def test_parse_image_with_tag(self):
        ref = ImageReference.parse("mongo:5.0")
        assert ref.repository == "library/mongo"
        assert ref.tag == "5.0"
        assert ref.full_name == "docker.io/library/mongo:5.0"
        assert str(ref) == "mongo:5.0"

    def test_parse_user_image(self):
        ref = ImageReference.parse("gideondevrel/yolo-backend:v1.0.0")
        assert ref.registry == "docker.io"
        assert ref.repository == "gideondevrel/yolo-backend"
        assert ref.tag == "v1.0.0"

    def test_parse_registry_with_port(self):
        ref = ImageReference.parse("localhost:5000/app")
        assert ref.registry == "localhost:5000"
        assert ref.repository == "app"
        assert ref.tag == "latest"
        assert ref.short_name == "localhost:5000/app:latest"

    def test_parse_image_with_digest(self):
        digest = "sha256:" + "a" * 64
        ref = ImageReference.parse(f"ghcr.io/org/app@{digest}")
        assert ref.registry == "ghcr.io"
        assert ref.digest == digest
        assert ref.tag is None
        assert ref.full_name == f"ghcr.io/org/app@{digest}"

    @pytest.mark.parametrize("reference", ["", " mongo", "Mongo", "mongo:", "mongo@md5:abc", "a//b"])
    def test_invalid_references(self, reference):
        with pytest.raises(ValueError):
            ImageReference.parse(reference)
