import os
import sys
import time

import pytest

from stackup.errors import RuntimeOperationError
from stackup.MODELS.service_definition import BuildContext, HealthCheck
from stackup.MODELS.volume_definition import VolumeDefinition
from stackup.RUNTIMES.base import PROJECT_LABEL, SERVICE_LABEL, ContainerSpec, Mount
from stackup.RUNTIMES.process_runtime import ProcessRuntime, full_command

DUMMY_SCRIPT = os.path.join(os.path.dirname(os.path.abspath(__file__)), "dummy_service.py")


def dummy_spec(name="test-service", args=("30",), **overrides):
    values = dict(
        name=name,
        service=name,
        project="yolo",
        image="python:3.12",
        command=[sys.executable, DUMMY_SCRIPT, *args],
        environment={"APP_ENV": "prod", "PYTHONUNBUFFERED": "1"},
        labels={PROJECT_LABEL: "yolo", SERVICE_LABEL: name},
    )
    values.update(overrides)
    return ContainerSpec(**values)


def wait_for(predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.1)
    return False


@pytest.fixture
def process_runtime(tmp_path):
    runtime = ProcessRuntime(base_dir=str(tmp_path))
    yield runtime
    runtime.close()


def test_single_service_lifecycle(process_runtime, tmp_path):
    container_id = process_runtime.create_container(dummy_spec())
    assert process_runtime.inspect_container(container_id).status == "created"

    process_runtime.start_container(container_id)
    record = process_runtime.inspect_container(container_id)
    assert record.status == "running"
    assert record.service == "test-service"
    assert [r.id for r in process_runtime.list_containers("yolo")] == [container_id]

    log_file = tmp_path / ".stackup" / "logs" / "test-service.log"
    assert wait_for(lambda: log_file.exists() and "APP_ENV: prod" in log_file.read_text())

    process_runtime.stop_container(container_id, timeout=5)
    assert process_runtime.inspect_container(container_id).status == "exited"

    process_runtime.remove_container(container_id)
    assert process_runtime.inspect_container(container_id) is None


def test_exit_code_is_reported(process_runtime):
    container_id = process_runtime.create_container(dummy_spec(args=("0", "3")))
    process_runtime.start_container(container_id)
    assert wait_for(lambda: process_runtime.inspect_container(container_id).status == "exited")
    assert process_runtime.inspect_container(container_id).exit_code == 3


def test_health_check(process_runtime):
    healthy = dummy_spec(name="healthy", health_check=HealthCheck(test=["CMD", sys.executable, "-c", "pass"]))
    unhealthy = dummy_spec(
        name="unhealthy",
        health_check=HealthCheck(test=["CMD", sys.executable, "-c", "raise SystemExit(1)"]),
    )
    ids = {spec.name: process_runtime.create_container(spec) for spec in (healthy, unhealthy)}
    for container_id in ids.values():
        process_runtime.start_container(container_id)
    assert process_runtime.inspect_container(ids["healthy"]).health == "healthy"
    assert process_runtime.inspect_container(ids["unhealthy"]).health == "unhealthy"


def test_volume_persists_and_is_mounted(process_runtime, tmp_path):
    volume = VolumeDefinition(name="data", external_name="yolo_data")
    process_runtime.create_volume(volume, {PROJECT_LABEL: "yolo"})
    assert [v.name for v in process_runtime.list_volumes()] == ["yolo_data"]
    assert process_runtime.list_volumes()[0].project == "yolo"

    spec = dummy_spec(mounts=[Mount(type="volume", source="yolo_data", target="/data/db")])
    process_runtime.start_container(process_runtime.create_container(spec))
    link = tmp_path / ".stackup" / "mounts" / "test-service" / "data" / "db"
    assert os.path.realpath(link) == os.path.realpath(tmp_path / ".stackup" / "volumes" / "yolo_data")

    # A fresh runtime on the same directory still sees the volume
    assert [v.name for v in ProcessRuntime(base_dir=str(tmp_path)).list_volumes()] == ["yolo_data"]

    process_runtime.remove_volume("yolo_data")
    assert process_runtime.list_volumes() == []


def test_unsupported_operations(process_runtime, tmp_path):
    with pytest.raises(RuntimeOperationError):
        process_runtime.create_container(dummy_spec(command=[]))
    with pytest.raises(RuntimeOperationError):
        process_runtime.create_volume(VolumeDefinition(name="nfs", driver="nfs"), {})
    with pytest.raises(RuntimeOperationError):
        process_runtime.build_image(BuildContext(context=str(tmp_path / "missing")), "yolo-app")

    context = tmp_path / "app"
    context.mkdir()
    (context / "Dockerfile").write_text("FROM python:3.12\n")
    assert process_runtime.build_image(BuildContext(context=str(context)), "yolo-app") == "yolo-app"
    assert process_runtime.image_exists("yolo-app")


def test_full_command():
    assert full_command(["docker-entrypoint.sh"], ["mongod"]) == ["docker-entrypoint.sh", "mongod"]
    assert full_command([], ["node", "server.js"]) == ["node", "server.js"]
