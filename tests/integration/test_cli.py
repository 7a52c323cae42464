import logging

import pytest
import yaml
from click.testing import CliRunner

from stackup.CLI import main
from stackup.CLI.main import cli
from stackup.RUNTIMES.memory_runtime import InMemoryRuntime


YOLO = {
    'name': 'yolo',
    'services': {
        'yolo-client': {
            'image': 'gideondevrel/yolo-client:v1.0.0',
            'depends_on': ['yolo-backend'],
            'networks': ['yolo-network'],
            'ports': ['3000:3000'],
            'restart': 'unless-stopped',
        },
        'yolo-backend': {
            'image': 'gideondevrel/yolo-backend:v1.0.0',
            'depends_on': ['yolo-mongo'],
            'networks': ['yolo-network'],
            'environment': ['MONGODB_URI=mongodb://yolo-mongo:27017/yolodb'],
            'restart': 'always',
        },
        'yolo-mongo': {
            'image': 'mongo:5.0',
            'networks': ['yolo-network'],
            'volumes': [{'type': 'volume', 'source': 'yolo-mongo-data', 'target': '/data/db'}],
        },
    },
    'networks': {
        'yolo-network': {'ipam': {'config': [{'subnet': '172.20.0.0/16'}]}},
    },
    'volumes': {'yolo-mongo-data': {'driver': 'local'}},
}


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for name in ('STACKUP_RUNTIME', 'STACKUP_PROJECT_NAME', 'COMPOSE_PROJECT_NAME'):
        monkeypatch.delenv(name, raising=False)


def write_compose(tmp_path, content):
    compose_file = tmp_path / "docker-compose.yaml"
    with open(compose_file, 'w') as f:
        yaml.dump(content, f)
    return str(compose_file)


def test_cli_help():
    runner = CliRunner()
    result = runner.invoke(cli, ['--help'])
    assert result.exit_code == 0
    for command in ('up', 'down', 'ps', 'config'):
        assert command in result.output


def test_cli_up_no_file(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', str(tmp_path / 'non_existent.yml'), '--runtime', 'memory', 'up'])
    assert result.exit_code == 1
    assert 'Error: Cannot read' in result.output


def test_cli_no_default_descriptor():
    runner = CliRunner()
    with runner.isolated_filesystem():
        result = runner.invoke(cli, ['--runtime', 'memory', 'ps'])
    assert result.exit_code == 1
    assert 'No descriptor found' in result.output


def test_cli_config(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', write_compose(tmp_path, YOLO), 'config'])
    assert result.exit_code == 0
    assert '# start order: yolo-mongo, yolo-backend, yolo-client' in result.output
    document = yaml.safe_load(result.output)
    assert document['name'] == 'yolo'
    assert document['networks']['yolo-network']['external_name'] == 'yolo_yolo-network'


def test_cli_up_detached(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', write_compose(tmp_path, YOLO), '--runtime', 'memory', 'up', '-d'])
    assert result.exit_code == 0, result.output
    assert 'Started 3 services: yolo-mongo, yolo-backend, yolo-client' in result.output


def test_cli_up_sequential_with_options(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, [
        '-f', write_compose(tmp_path, YOLO), '-p', 'other', '--runtime', 'memory', '--log-level', 'debug',
        'up', '-d', '--no-parallel', '--pull', 'always', '--max-restarts', '2', '--timeout', '5',
    ])
    assert result.exit_code == 0, result.output
    assert 'Started 3 services' in result.output


def test_cli_up_cycle(tmp_path):
    compose = {
        'services': {
            'a': {'image': 'a', 'depends_on': ['b']},
            'b': {'image': 'b', 'depends_on': ['a']},
        },
    }
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', write_compose(tmp_path, compose), '--runtime', 'memory', 'up', '-d'])
    assert result.exit_code == 1
    assert 'Error: Circular dependency detected between services: a, b' in result.output


def test_cli_up_duplicate_subnet(tmp_path):
    compose = dict(YOLO)
    compose['networks'] = {
        'yolo-network': {'ipam': {'config': [{'subnet': '172.20.0.0/16'}]}},
        'second': {'subnet': '172.20.0.0/16'},
    }
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', write_compose(tmp_path, compose), '--runtime', 'memory', 'up', '-d'])
    assert result.exit_code == 1
    assert "Error: Network 'second' conflicts" in result.output


def test_cli_up_failure_leaves_started_services_running(tmp_path, monkeypatch):
    compose = {
        'name': 'partial',
        'services': {
            'a': {'image': 'a:1'},
            'b': {'image': 'b:1'},
        },
    }
    runtime = InMemoryRuntime(fail_start={'b': 1})
    monkeypatch.setattr(main, '_make_runtime', lambda ctx: runtime)

    runner = CliRunner()
    result = runner.invoke(cli, ['-f', write_compose(tmp_path, compose), 'up', '--no-parallel'])
    assert result.exit_code == 1
    assert "Error: Service 'b' failed to start: exited with code 1" in result.output

    states = {record.service: record.status for record in runtime.list_containers('partial')}
    assert states['a'] == 'running'
    assert ('stop_container', 'a') not in runtime.events


def test_cli_invalid_option_values(tmp_path):
    runner = CliRunner()
    compose_file = write_compose(tmp_path, YOLO)
    result = runner.invoke(cli, ['-f', compose_file, '--runtime', 'memory', 'up', '--max-restarts', '0'])
    assert result.exit_code == 2
    result = runner.invoke(cli, ['-f', compose_file, '--runtime', 'podman', 'up'])
    assert result.exit_code == 2


def test_cli_process_runtime_cannot_detach(tmp_path):
    compose = {'services': {'app': {'image': 'app', 'command': ['sleep', '1']}}}
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', write_compose(tmp_path, compose), '--runtime', 'process', 'up', '-d'])
    assert result.exit_code == 2
    assert 'cannot run services detached' in result.output


def test_cli_ps_and_down(tmp_path):
    runner = CliRunner()
    compose_file = write_compose(tmp_path, YOLO)

    result = runner.invoke(cli, ['-f', compose_file, '--runtime', 'memory', 'ps'])
    assert result.exit_code == 0
    assert 'SERVICE' in result.output and 'RESTARTS' in result.output

    result = runner.invoke(cli, ['-f', compose_file, '--runtime', 'memory', 'down', '-v'])
    assert result.exit_code == 0
    assert 'Stopped 0 services.' in result.output


def test_cli_runtime_from_environment(tmp_path, monkeypatch):
    monkeypatch.setenv('STACKUP_RUNTIME', 'memory')
    runner = CliRunner()
    result = runner.invoke(cli, ['-f', write_compose(tmp_path, YOLO), 'up', '-d'])
    assert result.exit_code == 0, result.output
