"""
명령 실행기 테스트
"""

import base64
import time
from contextlib import contextmanager

import pytest

from k8s_multicloud.errors import CommandError, CommandTimeoutError, ConfigError, TransientRemoteError
from k8s_multicloud.executor import (
    CommandBatch,
    ExecutionResult,
    LocalExecutor,
    RemoteExecutor,
    RemoteFile,
    RetryingExecutor,
    RoutingExecutor,
    SSHExecutor,
)
from k8s_multicloud.roster import NodeRole, NodeSpec

NODE = NodeSpec("local", "127.0.0.1", "lo", NodeRole.CONTROL_PLANE)


def test_render_batch():
    """배치 스크립트 생성"""
    batch = CommandBatch(
        name="demo",
        commands=["echo done"],
        files=[RemoteFile("/etc/demo/a.conf", "key = 'value'\n", mode="0600")],
        env={"KUBECONFIG": "/etc/kubernetes/admin.conf"},
    )
    script = batch.render()
    lines = script.splitlines()

    assert lines[0] == "set -euo pipefail"
    assert "export KUBECONFIG=/etc/kubernetes/admin.conf" in lines
    assert "install -d /etc/demo" in lines
    encoded = base64.b64encode("key = 'value'\n".encode()).decode()
    assert f"echo {encoded} | base64 -d > /etc/demo/a.conf" in lines
    assert "chmod 0600 /etc/demo/a.conf" in lines
    assert lines[-1] == "echo done"


def test_local_executor_runs_batch(tmp_path):
    """로컬 실행 및 파일 기록"""
    target = tmp_path / "out" / "subnet.env"
    batch = CommandBatch(
        name="write",
        files=[RemoteFile(str(target), "FLANNEL_MTU=1450\n")],
        commands=["echo hello", "echo warn >&2"],
    )
    result = LocalExecutor(default_timeout=30).run(NODE, batch)

    assert result.ok
    assert result.stdout == "hello\n"
    assert result.stderr == "warn\n"
    assert result.hostname == "local"
    assert target.read_text() == "FLANNEL_MTU=1450\n"


def test_local_executor_nonzero_exit():
    """실패한 명령은 결과를 담은 CommandError"""
    batch = CommandBatch(name="fail", commands=["echo boom >&2", "exit 3"])

    with pytest.raises(CommandError) as exc_info:
        LocalExecutor().run(NODE, batch)

    assert exc_info.value.result.exit_code == 3
    assert "boom" in str(exc_info.value)

    result = LocalExecutor().run(NODE, batch, check=False)
    assert result.exit_code == 3


def test_local_executor_timeout():
    with pytest.raises(CommandTimeoutError):
        LocalExecutor().run(NODE, CommandBatch(name="slow", commands=["sleep 5"]), timeout=1)


class FlakyExecutor(RemoteExecutor):
    def __init__(self, failures, exc=TransientRemoteError):
        super().__init__()
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def run(self, node, batch, timeout=None, check=True):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("blip", node.hostname)
        return ExecutionResult(batch.name, 0, "", "", 1, node.hostname)


def test_retrying_executor_retries_transient_errors():
    """일시적 오류만 재시도"""
    delays = []
    inner = FlakyExecutor(failures=2)
    result = RetryingExecutor(inner, attempts=3, backoff=0.5, sleep=delays.append).run(
        NODE, CommandBatch(name="x")
    )
    assert result.ok
    assert inner.calls == 3
    assert delays == [0.5, 1.0]


def test_retrying_executor_propagates_command_errors():
    inner = FlakyExecutor(failures=1, exc=CommandError)
    with pytest.raises(CommandError):
        RetryingExecutor(inner, attempts=3, backoff=0.5, sleep=lambda _: None).run(NODE, CommandBatch(name="x"))
    assert inner.calls == 1


def test_routing_executor():
    local, remote = FlakyExecutor(0), FlakyExecutor(0)
    router = RoutingExecutor("local", local, remote)
    router.run(NODE, CommandBatch(name="x"))
    router.run(NodeSpec("other", "172.16.0.2", "wg0", NodeRole.WORKER), CommandBatch(name="x"))
    assert local.calls == 1
    assert remote.calls == 1


def test_ssh_executor_address_selection():
    node = NodeSpec("w", "172.16.0.2", "wg0", NodeRole.WORKER, external_address="198.51.100.2")
    assert SSHExecutor()._address(node) == "172.16.0.2"
    assert SSHExecutor(use_external_address=True)._address(node) == "198.51.100.2"


def test_ssh_executor_rejects_unknown_key(tmp_path):
    key = tmp_path / "id_bad"
    key.write_text("not a key")
    with pytest.raises(ConfigError):
        SSHExecutor(key_path=str(key))._load_key()


class HangingChannel:
    """출력도 종료 코드도 돌려주지 않는 SSH 채널"""

    def __init__(self):
        self.closed = False
        self.written = []

    def recv_ready(self):
        return False

    def recv_stderr_ready(self):
        return False

    def exit_status_ready(self):
        return False

    def recv_exit_status(self):
        raise AssertionError("종료 코드를 기다리면 안 됩니다")

    def shutdown_write(self):
        pass

    def close(self):
        self.closed = True


class ChannelFile:
    def __init__(self, channel):
        self.channel = channel

    def write(self, data):
        self.channel.written.append(data)

    def flush(self):
        pass


class HangingClient:
    def __init__(self):
        self.channel = HangingChannel()

    def exec_command(self, command):
        stream = ChannelFile(self.channel)
        return stream, stream, stream


def test_ssh_drain_deadline_closes_channel():
    """deadline이 지나면 채널을 닫고 CommandTimeoutError"""
    channel = HangingChannel()
    with pytest.raises(CommandTimeoutError):
        SSHExecutor._drain(channel, deadline=time.monotonic() - 1)
    assert channel.closed


def test_ssh_execute_timeout_is_not_transient(monkeypatch):
    """원격 명령 시간 초과는 재시도 대상 오류가 아닌 CommandTimeoutError"""
    client = HangingClient()
    ssh = SSHExecutor()

    @contextmanager
    def session(node):
        yield client

    monkeypatch.setattr(ssh, "session", session)
    node = NodeSpec("w", "172.16.0.2", "wg0", NodeRole.WORKER)

    with pytest.raises(CommandTimeoutError) as exc_info:
        ssh._execute(node, CommandBatch(name="install", commands=["sleep 600"]), 0)

    assert not isinstance(exc_info.value, TransientRemoteError)
    assert exc_info.value.hostname == "w"
    assert "install" in str(exc_info.value)
    assert client.channel.closed
    assert "sleep 600" in client.channel.written[0]


def test_retrying_executor_does_not_retry_timeouts():
    inner = FlakyExecutor(failures=1, exc=CommandTimeoutError)
    with pytest.raises(CommandTimeoutError):
        RetryingExecutor(inner, attempts=3, backoff=0.5, sleep=lambda _: None).run(NODE, CommandBatch(name="x"))
    assert inner.calls == 1
