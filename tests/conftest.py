"""
공용 테스트 픽스처
실제 노드 대신 명령 실행 기록기와 메모리 기반 컨트롤 플레인을 사용
"""

import threading

import pytest

from k8s_multicloud.config import Config
from k8s_multicloud.errors import CommandError
from k8s_multicloud.executor import ExecutionResult, RemoteExecutor
from k8s_multicloud.k8s import ControlPlane, JoinCredentials, NodeCondition
from k8s_multicloud.logger import init_logger
from k8s_multicloud.roster import ClusterTopology, NodeRole, NodeSpec
from k8s_multicloud.state import StateStore


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """로그를 임시 디렉토리에 기록하고 기본 설정 파일 경로를 피함"""
    monkeypatch.chdir(tmp_path)
    init_logger(str(tmp_path / "logs"), "DEBUG", False)


class FakeClock:
    """sleep 호출만큼 시간이 흐르는 시계"""

    def __init__(self):
        self.now = 0.0
        self._lock = threading.Lock()

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float):
        with self._lock:
            self.now += seconds


class FakeCluster:
    """실행된 명령에 따라 노드 등록/Ready 상태가 바뀌는 가상 클러스터"""

    def __init__(self):
        self.registered = set()
        self.ready = set()
        self.never_ready = set()
        self.pod_cidrs = {}
        self.applied = []
        self.deleted = []
        self.fail_delete = set()
        self.dns_ready = True
        self.lock = threading.Lock()


class FakeExecutor(RemoteExecutor):
    """명령 배치를 기록하고 지정된 (호스트, 배치) 조합에서 예외를 발생"""

    def __init__(self, cluster: FakeCluster):
        super().__init__(default_timeout=60)
        self.cluster = cluster
        self.calls = []
        self.failures = {}
        self._lock = threading.Lock()

    def fail_on(self, hostname: str, batch_name: str, exc: Exception):
        self.failures[(hostname, batch_name)] = exc

    def calls_for(self, hostname: str):
        return [name for host, name in self.calls if host == hostname]

    def run(self, node, batch, timeout=None, check=True):
        with self._lock:
            self.calls.append((node.hostname, batch.name))
        exc = self.failures.get((node.hostname, batch.name))
        if exc is not None:
            raise exc

        with self.cluster.lock:
            if batch.name in ("init", "join"):
                self.cluster.registered.add(node.hostname)
            elif batch.name == "network":
                self.cluster.ready.add(node.hostname)
            elif batch.name == "teardown":
                self.cluster.registered.discard(node.hostname)
                self.cluster.ready.discard(node.hostname)

        return ExecutionResult(command=batch.name, exit_code=0, stdout="", stderr="",
                               duration_ms=1, hostname=node.hostname)


class FakeControlPlane(ControlPlane):
    """FakeCluster 상태를 API 서버처럼 보여주는 컨트롤 플레인"""

    def __init__(self, node, executor, config, cluster: FakeCluster):
        super().__init__(node, executor, config)
        self.cluster = cluster
        self.tokens_issued = 0
        self.dns_checks = 0

    def node_status(self, hostname):
        with self.cluster.lock:
            if hostname not in self.cluster.registered:
                return None
            ready = hostname in self.cluster.ready and hostname not in self.cluster.never_ready
            return NodeCondition(
                hostname=hostname,
                ready=ready,
                reason="KubeletReady" if ready else "KubeletNotReady",
                message="" if ready else "container runtime network not ready",
                pod_cidr=self.cluster.pod_cidrs.get(hostname, ""),
            )

    def nodes(self):
        return {hostname: self.node_status(hostname) for hostname in sorted(self.cluster.registered)}

    def ensure_pod_cidr(self, hostname, cidr):
        with self.cluster.lock:
            existing = self.cluster.pod_cidrs.get(hostname)
            if existing:
                return existing
            self.cluster.pod_cidrs[hostname] = cidr
            return cidr

    def create_join_credentials(self):
        self.tokens_issued += 1
        return JoinCredentials("172.16.0.1:6443", "abcdef.0123456789abcdef", "sha256:" + "0" * 64)

    def apply(self, documents):
        self.cluster.applied.append(documents)
        return ExecutionResult("apply-manifests", 0, "", "", 1, self.node.hostname)

    def cni_health(self, hostname=None):
        with self.cluster.lock:
            targets = [hostname] if hostname else sorted(self.cluster.registered)
            unhealthy = [host for host in targets
                         if host not in self.cluster.ready or host in self.cluster.never_ready]
        if not targets or unhealthy:
            return False, f"flannel pod 준비 안 됨: {', '.join(unhealthy) or '-'}"
        return True, f"flannel pod {len(targets)}개 Ready"

    def dns_health(self):
        self.dns_checks += 1
        if self.cluster.dns_ready:
            return True, "coredns pod 2개 Ready"
        return False, "coredns pod 준비 안 됨: coredns-5d78c9869d-x2x7q"

    def delete_node(self, hostname):
        self.cluster.deleted.append(hostname)
        if hostname in self.cluster.fail_delete:
            raise CommandError("delete failed", hostname)
        return ExecutionResult("delete-node", 0, "", "", 1, self.node.hostname)


@pytest.fixture
def topology():
    return ClusterTopology(nodes=(
        NodeSpec("cp-1", "172.16.0.1", "wg0", NodeRole.CONTROL_PLANE, "203.0.113.1", ordinal=1),
        NodeSpec("worker-1", "172.16.0.2", "wg0", NodeRole.WORKER, "203.0.113.2", ordinal=2),
        NodeSpec("worker-2", "172.16.0.3", "eth1", NodeRole.WORKER, "203.0.113.3", ordinal=3),
    ))


@pytest.fixture
def config(tmp_path):
    cfg = Config()
    cfg.agent.log_dir = str(tmp_path / "logs")
    cfg.agent.state_dir = str(tmp_path / "state")
    cfg.agent.verify_timeout = 60
    cfg.agent.poll_interval = 5
    cfg.agent.join_timeout = 10
    return cfg


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cluster():
    return FakeCluster()


@pytest.fixture
def executor(cluster):
    return FakeExecutor(cluster)


@pytest.fixture
def control_plane(topology, executor, config, cluster):
    return FakeControlPlane(topology.control_plane, executor, config, cluster)


@pytest.fixture
def store(config):
    return StateStore(config.agent.state_dir)
