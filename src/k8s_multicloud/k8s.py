"""
컨트롤 플레인 클라이언트
컨트롤 플레인 노드에서 kubectl/kubeadm을 실행하여 노드 상태 조회, Pod CIDR 패치,
조인 토큰 발급, 매니페스트 적용을 수행
"""

import json
import shlex
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .errors import CommandError
from .executor import CommandBatch, ExecutionResult, RemoteExecutor
from .logger import get_logger
from .retry import poll_until
from .roster import NodeSpec
from .steps import ADMIN_CONF, apply_manifests_batch


@dataclass(frozen=True)
class NodeCondition:
    """API 서버가 보고하는 노드 상태"""
    hostname: str
    ready: bool
    reason: str = ""
    message: str = ""
    pod_cidr: str = ""

    def describe(self) -> str:
        state = "Ready" if self.ready else "NotReady"
        if self.reason and not self.ready:
            return f"{state} ({self.reason}: {self.message})" if self.message else f"{state} ({self.reason})"
        return state


@dataclass(frozen=True)
class JoinCredentials:
    """워커 조인 정보 (bootstrap token)"""
    api_endpoint: str
    token: str
    ca_cert_hash: str

    @classmethod
    def parse(cls, join_command: str) -> "JoinCredentials":
        """`kubeadm token create --print-join-command` 출력 파싱

        예: kubeadm join 172.16.0.1:6443 --token abc.def --discovery-token-ca-cert-hash sha256:...
        """
        args = shlex.split(join_command.strip().splitlines()[-1]) if join_command.strip() else []
        if len(args) < 3 or args[:2] != ["kubeadm", "join"]:
            raise ValueError(f"kubeadm join 명령이 아닙니다: {join_command!r}")

        endpoint = args[2]
        options = {}
        key = None
        for arg in args[3:]:
            if arg.startswith("--"):
                key = arg[2:]
                if "=" in key:
                    key, value = key.split("=", 1)
                    options[key] = value
                    key = None
            elif key:
                options[key] = arg
                key = None

        token = options.get("token")
        ca_cert_hash = options.get("discovery-token-ca-cert-hash")
        if not token or not ca_cert_hash:
            raise ValueError(f"토큰 또는 CA 해시가 없습니다: {join_command!r}")
        return cls(api_endpoint=endpoint, token=token, ca_cert_hash=ca_cert_hash)


def _parse_node(item: Dict) -> NodeCondition:
    hostname = item.get("metadata", {}).get("name", "")
    spec = item.get("spec", {})
    ready = False
    reason = "NoReadyCondition"
    message = ""
    for condition in item.get("status", {}).get("conditions", []):
        if condition.get("type") == "Ready":
            ready = condition.get("status") == "True"
            reason = condition.get("reason", "")
            message = condition.get("message", "")
            break
    return NodeCondition(
        hostname=hostname,
        ready=ready,
        reason=reason,
        message=message,
        pod_cidr=spec.get("podCIDR", "") or "",
    )


class ControlPlane:
    """컨트롤 플레인 노드에서 실행되는 클러스터 조회/변경 작업"""

    def __init__(self, node: NodeSpec, executor: RemoteExecutor, config):
        self.node = node
        self.executor = executor
        self.config = config
        self.logger = get_logger()

    def _kubectl(self, name: str, command: str, check: bool = False) -> ExecutionResult:
        batch = CommandBatch(
            name=name,
            env={"KUBECONFIG": ADMIN_CONF},
            commands=[command],
            timeout=120,
        )
        return self.executor.run(self.node, batch, check=check)

    def _decode(self, result: ExecutionResult, what: str) -> Dict:
        """kubectl JSON 출력 파싱 (JSON이 아니면 CommandError)"""
        try:
            data = json.loads(result.stdout or "{}")
        except ValueError as e:
            raise CommandError(
                f"[{self.node.hostname}] {what} 응답이 JSON이 아닙니다: {result.stdout.strip()[:200]!r}",
                self.node.hostname, result,
            ) from e
        if not isinstance(data, dict):
            raise CommandError(f"[{self.node.hostname}] {what} 응답 형식이 올바르지 않습니다",
                               self.node.hostname, result)
        return data

    def nodes(self) -> Dict[str, NodeCondition]:
        """클러스터에 등록된 모든 노드 상태

        Raises:
            CommandError: API 서버 조회 실패
        """
        result = self._kubectl("get-nodes", "kubectl get nodes -o json", check=True)
        data = self._decode(result, "노드 목록")
        conditions = [_parse_node(item) for item in data.get("items", [])]
        return {condition.hostname: condition for condition in conditions}

    def node_status(self, hostname: str) -> Optional[NodeCondition]:
        """노드 상태 (등록되지 않았으면 None)"""
        result = self._kubectl(
            f"get-node-{hostname}", f"kubectl get node {shlex.quote(hostname)} -o json"
        )
        if not result.ok:
            if "NotFound" in result.stderr or "not found" in result.stderr:
                return None
            raise CommandError(f"[{hostname}] 노드 상태 조회 실패", self.node.hostname, result)
        return _parse_node(self._decode(result, f"노드 {hostname}"))

    def ensure_pod_cidr(self, hostname: str, cidr: str) -> str:
        """노드 spec.podCIDR이 비어 있으면 할당된 CIDR로 패치

        podCIDR은 한 번 설정되면 변경할 수 없으므로 이미 다른 값이 있으면
        그 값을 유지하고 경고만 남긴다.

        Returns:
            str: 실제로 적용된 Pod CIDR
        """
        status = self.node_status(hostname)
        if status is None:
            raise CommandError(f"[{hostname}] 노드가 클러스터에 등록되지 않았습니다", self.node.hostname)

        if status.pod_cidr == cidr:
            self.logger.for_node(hostname).debug(f"podCIDR already set to {cidr}")
            return cidr

        if status.pod_cidr:
            self.logger.for_node(hostname).warning(
                f"podCIDR is already {status.pod_cidr} (allocated {cidr}); "
                "keeping the cluster value because podCIDR is immutable"
            )
            return status.pod_cidr

        patch = json.dumps({"spec": {"podCIDR": cidr, "podCIDRs": [cidr]}})
        self._kubectl(
            f"patch-pod-cidr-{hostname}",
            f"kubectl patch node {shlex.quote(hostname)} -p {shlex.quote(patch)}",
            check=True,
        )
        self.logger.for_node(hostname).info(f"podCIDR set to {cidr}")
        return cidr

    def create_join_credentials(self) -> JoinCredentials:
        """새 bootstrap 토큰 발급"""
        batch = CommandBatch(name="create-join-token", commands=["kubeadm token create --print-join-command"],
                             timeout=120)
        result = self.executor.run(self.node, batch)
        try:
            credentials = JoinCredentials.parse(result.stdout)
        except ValueError as e:
            raise CommandError(f"[{self.node.hostname}] 조인 명령 파싱 실패: {e}", self.node.hostname, result) from e
        self.logger.info(f"Issued join token for {credentials.api_endpoint}")
        return credentials

    def apply(self, documents: List[dict]) -> ExecutionResult:
        """매니페스트 적용"""
        return self.executor.run(self.node, apply_manifests_batch(documents))

    def _pods_health(self, name: str, namespace: str, selector: str, label: str,
                     hostname: Optional[str] = None) -> Tuple[bool, str]:
        """라벨로 선택한 Pod들의 컨테이너가 모두 Ready인지"""
        result = self._kubectl(
            name, f"kubectl -n {shlex.quote(namespace)} get pods -l {shlex.quote(selector)} -o json"
        )
        if not result.ok:
            return False, f"{label} pod 조회 실패: {(result.stderr or result.stdout).strip()}"
        try:
            pods = self._decode(result, f"{label} pod 목록").get("items", [])
        except CommandError as e:
            return False, str(e)

        if hostname:
            pods = [pod for pod in pods if pod.get("spec", {}).get("nodeName") == hostname]
        if not pods:
            return False, f"{label} pod 없음"

        not_ready = []
        for pod in pods:
            statuses = pod.get("status", {}).get("containerStatuses", [])
            if not statuses or not all(status.get("ready") for status in statuses):
                not_ready.append(pod.get("metadata", {}).get("name", "?"))

        if not_ready:
            return False, f"{label} pod 준비 안 됨: {', '.join(not_ready)}"
        return True, f"{label} pod {len(pods)}개 Ready"

    def cni_health(self, hostname: Optional[str] = None) -> Tuple[bool, str]:
        """Flannel Pod 상태 (hostname을 주면 해당 노드의 Pod만)"""
        return self._pods_health("cni-health", self.config.cni.namespace, "app=flannel", "flannel", hostname)

    def dns_health(self) -> Tuple[bool, str]:
        """CoreDNS Pod 상태 (kube-system, k8s-app=kube-dns)"""
        return self._pods_health("dns-health", "kube-system", "k8s-app=kube-dns", "coredns")

    def delete_node(self, hostname: str) -> ExecutionResult:
        """노드를 drain 후 API에서 삭제"""
        quoted = shlex.quote(hostname)
        batch = CommandBatch(
            name=f"delete-node-{hostname}",
            env={"KUBECONFIG": ADMIN_CONF},
            commands=[
                f"kubectl drain {quoted} --ignore-daemonsets --delete-emptydir-data --force --timeout=120s || true",
                f"kubectl delete node {quoted} --ignore-not-found",
            ],
            timeout=300,
        )
        return self.executor.run(self.node, batch)

    def wait_for_registration(self, hostname: str, timeout: float, interval: float,
                              sleep: Callable[[float], None] = time.sleep,
                              clock: Callable[[], float] = time.monotonic) -> str:
        """노드가 API에 등록될 때까지 대기"""
        def check():
            status = self.node_status(hostname)
            if status is None:
                return False, "not registered"
            return True, status.describe()

        return poll_until(check, timeout=timeout, interval=interval,
                          description=f"[{hostname}] 노드 등록 대기", sleep=sleep, clock=clock)

    def wait_ready(self, hostname: str, timeout: float, interval: float, check_cni: bool = True,
                   sleep: Callable[[float], None] = time.sleep,
                   clock: Callable[[], float] = time.monotonic) -> str:
        """노드 Ready 및 (선택) 해당 노드의 CNI 정상 상태까지 대기"""
        def check():
            status = self.node_status(hostname)
            if status is None:
                return False, "not registered"
            if not status.ready:
                return False, status.describe()
            if check_cni:
                healthy, detail = self.cni_health(hostname)
                if not healthy:
                    return False, f"Ready, CNI: {detail}"
                return True, f"Ready, CNI: {detail}"
            return True, status.describe()

        return poll_until(check, timeout=timeout, interval=interval,
                          description=f"[{hostname}] 노드 Ready 대기", sleep=sleep, clock=clock)
