"""
노드 로스터 모듈
클러스터 토폴로지(호스트명, VPN 주소, 인터페이스, 역할) 정의 및 로스터 파일 관리
"""

import os
import shutil
import ipaddress
from datetime import datetime
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import yaml

from .errors import ConfigError

# pod CIDR 문자열 → supernet 안의 블록 번호 (해당 없으면 None)
OrdinalLookup = Callable[[str], Optional[int]]


class NodeRole(str, Enum):
    """노드 역할"""
    CONTROL_PLANE = "control-plane"
    WORKER = "worker"

    @classmethod
    def parse(cls, value: str) -> "NodeRole":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ConfigError(
                f"알 수 없는 노드 역할: {value} (control-plane 또는 worker)"
            ) from None


@dataclass(frozen=True)
class NodeSpec:
    """노드 정의 (로스터 로드 후 불변)"""
    hostname: str
    vpn_address: str
    interface: str
    role: NodeRole
    external_address: str = ""
    ordinal: Optional[int] = None
    pod_cidr: Optional[str] = None

    @property
    def is_control_plane(self) -> bool:
        return self.role is NodeRole.CONTROL_PLANE

    @classmethod
    def from_string(cls, value: str) -> "NodeSpec":
        """기존 형식의 노드 문자열 파싱

        형식: hostname:vpn_ip:pod_cidr:interface:role:external_ip
        pod_cidr는 비워둘 수 있음 (할당 시 채워짐)
        """
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 6:
            raise ConfigError(
                f"노드 문자열 형식이 올바르지 않습니다: '{value}' "
                "(hostname:vpn_ip:pod_cidr:interface:role:external_ip)"
            )
        hostname, vpn_address, pod_cidr, interface, role, external_address = parts
        return cls(
            hostname=hostname,
            vpn_address=vpn_address,
            interface=interface,
            role=NodeRole.parse(role),
            external_address=external_address or vpn_address,
            pod_cidr=pod_cidr or None,
        )

    @classmethod
    def from_dict(cls, data: Dict) -> "NodeSpec":
        missing = [key for key in ("hostname", "vpn_address", "interface", "role") if not data.get(key)]
        if missing:
            raise ConfigError(f"노드 정의에 필수 항목이 없습니다: {', '.join(missing)} ({data})")

        ordinal = data.get("ordinal")
        if ordinal is not None:
            try:
                ordinal = int(ordinal)
            except (TypeError, ValueError):
                raise ConfigError(f"{data['hostname']}: ordinal은 정수여야 합니다 ({ordinal})") from None

        return cls(
            hostname=str(data["hostname"]),
            vpn_address=str(data["vpn_address"]),
            interface=str(data["interface"]),
            role=NodeRole.parse(data["role"]),
            external_address=str(data.get("external_address") or data["vpn_address"]),
            ordinal=ordinal,
            pod_cidr=data.get("pod_cidr") or None,
        )

    def to_dict(self) -> Dict:
        return {
            "hostname": self.hostname,
            "vpn_address": self.vpn_address,
            "interface": self.interface,
            "role": self.role.value,
            "external_address": self.external_address,
            "ordinal": self.ordinal,
            "pod_cidr": self.pod_cidr,
        }


@dataclass(frozen=True)
class ClusterTopology:
    """노드 목록 (순서 유지). 모든 컴포넌트에 값으로 전달됨"""
    nodes: Tuple[NodeSpec, ...]
    name: str = "multicloud"

    def __iter__(self):
        return iter(self.nodes)

    def __len__(self):
        return len(self.nodes)

    @property
    def hostnames(self) -> List[str]:
        return [node.hostname for node in self.nodes]

    @property
    def control_plane(self) -> NodeSpec:
        for node in self.nodes:
            if node.is_control_plane:
                return node
        raise ConfigError("로스터에 control-plane 노드가 없습니다")

    @property
    def workers(self) -> List[NodeSpec]:
        return [node for node in self.nodes if not node.is_control_plane]

    def get(self, hostname: str) -> NodeSpec:
        for node in self.nodes:
            if node.hostname == hostname:
                return node
        raise ConfigError(f"로스터에 없는 노드: {hostname}")

    def validate(self):
        """토폴로지 불변 조건 검증"""
        if not self.nodes:
            raise ConfigError("로스터에 노드가 없습니다")

        control_planes = [node.hostname for node in self.nodes if node.is_control_plane]
        if len(control_planes) != 1:
            raise ConfigError(
                f"control-plane 노드는 정확히 1개여야 합니다 (현재 {len(control_planes)}개: "
                f"{', '.join(control_planes) or '-'})"
            )

        seen_hosts = set()
        seen_ordinals = {}
        for node in self.nodes:
            if node.hostname in seen_hosts:
                raise ConfigError(f"중복된 호스트명: {node.hostname}")
            seen_hosts.add(node.hostname)

            for label, address in (("vpn_address", node.vpn_address),
                                   ("external_address", node.external_address)):
                if label == "external_address" and not _looks_like_ip(address):
                    # 외부 주소는 DNS 이름도 허용
                    continue
                try:
                    ipaddress.ip_address(address)
                except ValueError:
                    raise ConfigError(f"{node.hostname}: {label} 값이 올바르지 않습니다: {address}") from None

            if node.ordinal is not None:
                if node.ordinal < 1:
                    raise ConfigError(f"{node.hostname}: ordinal은 1 이상이어야 합니다 ({node.ordinal})")
                if node.ordinal in seen_ordinals:
                    raise ConfigError(
                        f"중복된 ordinal {node.ordinal}: {seen_ordinals[node.ordinal]}, {node.hostname}"
                    )
                seen_ordinals[node.ordinal] = node.hostname

        assigned = []
        for node in self.nodes:
            if not node.pod_cidr:
                continue
            try:
                network = ipaddress.ip_network(node.pod_cidr, strict=True)
            except ValueError:
                raise ConfigError(f"{node.hostname}: pod_cidr 값이 올바르지 않습니다: {node.pod_cidr}") from None
            for other_host, other in assigned:
                if network.overlaps(other):
                    raise ConfigError(
                        f"Pod CIDR 중복: {node.hostname}({network})와 {other_host}({other})"
                    )
            assigned.append((node.hostname, network))

    def next_ordinal(self) -> int:
        """사용되지 않은 다음 ordinal (기존 최대값 + 1)"""
        ordinals = [node.ordinal for node in self.nodes if node.ordinal is not None]
        return max(ordinals, default=0) + 1

    def with_ordinals(self, ordinal_for: Optional[OrdinalLookup] = None) -> "ClusterTopology":
        """ordinal이 없는 노드에 ordinal 부여

        ordinal_for가 주어지면 고정된 pod_cidr이 가리키는 블록 번호를 먼저 쓴다
        (10.10.3.0/24 → 3). 나머지는 파일 순서대로 기존 최대값 + 1부터 받는다.
        """
        taken = {node.ordinal for node in self.nodes if node.ordinal is not None}
        derived = {}
        if ordinal_for is not None:
            for node in self.nodes:
                if node.ordinal is not None or not node.pod_cidr:
                    continue
                ordinal = ordinal_for(node.pod_cidr)
                if ordinal is not None and ordinal not in taken:
                    derived[node.hostname] = ordinal
                    taken.add(ordinal)

        nodes = []
        next_ordinal = max(taken, default=0) + 1
        for node in self.nodes:
            if node.ordinal is None:
                if node.hostname in derived:
                    node = replace(node, ordinal=derived[node.hostname])
                else:
                    node = replace(node, ordinal=next_ordinal)
                    next_ordinal += 1
            nodes.append(node)
        return replace(self, nodes=tuple(nodes))

    def add_node(self, spec: NodeSpec, ordinal_for: Optional[OrdinalLookup] = None) -> "ClusterTopology":
        """노드 추가 (기존 노드는 변경하지 않음)"""
        if spec.hostname in self.hostnames:
            raise ConfigError(f"이미 로스터에 있는 노드입니다: {spec.hostname}")
        if spec.is_control_plane and any(node.is_control_plane for node in self.nodes):
            raise ConfigError("단일 control-plane 구성만 지원합니다. worker로 추가하세요")

        if spec.ordinal is None:
            ordinal = ordinal_for(spec.pod_cidr) if ordinal_for and spec.pod_cidr else None
            if ordinal is None or ordinal in {node.ordinal for node in self.nodes}:
                ordinal = self.next_ordinal()
            spec = replace(spec, ordinal=ordinal)

        topology = replace(self, nodes=self.nodes + (spec,))
        topology.validate()
        return topology

    def with_pod_cidrs(self, assignments: Dict[str, str]) -> "ClusterTopology":
        """할당된 Pod CIDR을 노드에 고정"""
        nodes = tuple(
            replace(node, pod_cidr=assignments.get(node.hostname, node.pod_cidr))
            for node in self.nodes
        )
        return replace(self, nodes=nodes)

    def select(self, hostnames: Optional[Iterable[str]] = None, role: Optional[NodeRole] = None) -> List[NodeSpec]:
        """호스트명/역할로 노드 선택"""
        wanted = set(hostnames or [])
        for hostname in wanted:
            self.get(hostname)

        selected = []
        for node in self.nodes:
            if wanted and node.hostname not in wanted:
                continue
            if role is not None and node.role is not role:
                continue
            selected.append(node)
        return selected

    def to_dict(self) -> Dict:
        return {
            "cluster": {"name": self.name},
            "nodes": [node.to_dict() for node in self.nodes],
        }


def _looks_like_ip(value: str) -> bool:
    return bool(value) and (value.replace(".", "").isdigit() or ":" in value)


def load_roster(path: str, ordinal_for: Optional[OrdinalLookup] = None) -> ClusterTopology:
    """로스터 파일 로드

    ordinal이 없는 노드는 이 시점에 ordinal을 부여받는다 (with_ordinals 참고).
    """
    path = os.path.expanduser(path)
    if not os.path.exists(path):
        raise ConfigError(f"로스터 파일을 찾을 수 없습니다: {path}")

    with open(path, 'r', encoding='utf-8') as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"로스터 파일 파싱 실패: {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"로스터 파일 형식이 올바르지 않습니다: {path}")

    nodes = []
    for entry in data.get("nodes") or []:
        if isinstance(entry, str):
            nodes.append(NodeSpec.from_string(entry))
        elif isinstance(entry, dict):
            nodes.append(NodeSpec.from_dict(entry))
        else:
            raise ConfigError(f"알 수 없는 노드 항목: {entry!r}")

    name = (data.get("cluster") or {}).get("name", "multicloud")
    topology = ClusterTopology(nodes=tuple(nodes), name=name).with_ordinals(ordinal_for)
    topology.validate()
    return topology


def save_roster(topology: ClusterTopology, path: str, backup: bool = True) -> Optional[str]:
    """로스터 파일 저장

    Returns:
        백업 파일 경로 (백업하지 않았으면 None)
    """
    path = os.path.expanduser(path)
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)

    backup_path = None
    if backup and os.path.exists(path):
        backup_path = f"{path}.bak.{datetime.now().strftime('%Y%m%d%H%M%S%f')}"
        shutil.copy2(path, backup_path)

    tmp_path = f"{path}.tmp"
    with open(tmp_path, 'w', encoding='utf-8') as f:
        f.write("# K8s Multi-Cloud node roster\n")
        f.write("# ordinal과 pod_cidr은 한 번 할당되면 유지됩니다\n")
        yaml.safe_dump(topology.to_dict(), f, default_flow_style=False, sort_keys=False)
    os.replace(tmp_path, path)
    return backup_path


def create_sample_roster(output_path: str):
    """샘플 로스터 파일 생성"""
    template = """# K8s Multi-Cloud node roster
# role: control-plane (정확히 1개) 또는 worker
# ordinal/pod_cidr을 비워두면 자동 할당 (10.10.<ordinal>.0/24)

cluster:
  name: multicloud

nodes:
  - hostname: k8s-01-oci-01
    vpn_address: 172.16.0.1
    interface: enp0s6
    role: control-plane
    external_address: 172.16.0.1
  - hostname: k8s-02-oci-02
    vpn_address: 172.16.0.2
    interface: enp0s6
    role: worker
    external_address: 172.16.0.2
  # 기존 형식의 노드 문자열도 허용: hostname:vpn_ip:pod_cidr:interface:role:external_ip
  - "k8s-03-htg-01:172.16.0.3::eth0:worker:172.16.0.3"
"""
    directory = os.path.dirname(output_path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        f.write(template)
