"""
설정 관리 모듈
YAML/JSON 기반 설정 파일 관리 및 기본값 제공
"""

import os
import ipaddress
import yaml
import json
from typing import Dict, Any, Optional
from dataclasses import dataclass, asdict

from .errors import ConfigError


@dataclass
class ClusterConfig:
    """클러스터 전역 설정"""
    name: str = "multicloud"
    kubernetes_version: str = "v1.32.3"
    pod_cidr: str = "10.10.0.0/16"
    node_cidr_mask_size: int = 24
    service_cidr: str = "10.1.0.0/16"
    dns_domain: str = "cluster.local"
    control_plane_endpoint: str = ""  # 비워두면 <컨트롤 플레인 VPN IP>:6443
    api_server_port: int = 6443


@dataclass
class CNIConfig:
    """CNI (Flannel) 설정"""
    plugin: str = "flannel"
    backend: str = "vxlan"
    vni: int = 1
    mtu: int = 1450
    direct_routing: bool = True
    ip_masq: bool = True
    namespace: str = "kube-flannel"
    flannel_image: str = "docker.io/flannel/flannel:v0.24.0"
    cni_plugin_image: str = "docker.io/flannel/flannel-cni-plugin:v1.1.2"


@dataclass
class RuntimeConfig:
    """컨테이너 런타임 설정 (containerd만 지원)"""
    type: str = "containerd"
    cri_socket: str = "unix:///var/run/containerd/containerd.sock"


@dataclass
class SSHConfig:
    """원격 노드 SSH 접속 설정"""
    user: str = "root"
    port: int = 22
    key_path: str = "~/.ssh/id_ed25519"
    password: str = ""
    connect_timeout: int = 15
    sudo: Optional[bool] = None  # None이면 root가 아닐 때 자동으로 sudo 사용
    use_external_address: bool = False  # True면 VPN 주소 대신 external_address로 접속


@dataclass
class AgentConfig:
    """오케스트레이터 설정"""
    log_dir: str = "/var/log/k8s-multicloud"
    log_level: str = "INFO"
    state_dir: str = "/var/lib/k8s-multicloud/state"
    roster_path: str = "./roster.yaml"
    local_hostname: str = ""  # 비워두면 socket.gethostname()
    command_timeout: int = 900
    max_retry: int = 5
    retry_backoff: float = 2.0
    verify_timeout: int = 300
    poll_interval: int = 10
    join_timeout: int = 1800


@dataclass
class ReconcilerConfig:
    """NotReady 노드 복구 설정"""
    interval: int = 30
    grace_period: int = 120
    max_remediations: int = 3


class Config:
    """전체 설정 관리 클래스"""

    DEFAULT_CONFIG_PATHS = [
        "/etc/k8s-multicloud/config.yaml",
        "~/.k8s-multicloud/config.yaml",
        "./config/config.yaml",
        "./config.yaml",
    ]

    SECTIONS = ("cluster", "cni", "runtime", "ssh", "agent", "reconciler")

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path
        self.cluster = ClusterConfig()
        self.cni = CNIConfig()
        self.runtime = RuntimeConfig()
        self.ssh = SSHConfig()
        self.agent = AgentConfig()
        self.reconciler = ReconcilerConfig()

        if config_path:
            self.load(config_path)
        else:
            self._load_from_default_paths()

    def _load_from_default_paths(self):
        """기본 경로에서 설정 파일 로드"""
        for path in self.DEFAULT_CONFIG_PATHS:
            expanded_path = os.path.expanduser(path)
            if os.path.exists(expanded_path):
                self.load(expanded_path)
                return

    def load(self, path: str):
        """설정 파일 로드"""
        path = os.path.expanduser(path)
        if not os.path.exists(path):
            raise ConfigError(f"설정 파일을 찾을 수 없습니다: {path}")

        with open(path, 'r', encoding='utf-8') as f:
            try:
                if path.endswith('.json'):
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f) or {}
            except (yaml.YAMLError, json.JSONDecodeError) as e:
                raise ConfigError(f"설정 파일 파싱 실패: {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"설정 파일 형식이 올바르지 않습니다: {path}")

        self._update_from_dict(data)
        self.config_path = path

    def _update_from_dict(self, data: Dict[str, Any]):
        """딕셔너리에서 설정 업데이트 (알 수 없는 키는 무시)"""
        for section in self.SECTIONS:
            values = data.get(section) or {}
            target = getattr(self, section)
            for key, value in values.items():
                if hasattr(target, key):
                    setattr(target, key, value)

    def validate(self):
        """설정 값 검증

        Raises:
            ConfigError: 잘못된 CIDR, 지원하지 않는 CNI, 잘못된 타임아웃
        """
        for label, value in (("cluster.pod_cidr", self.cluster.pod_cidr),
                             ("cluster.service_cidr", self.cluster.service_cidr)):
            try:
                ipaddress.ip_network(value, strict=True)
            except ValueError as e:
                raise ConfigError(f"{label} 값이 올바르지 않습니다: {value} ({e})") from e

        pod_net = ipaddress.ip_network(self.cluster.pod_cidr)
        service_net = ipaddress.ip_network(self.cluster.service_cidr)
        if pod_net.overlaps(service_net):
            raise ConfigError(
                f"pod_cidr {pod_net}와 service_cidr {service_net}가 겹칩니다"
            )

        if not pod_net.prefixlen < self.cluster.node_cidr_mask_size <= pod_net.max_prefixlen:
            raise ConfigError(
                f"node_cidr_mask_size {self.cluster.node_cidr_mask_size}는 "
                f"{pod_net}보다 작은 블록이어야 합니다"
            )

        if self.cni.plugin != "flannel":
            raise ConfigError(f"지원하지 않는 CNI 플러그인: {self.cni.plugin} (flannel만 지원)")

        if self.runtime.type != "containerd":
            raise ConfigError(f"지원하지 않는 컨테이너 런타임: {self.runtime.type} (containerd만 지원)")

        for key in ("command_timeout", "verify_timeout", "join_timeout", "max_retry"):
            if getattr(self.agent, key) <= 0:
                raise ConfigError(f"agent.{key} 값은 0보다 커야 합니다")

        if self.reconciler.max_remediations < 0:
            raise ConfigError("reconciler.max_remediations 값은 0 이상이어야 합니다")

    def use_sudo(self) -> bool:
        """원격 명령에 sudo 사용 여부"""
        if self.ssh.sudo is None:
            return self.ssh.user != "root"
        return bool(self.ssh.sudo)

    def save(self, path: Optional[str] = None):
        """설정 파일 저장"""
        save_path = path or self.config_path or self.DEFAULT_CONFIG_PATHS[0]
        save_path = os.path.expanduser(save_path)

        directory = os.path.dirname(save_path)
        if directory:
            os.makedirs(directory, exist_ok=True)

        with open(save_path, 'w', encoding='utf-8') as f:
            if save_path.endswith('.json'):
                json.dump(self.to_dict(), f, indent=2)
            else:
                yaml.safe_dump(self.to_dict(), f, default_flow_style=False, allow_unicode=True)

    def to_dict(self) -> Dict[str, Any]:
        """딕셔너리로 변환"""
        return {section: asdict(getattr(self, section)) for section in self.SECTIONS}

    def create_sample(self, output_path: str):
        """샘플 설정 파일 생성"""
        template = """# K8s Multi-Cloud Bootstrap Configuration File
# 이 파일을 복사하여 config.yaml로 사용하세요

# 클러스터 설정
cluster:
  name: "multicloud"              # kubeadm clusterName
  kubernetes_version: "v1.32.3"
  pod_cidr: "10.10.0.0/16"        # 노드별 /24가 여기서 할당됨 (10.10.<ordinal>.0/24)
  node_cidr_mask_size: 24
  service_cidr: "10.1.0.0/16"
  dns_domain: "cluster.local"
  control_plane_endpoint: ""      # 비워두면 <컨트롤 플레인 VPN IP>:6443
  api_server_port: 6443

# CNI 설정 (flannel만 지원)
cni:
  plugin: "flannel"
  backend: "vxlan"
  vni: 1
  mtu: 1450
  direct_routing: true
  ip_masq: true
  namespace: "kube-flannel"

# 컨테이너 런타임
runtime:
  type: "containerd"  # containerd만 지원
  cri_socket: "unix:///var/run/containerd/containerd.sock"

# SSH 설정 (원격 노드)
ssh:
  user: "root"
  port: 22
  key_path: "~/.ssh/id_ed25519"
  password: ""
  connect_timeout: 15
  use_external_address: false  # true면 VPN 주소 대신 external_address로 접속

# 오케스트레이터 설정
agent:
  log_dir: "/var/log/k8s-multicloud"
  log_level: "INFO"  # DEBUG, INFO, WARNING, ERROR
  state_dir: "/var/lib/k8s-multicloud/state"
  roster_path: "./roster.yaml"
  local_hostname: ""  # 비워두면 현재 호스트명
  command_timeout: 900
  max_retry: 5
  retry_backoff: 2.0
  verify_timeout: 300
  poll_interval: 10
  join_timeout: 1800

# NotReady 노드 자동 복구
reconciler:
  interval: 30
  grace_period: 120
  max_remediations: 3
"""

        directory = os.path.dirname(output_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8') as f:
            f.write(template)
