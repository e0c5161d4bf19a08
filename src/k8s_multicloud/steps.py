"""
노드 단계별 명령 배치
각 상태 전이에 필요한 멱등 명령 묶음 (재실행해도 결과가 같도록 마커 파일로 보호)
"""

from typing import List

from .config import Config
from .executor import CommandBatch, RemoteFile
from .manifests import (
    FLANNEL_CONFLIST_PATH,
    FLANNEL_SUBNET_ENV_PATH,
    cni_conflist,
    dump_documents,
    dump_json,
    flannel_subnet_env,
    kernel_modules,
    kubeadm_init_config,
    kubeadm_join_config,
    render_env,
    render_sysctl,
    sysctl_settings,
)
from .roster import ClusterTopology, NodeSpec

ADMIN_CONF = "/etc/kubernetes/admin.conf"
KUBELET_CONF = "/etc/kubernetes/kubelet.conf"
KUBEADM_INIT_PATH = "/etc/kubernetes/kubeadm-init.yaml"
KUBEADM_JOIN_PATH = "/etc/kubernetes/kubeadm-join.yaml"
MODULES_LOAD_PATH = "/etc/modules-load.d/k8s.conf"
SYSCTL_PATH = "/etc/sysctl.d/k8s.conf"
KEYRING_PATH = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
APT_SOURCE_PATH = "/etc/apt/sources.list.d/kubernetes.list"

BASE_PACKAGES = ["apt-transport-https", "ca-certificates", "curl", "gpg", "iproute2", "iptables"]
KUBE_PACKAGES = ["kubelet", "kubeadm", "kubectl"]


def minor_version(kubernetes_version: str) -> str:
    """v1.32.3 → v1.32 (pkgs.k8s.io 저장소 경로)"""
    parts = kubernetes_version.lstrip("v").split(".")
    return "v" + ".".join(parts[:2])


def prepare_batch(node: NodeSpec) -> CommandBatch:
    """시스템 준비 (인터페이스 확인, swap 비활성화, 커널 모듈, sysctl)"""
    modules = kernel_modules()
    commands = [
        f"ip link show {node.interface} >/dev/null",
        "swapoff -a",
        # fstab의 swap 항목을 주석 처리 (이미 주석이면 그대로)
        r"sed -ri '/^[^#].*\sswap\s/s/^/#/' /etc/fstab",
    ]
    commands.extend(f"modprobe {module}" for module in modules)
    commands.extend([
        "sysctl --system >/dev/null",
        "export DEBIAN_FRONTEND=noninteractive",
        "apt-get update -q",
        f"apt-get install -y -q {' '.join(BASE_PACKAGES)}",
    ])
    return CommandBatch(
        name="prepare",
        files=[
            RemoteFile(MODULES_LOAD_PATH, "".join(f"{module}\n" for module in modules)),
            RemoteFile(SYSCTL_PATH, render_sysctl(sysctl_settings())),
        ],
        commands=commands,
    )


def install_batch(config: Config) -> CommandBatch:
    """containerd 및 kubelet/kubeadm/kubectl 설치 (버전 고정)"""
    repo = f"https://pkgs.k8s.io/core:/stable:/{minor_version(config.cluster.kubernetes_version)}/deb/"
    commands = [
        "export DEBIAN_FRONTEND=noninteractive",
        "apt-get install -y -q containerd",
        "install -d /etc/containerd",
        "containerd config default > /etc/containerd/config.toml",
        "sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml",
        "systemctl enable containerd",
        "systemctl restart containerd",
        "install -d -m 0755 /etc/apt/keyrings",
        f"if [ ! -s {KEYRING_PATH} ]; then "
        f"curl -fsSL {repo}Release.key | gpg --dearmor -o {KEYRING_PATH}; fi",
        f"echo 'deb [signed-by={KEYRING_PATH}] {repo} /' > {APT_SOURCE_PATH}",
        "apt-get update -q",
        f"apt-mark unhold {' '.join(KUBE_PACKAGES)} >/dev/null 2>&1 || true",
        f"apt-get install -y -q {' '.join(KUBE_PACKAGES)}",
        f"apt-mark hold {' '.join(KUBE_PACKAGES)}",
        "systemctl enable kubelet",
    ]
    return CommandBatch(name="install", commands=commands)


def init_batch(topology: ClusterTopology, node: NodeSpec, config: Config) -> CommandBatch:
    """kubeadm init (admin.conf가 있으면 건너뜀)"""
    documents = kubeadm_init_config(topology, node, config.cluster, config.runtime.cri_socket)
    commands = [
        f"if [ ! -f {ADMIN_CONF} ]; then "
        f"kubeadm init --config {KUBEADM_INIT_PATH} --upload-certs; fi",
        "install -d -m 0700 $HOME/.kube",
        f"cp -f {ADMIN_CONF} $HOME/.kube/config",
        "chmod 0600 $HOME/.kube/config",
    ]
    return CommandBatch(
        name="init",
        files=[RemoteFile(KUBEADM_INIT_PATH, dump_documents(documents), mode="0600")],
        commands=commands,
    )


def join_batch(node: NodeSpec, credentials, config: Config) -> CommandBatch:
    """kubeadm join (kubelet.conf가 있으면 이미 멤버이므로 건너뜀)"""
    document = kubeadm_join_config(node, credentials, config.runtime.cri_socket)
    return CommandBatch(
        name="join",
        files=[RemoteFile(KUBEADM_JOIN_PATH, dump_documents([document]), mode="0600")],
        commands=[
            f"if [ ! -f {KUBELET_CONF} ]; then kubeadm join --config {KUBEADM_JOIN_PATH}; fi",
        ],
    )


def network_batch(node: NodeSpec, subnet: str, config: Config) -> CommandBatch:
    """CNI 설정과 Flannel 서브넷 파일을 기록하고 런타임/kubelet 재시작"""
    env = flannel_subnet_env(config.cluster, config.cni, node, subnet)
    return CommandBatch(
        name="network",
        files=[
            RemoteFile(FLANNEL_CONFLIST_PATH, dump_json(cni_conflist(config.cni))),
            RemoteFile(FLANNEL_SUBNET_ENV_PATH, render_env(env)),
        ],
        commands=[
            "systemctl restart containerd",
            "sleep 5",
            "systemctl restart kubelet",
        ],
    )


def apply_manifests_batch(documents: List[dict]) -> CommandBatch:
    """매니페스트 적용 (컨트롤 플레인에서 kubectl apply)"""
    path = "/etc/kubernetes/k8s-multicloud-manifests.yaml"
    return CommandBatch(
        name="apply-manifests",
        env={"KUBECONFIG": ADMIN_CONF},
        files=[RemoteFile(path, dump_documents(documents))],
        commands=[f"kubectl apply -f {path}"],
    )


def teardown_batch() -> CommandBatch:
    """노드 초기화 (kubeadm reset 후 CNI/kubelet/etcd 상태 정리)"""
    commands = [
        "kubeadm reset -f || true",
        "rm -rf /etc/cni/net.d/*",
        f"rm -rf {KUBELET_CONF} /etc/kubernetes/bootstrap-kubelet.conf {ADMIN_CONF} /etc/kubernetes/pki",
        f"rm -f {KUBEADM_INIT_PATH} {KUBEADM_JOIN_PATH} {FLANNEL_SUBNET_ENV_PATH}",
        "rm -rf $HOME/.kube/config /var/lib/kubelet /var/lib/etcd /var/lib/cni",
        "iptables -F || true",
        "iptables -t nat -F || true",
        "ip link delete cni0 2>/dev/null || true",
        "ip link delete flannel.1 2>/dev/null || true",
        "systemctl restart containerd || true",
    ]
    return CommandBatch(name="teardown", commands=commands)
