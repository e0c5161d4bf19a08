"""
매니페스트 및 명령 배치 생성 테스트
"""

import json

import yaml

from k8s_multicloud.config import Config
from k8s_multicloud.k8s import JoinCredentials
from k8s_multicloud.manifests import (
    control_plane_endpoint,
    dump_documents,
    flannel_manifests,
    flannel_subnet_env,
    kubeadm_init_config,
    kubeadm_join_config,
    render_env,
)
from k8s_multicloud.steps import (
    init_batch,
    install_batch,
    join_batch,
    minor_version,
    network_batch,
    prepare_batch,
    teardown_batch,
)


def by_kind(documents):
    return {document["kind"]: document for document in documents}


def test_kubeadm_init_config(topology):
    """kubeadm init 설정"""
    cfg = Config()
    node = topology.control_plane
    docs = by_kind(kubeadm_init_config(topology, node, cfg.cluster))

    init = docs["InitConfiguration"]
    assert init["nodeRegistration"]["name"] == "cp-1"
    assert init["nodeRegistration"]["kubeletExtraArgs"]["node-ip"] == "172.16.0.1"

    cluster = docs["ClusterConfiguration"]
    assert cluster["kubernetesVersion"] == "v1.32.3"
    assert cluster["networking"]["podSubnet"] == "10.10.0.0/16"
    assert cluster["networking"]["serviceSubnet"] == "10.1.0.0/16"
    assert cluster["controlPlaneEndpoint"] == "172.16.0.1:6443"
    assert cluster["controllerManager"]["extraArgs"]["allocate-node-cidrs"] == "false"
    assert {"172.16.0.1", "203.0.113.1", "cp-1"} <= set(cluster["apiServer"]["certSANs"])

    assert docs["KubeletConfiguration"]["cgroupDriver"] == "systemd"


def test_control_plane_endpoint_override(topology):
    cfg = Config()
    cfg.cluster.control_plane_endpoint = "api.example.com:6443"
    assert control_plane_endpoint(topology, cfg.cluster) == "api.example.com:6443"


def test_kubeadm_join_config(topology):
    credentials = JoinCredentials("172.16.0.1:6443", "abcdef.0123456789abcdef", "sha256:beef")
    doc = kubeadm_join_config(topology.get("worker-1"), credentials)

    assert doc["kind"] == "JoinConfiguration"
    assert doc["discovery"]["bootstrapToken"]["apiServerEndpoint"] == "172.16.0.1:6443"
    assert doc["discovery"]["bootstrapToken"]["caCertHashes"] == ["sha256:beef"]
    assert doc["nodeRegistration"]["kubeletExtraArgs"]["node-ip"] == "172.16.0.2"


def test_flannel_manifests(topology):
    """Flannel 매니페스트"""
    cfg = Config()
    docs = flannel_manifests(topology, cfg.cluster, cfg.cni)
    kinds = [doc["kind"] for doc in docs]
    assert kinds == ["Namespace", "ClusterRole", "ClusterRoleBinding", "ServiceAccount", "ConfigMap", "DaemonSet"]

    daemon_set = by_kind(docs)["DaemonSet"]
    container = daemon_set["spec"]["template"]["spec"]["containers"][0]
    assert container["args"] == ["--ip-masq", "--kube-subnet-mgr", "--iface=wg0", "--iface=eth1"]
    assert container["securityContext"]["capabilities"]["add"] == ["NET_ADMIN", "NET_RAW"]

    net_conf = json.loads(by_kind(docs)["ConfigMap"]["data"]["net-conf.json"])
    assert net_conf == {"Network": "10.10.0.0/16",
                        "Backend": {"Type": "vxlan", "VNI": 1, "DirectRouting": True}}

    assert len(list(yaml.safe_load_all(dump_documents(docs)))) == 6


def test_flannel_subnet_env(topology):
    cfg = Config()
    env = flannel_subnet_env(cfg.cluster, cfg.cni, topology.get("worker-2"), "10.10.3.0/24")
    assert render_env(env) == (
        "FLANNEL_NETWORK=10.10.0.0/16\n"
        "FLANNEL_SUBNET=10.10.3.0/24\n"
        "FLANNEL_MTU=1450\n"
        "FLANNEL_IPMASQ=true\n"
        "FLANNEL_IFACE=eth1\n"
    )


def test_minor_version():
    assert minor_version("v1.32.3") == "v1.32"
    assert minor_version("1.30.0") == "v1.30"


def test_prepare_batch(topology):
    batch = prepare_batch(topology.get("worker-2"))
    paths = {remote_file.path: remote_file.content for remote_file in batch.files}
    assert paths["/etc/modules-load.d/k8s.conf"] == "overlay\nbr_netfilter\n"
    assert "net.ipv4.ip_forward = 1" in paths["/etc/sysctl.d/k8s.conf"]
    assert batch.commands[0] == "ip link show eth1 >/dev/null"
    assert "swapoff -a" in batch.commands


def test_install_batch():
    script = install_batch(Config()).render()
    assert "https://pkgs.k8s.io/core:/stable:/v1.32/deb/" in script
    assert "apt-mark hold kubelet kubeadm kubectl" in script
    assert "SystemdCgroup = true" in script


def test_init_and_join_are_guarded(topology):
    """kubeadm init/join은 마커 파일로 보호"""
    init = init_batch(topology, topology.control_plane, Config())
    assert "if [ ! -f /etc/kubernetes/admin.conf ]" in init.commands[0]
    assert init.files[0].path == "/etc/kubernetes/kubeadm-init.yaml"

    credentials = JoinCredentials("172.16.0.1:6443", "abcdef.0123456789abcdef", "sha256:beef")
    join = join_batch(topology.get("worker-1"), credentials, Config())
    assert "if [ ! -f /etc/kubernetes/kubelet.conf ]" in join.commands[0]


def test_network_batch(topology):
    batch = network_batch(topology.get("worker-1"), "10.10.2.0/24", Config())
    paths = {remote_file.path: remote_file.content for remote_file in batch.files}
    assert "FLANNEL_SUBNET=10.10.2.0/24\n" in paths["/run/flannel/subnet.env"]
    assert json.loads(paths["/etc/cni/net.d/10-flannel.conflist"])["name"] == "cbr0"
    assert batch.commands[0] == "systemctl restart containerd"
    assert batch.commands[-1] == "systemctl restart kubelet"


def test_teardown_batch():
    commands = teardown_batch().commands
    assert commands[0].startswith("kubeadm reset -f")
    assert "ip link delete flannel.1 2>/dev/null || true" in commands


def test_runtime_socket_and_cluster_name(topology):
    """criSocket은 runtime 설정, clusterName은 cluster.name에서"""
    cfg = Config()
    cfg.cluster.name = "prod-multicloud"
    cfg.runtime.cri_socket = "unix:///run/containerd/containerd.sock"

    init = init_batch(topology, topology.control_plane, cfg)
    docs = by_kind(yaml.safe_load_all(init.files[0].content))
    assert docs["ClusterConfiguration"]["clusterName"] == "prod-multicloud"
    assert docs["InitConfiguration"]["nodeRegistration"]["criSocket"] == "unix:///run/containerd/containerd.sock"

    credentials = JoinCredentials("172.16.0.1:6443", "abcdef.0123456789abcdef", "sha256:beef")
    join = yaml.safe_load(join_batch(topology.get("worker-1"), credentials, cfg).files[0].content)
    assert join["nodeRegistration"]["criSocket"] == "unix:///run/containerd/containerd.sock"
