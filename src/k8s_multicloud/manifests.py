"""
매니페스트 생성 모듈
kubeadm 설정, Flannel 매니페스트, CNI/서브넷 설정을 구조화된 객체로 생성하고
경계에서 한 번만 직렬화
"""

import json
from typing import Dict, List

import yaml

from .config import ClusterConfig, CNIConfig
from .roster import ClusterTopology, NodeSpec

KUBEADM_API = "kubeadm.k8s.io/v1beta3"
KUBELET_API = "kubelet.config.k8s.io/v1beta1"

CONTAINERD_SOCKET = "unix:///var/run/containerd/containerd.sock"

FLANNEL_NETWORK_NAME = "cbr0"
FLANNEL_CONFLIST_PATH = "/etc/cni/net.d/10-flannel.conflist"
FLANNEL_SUBNET_ENV_PATH = "/run/flannel/subnet.env"


def control_plane_endpoint(topology: ClusterTopology, cluster: ClusterConfig) -> str:
    """API 서버 엔드포인트 (host:port)"""
    if cluster.control_plane_endpoint:
        return cluster.control_plane_endpoint
    return f"{topology.control_plane.vpn_address}:{cluster.api_server_port}"


def kubeadm_init_config(topology: ClusterTopology, node: NodeSpec, cluster: ClusterConfig,
                        cri_socket: str = CONTAINERD_SOCKET) -> List[Dict]:
    """kubeadm init 설정 (InitConfiguration, ClusterConfiguration, KubeletConfiguration)

    노드별 Pod CIDR은 오케스트레이터가 할당하므로 controller-manager의
    자동 할당(allocate-node-cidrs)은 끈다.
    """
    cert_sans = [node.vpn_address]
    if node.external_address and node.external_address not in cert_sans:
        cert_sans.append(node.external_address)
    if node.hostname not in cert_sans:
        cert_sans.append(node.hostname)

    init_configuration = {
        "apiVersion": KUBEADM_API,
        "kind": "InitConfiguration",
        "localAPIEndpoint": {
            "advertiseAddress": node.vpn_address,
            "bindPort": cluster.api_server_port,
        },
        "nodeRegistration": {
            "name": node.hostname,
            "criSocket": cri_socket,
            "kubeletExtraArgs": {"node-ip": node.vpn_address},
        },
    }

    cluster_configuration = {
        "apiVersion": KUBEADM_API,
        "kind": "ClusterConfiguration",
        "clusterName": cluster.name,
        "kubernetesVersion": cluster.kubernetes_version,
        "controlPlaneEndpoint": control_plane_endpoint(topology, cluster),
        "networking": {
            "serviceSubnet": cluster.service_cidr,
            "podSubnet": cluster.pod_cidr,
            "dnsDomain": cluster.dns_domain,
        },
        "apiServer": {"certSANs": cert_sans},
        "controllerManager": {
            "extraArgs": {
                "cluster-cidr": cluster.pod_cidr,
                "node-cidr-mask-size": str(cluster.node_cidr_mask_size),
                "allocate-node-cidrs": "false",
            },
        },
    }

    kubelet_configuration = {
        "apiVersion": KUBELET_API,
        "kind": "KubeletConfiguration",
        "cgroupDriver": "systemd",
    }

    return [init_configuration, cluster_configuration, kubelet_configuration]


def kubeadm_join_config(node: NodeSpec, credentials, cri_socket: str = CONTAINERD_SOCKET) -> Dict:
    """kubeadm join 설정 (JoinConfiguration, bootstrap token 기반 discovery)"""
    return {
        "apiVersion": KUBEADM_API,
        "kind": "JoinConfiguration",
        "discovery": {
            "bootstrapToken": {
                "apiServerEndpoint": credentials.api_endpoint,
                "token": credentials.token,
                "caCertHashes": [credentials.ca_cert_hash],
            },
        },
        "nodeRegistration": {
            "name": node.hostname,
            "criSocket": cri_socket,
            "kubeletExtraArgs": {"node-ip": node.vpn_address},
        },
    }


def cni_conflist(cni: CNIConfig) -> Dict:
    """/etc/cni/net.d/10-flannel.conflist 내용"""
    return {
        "name": FLANNEL_NETWORK_NAME,
        "cniVersion": "0.3.1",
        "plugins": [
            {
                "type": "flannel",
                "delegate": {
                    "hairpinMode": True,
                    "isDefaultGateway": True,
                },
            },
            {
                "type": "portmap",
                "capabilities": {"portMappings": True},
            },
        ],
    }


def flannel_net_conf(cluster: ClusterConfig, cni: CNIConfig) -> Dict:
    """flanneld net-conf.json 내용"""
    backend = {"Type": cni.backend}
    if cni.backend == "vxlan":
        backend["VNI"] = cni.vni
        backend["DirectRouting"] = cni.direct_routing
    return {"Network": cluster.pod_cidr, "Backend": backend}


def flannel_interfaces(topology: ClusterTopology) -> List[str]:
    """flanneld --iface 후보 (로스터 순서, 중복 제거)"""
    interfaces = []
    for node in topology:
        if node.interface not in interfaces:
            interfaces.append(node.interface)
    return interfaces


def flannel_manifests(topology: ClusterTopology, cluster: ClusterConfig, cni: CNIConfig) -> List[Dict]:
    """Flannel 배포 매니페스트 (Namespace, RBAC, ConfigMap, DaemonSet)"""
    namespace = cni.namespace
    labels = {"tier": "node", "app": "flannel"}

    flanneld_args = ["--ip-masq", "--kube-subnet-mgr"]
    flanneld_args.extend(f"--iface={iface}" for iface in flannel_interfaces(topology))

    namespace_doc = {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {
            "name": namespace,
            "labels": {"pod-security.kubernetes.io/enforce": "privileged"},
        },
    }

    cluster_role = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRole",
        "metadata": {"name": "flannel"},
        "rules": [
            {"apiGroups": [""], "resources": ["pods"], "verbs": ["get"]},
            {"apiGroups": [""], "resources": ["nodes"], "verbs": ["get", "list", "watch"]},
            {"apiGroups": [""], "resources": ["nodes/status"], "verbs": ["patch"]},
        ],
    }

    cluster_role_binding = {
        "apiVersion": "rbac.authorization.k8s.io/v1",
        "kind": "ClusterRoleBinding",
        "metadata": {"name": "flannel"},
        "roleRef": {
            "apiGroup": "rbac.authorization.k8s.io",
            "kind": "ClusterRole",
            "name": "flannel",
        },
        "subjects": [
            {"kind": "ServiceAccount", "name": "flannel", "namespace": namespace},
        ],
    }

    service_account = {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": "flannel", "namespace": namespace},
    }

    config_map = {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": {"name": "kube-flannel-cfg", "namespace": namespace, "labels": dict(labels)},
        "data": {
            "cni-conf.json": json.dumps(cni_conflist(cni), indent=2),
            "net-conf.json": json.dumps(flannel_net_conf(cluster, cni), indent=2),
        },
    }

    daemon_set = {
        "apiVersion": "apps/v1",
        "kind": "DaemonSet",
        "metadata": {"name": "kube-flannel-ds", "namespace": namespace, "labels": dict(labels)},
        "spec": {
            "selector": {"matchLabels": {"app": "flannel"}},
            "template": {
                "metadata": {"labels": dict(labels)},
                "spec": {
                    "affinity": {
                        "nodeAffinity": {
                            "requiredDuringSchedulingIgnoredDuringExecution": {
                                "nodeSelectorTerms": [{
                                    "matchExpressions": [{
                                        "key": "kubernetes.io/os",
                                        "operator": "In",
                                        "values": ["linux"],
                                    }],
                                }],
                            },
                        },
                    },
                    "hostNetwork": True,
                    "priorityClassName": "system-node-critical",
                    "tolerations": [{"operator": "Exists", "effect": "NoSchedule"}],
                    "serviceAccountName": "flannel",
                    "initContainers": [
                        {
                            "name": "install-cni-plugin",
                            "image": cni.cni_plugin_image,
                            "command": ["cp"],
                            "args": ["-f", "/flannel", "/opt/cni/bin/flannel"],
                            "volumeMounts": [{"name": "cni-plugin", "mountPath": "/opt/cni/bin"}],
                        },
                        {
                            "name": "install-cni",
                            "image": cni.flannel_image,
                            "command": ["cp"],
                            "args": ["-f", "/etc/kube-flannel/cni-conf.json", FLANNEL_CONFLIST_PATH],
                            "volumeMounts": [
                                {"name": "cni", "mountPath": "/etc/cni/net.d"},
                                {"name": "flannel-cfg", "mountPath": "/etc/kube-flannel/"},
                            ],
                        },
                    ],
                    "containers": [{
                        "name": "kube-flannel",
                        "image": cni.flannel_image,
                        "command": ["/opt/bin/flanneld"],
                        "args": flanneld_args,
                        "resources": {
                            "requests": {"cpu": "100m", "memory": "50Mi"},
                            "limits": {"cpu": "100m", "memory": "50Mi"},
                        },
                        "securityContext": {
                            "privileged": False,
                            "capabilities": {"add": ["NET_ADMIN", "NET_RAW"]},
                        },
                        "env": [
                            {"name": "POD_NAME",
                             "valueFrom": {"fieldRef": {"fieldPath": "metadata.name"}}},
                            {"name": "POD_NAMESPACE",
                             "valueFrom": {"fieldRef": {"fieldPath": "metadata.namespace"}}},
                            {"name": "EVENT_QUEUE_DEPTH", "value": "5000"},
                        ],
                        "volumeMounts": [
                            {"name": "run", "mountPath": "/run/flannel"},
                            {"name": "flannel-cfg", "mountPath": "/etc/kube-flannel/"},
                            {"name": "xtables-lock", "mountPath": "/run/xtables.lock"},
                        ],
                    }],
                    "volumes": [
                        {"name": "run", "hostPath": {"path": "/run/flannel"}},
                        {"name": "cni-plugin", "hostPath": {"path": "/opt/cni/bin"}},
                        {"name": "cni", "hostPath": {"path": "/etc/cni/net.d"}},
                        {"name": "flannel-cfg", "configMap": {"name": "kube-flannel-cfg"}},
                        {"name": "xtables-lock",
                         "hostPath": {"path": "/run/xtables.lock", "type": "FileOrCreate"}},
                    ],
                },
            },
        },
    }

    return [namespace_doc, cluster_role, cluster_role_binding, service_account, config_map, daemon_set]


def flannel_subnet_env(cluster: ClusterConfig, cni: CNIConfig, node: NodeSpec, subnet: str) -> Dict[str, str]:
    """/run/flannel/subnet.env 내용 (노드별)"""
    return {
        "FLANNEL_NETWORK": cluster.pod_cidr,
        "FLANNEL_SUBNET": subnet,
        "FLANNEL_MTU": str(cni.mtu),
        "FLANNEL_IPMASQ": "true" if cni.ip_masq else "false",
        "FLANNEL_IFACE": node.interface,
    }


def kernel_modules() -> List[str]:
    """컨테이너 런타임/브리지 네트워킹에 필요한 커널 모듈"""
    return ["overlay", "br_netfilter"]


def sysctl_settings() -> Dict[str, str]:
    return {
        "net.bridge.bridge-nf-call-iptables": "1",
        "net.bridge.bridge-nf-call-ip6tables": "1",
        "net.ipv4.ip_forward": "1",
    }


def render_env(values: Dict[str, str]) -> str:
    """KEY=VALUE 형식으로 직렬화"""
    return "".join(f"{key}={value}\n" for key, value in values.items())


def render_sysctl(values: Dict[str, str]) -> str:
    return "".join(f"{key} = {value}\n" for key, value in values.items())


def dump_documents(documents: List[Dict]) -> str:
    """여러 YAML 문서로 직렬화"""
    return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False)


def dump_json(document: Dict) -> str:
    return json.dumps(document, indent=2) + "\n"
