"""
부트스트랩 실행 리포트 생성기

실행 결과를 바탕으로 다음을 포함한 Markdown 리포트를 생성합니다:
- 노드별 최종 상태, Pod CIDR, 실패 원인
- 실패한 노드의 수동 후속 조치 명령
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional

from jinja2 import Template

from .logger import get_logger
from .roster import ClusterTopology

REPORT_TEMPLATE = """# K8s Multi-Cloud 부트스트랩 리포트

**클러스터**: {{ cluster_name }}
**생성 시간**: {{ generation_time }}
**실행 시간**: {{ started_at }} ~ {{ finished_at }}
**결과**: {% if success %}✅ 모든 노드 Verified{% else %}❌ {{ failed|length }}개 노드 실패{% endif %}

---

## 노드 상태

| 노드 | 역할 | VPN 주소 | Pod CIDR | 상태 | 실패 원인 |
|------|------|----------|----------|------|-----------|
{% for node in nodes -%}
| {{ node.hostname }} | {{ node.role }} | {{ node.vpn_address }} | {{ node.pod_cidr }} | {{ node.state }} | {{ node.failure_kind or "-" }} |
{% endfor %}
{% if failed %}
---

## 실패한 노드 후속 조치
{% for node in failed %}
### {{ node.hostname }}

- **상태**: {{ node.state }} (마지막 성공 단계: {{ node.last_successful }})
- **원인**: {{ node.failure_kind }}
- **메시지**: {{ node.reason }}

실패 원인을 해결한 뒤 마지막 성공 단계부터 재개합니다:

```bash
k8s-multicloud bootstrap --host {{ node.hostname }}
```

Pod CIDR이 비어 있으면 컨트롤 플레인에서 직접 패치합니다:

```bash
kubectl patch node {{ node.hostname }} -p '{"spec":{"podCIDR":"{{ node.pod_cidr }}","podCIDRs":["{{ node.pod_cidr }}"]}}'
```
{% if node.role == "worker" %}
워커를 수동으로 조인하려면 컨트롤 플레인에서 토큰을 발급합니다:

```bash
kubeadm token create --print-join-command
```
{% endif %}
처음부터 다시 하려면 노드를 초기화합니다:

```bash
k8s-multicloud teardown --host {{ node.hostname }} --yes
```
{% endfor %}
{% endif %}
---

## 확인 명령

```bash
kubectl get nodes -o wide
kubectl get pods -n {{ cni_namespace }} -o wide
kubectl get nodes -o custom-columns=NAME:.metadata.name,PODCIDR:.spec.podCIDR
```
{% if log_files %}
---

## 로그 파일

{% for key, value in log_files.items() -%}
{% if value is mapping -%}
{% for hostname, path in value.items() -%}
- **{{ hostname }}**: `{{ path }}`
{% endfor -%}
{% else -%}
- **{{ key }}**: `{{ value }}`
{% endif -%}
{% endfor %}
{% endif %}
"""


class ReportGenerator:
    """부트스트랩 결과 리포트 생성기"""

    def __init__(self, output_dir: str):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger()

    def render(self, report, topology: ClusterTopology, cni_namespace: str = "kube-flannel",
               log_files: Optional[Dict] = None) -> str:
        """Markdown 리포트 문자열 생성"""
        nodes = []
        for progress in report.nodes:
            spec = topology.get(progress.hostname)
            nodes.append({
                "hostname": progress.hostname,
                "role": spec.role.value,
                "vpn_address": spec.vpn_address,
                "pod_cidr": report.pod_cidrs.get(progress.hostname, spec.pod_cidr or "-"),
                "state": progress.state.value,
                "last_successful": progress.last_successful.value,
                "failure_kind": progress.failure_kind.value if progress.failure_kind else "",
                "reason": progress.reason,
            })

        return Template(REPORT_TEMPLATE).render(
            cluster_name=topology.name,
            generation_time=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
            started_at=report.started_at,
            finished_at=report.finished_at,
            success=report.success,
            nodes=nodes,
            failed=[node for node in nodes if node["state"] != "Verified"],
            cni_namespace=cni_namespace,
            log_files=log_files or {},
        )

    def generate(self, report, topology: ClusterTopology, cni_namespace: str = "kube-flannel",
                 log_files: Optional[Dict] = None) -> Path:
        """리포트를 Markdown 및 JSON 파일로 저장

        Returns:
            Path: Markdown 리포트 경로
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        report_file = self.output_dir / f"bootstrap_report_{timestamp}.md"
        with open(report_file, "w", encoding="utf-8") as f:
            f.write(self.render(report, topology, cni_namespace, log_files))

        json_file = self.output_dir / f"bootstrap_report_{timestamp}.json"
        with open(json_file, "w", encoding="utf-8") as f:
            json.dump({
                "cluster": topology.name,
                "started_at": report.started_at,
                "finished_at": report.finished_at,
                "success": report.success,
                "pod_cidrs": report.pod_cidrs,
                "nodes": [progress.to_dict() for progress in report.nodes],
            }, f, indent=2, ensure_ascii=False)

        self.logger.info(f"Bootstrap report saved: {report_file}")
        return report_file
