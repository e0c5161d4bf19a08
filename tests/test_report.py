"""
부트스트랩 리포트 생성 테스트
"""

import json

from k8s_multicloud.bootstrap import BootstrapReport
from k8s_multicloud.report import ReportGenerator
from k8s_multicloud.state import BootstrapState, FailureKind, NodeProgress


def sample_report():
    verified = NodeProgress("cp-1", BootstrapState.VERIFIED, BootstrapState.VERIFIED)
    failed = NodeProgress("worker-1", BootstrapState.INSTALLED, BootstrapState.INSTALLED).fail(
        FailureKind.DEPENDENCY, "control plane failed"
    )
    return BootstrapReport(
        nodes=[verified, failed],
        pod_cidrs={"cp-1": "10.10.1.0/24", "worker-1": "10.10.2.0/24"},
        started_at="2024-01-01T00:00:00",
        finished_at="2024-01-01T00:10:00",
        roles={"cp-1": "control-plane", "worker-1": "worker"},
    )


def test_render_includes_follow_up_for_failed_nodes(topology, tmp_path):
    """실패한 노드에 대한 후속 조치 명령 포함"""
    markdown = ReportGenerator(str(tmp_path)).render(sample_report(), topology)

    assert "| cp-1 | control-plane | 172.16.0.1 | 10.10.1.0/24 | Verified | - |" in markdown
    assert "### worker-1" in markdown
    assert "k8s-multicloud bootstrap --host worker-1" in markdown
    assert "kubeadm token create --print-join-command" in markdown
    assert "### cp-1" not in markdown


def test_generate_writes_markdown_and_json(topology, tmp_path):
    report_file = ReportGenerator(str(tmp_path)).generate(
        sample_report(), topology,
        log_files={"main_log": "/tmp/main.log", "node_logs": {"worker-1": "/tmp/node_worker-1.log"}},
    )

    assert report_file.exists()
    markdown = report_file.read_text(encoding="utf-8")
    assert "/tmp/main.log" in markdown
    assert "- **worker-1**: `/tmp/node_worker-1.log`" in markdown
    with open(report_file.with_suffix(".json"), encoding="utf-8") as f:
        data = json.load(f)
    assert data["success"] == False
    assert data["nodes"][1]["failure_kind"] == "dependency"
