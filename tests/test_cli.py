"""
CLI 테스트
"""

from pathlib import Path

import pytest
import yaml
from click.testing import CliRunner

from k8s_multicloud import cli as cli_module
from k8s_multicloud.bootstrap import BootstrapOrchestrator
from k8s_multicloud.cli import cli
from k8s_multicloud.config import Config
from k8s_multicloud.errors import CommandError
from k8s_multicloud.network import NetworkChecker
from k8s_multicloud.roster import load_roster, save_roster
from k8s_multicloud.state import StateStore


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def files(tmp_path, config, topology):
    """테스트용 설정/로스터 파일"""
    config_path = str(tmp_path / "config.yaml")
    roster_path = str(tmp_path / "roster.yaml")
    config.save(config_path)
    save_roster(topology, roster_path, backup=False)
    return config_path, roster_path


@pytest.fixture
def fake_orchestrator(monkeypatch, executor, control_plane, clock):
    """CLI가 가짜 실행기/컨트롤 플레인으로 오케스트레이터를 만들도록 교체"""
    def factory(cfg, topology, **kwargs):
        return BootstrapOrchestrator(
            cfg, topology, executor=executor, control_plane=control_plane,
            store=StateStore(cfg.agent.state_dir), sleep=clock.sleep, clock=clock, **kwargs
        )

    monkeypatch.setattr(cli_module, "BootstrapOrchestrator", factory)
    return factory


def test_init_creates_sample_files(runner, tmp_path):
    """init 명령이 샘플 설정과 로스터 생성"""
    result = runner.invoke(cli, ["init", "sample.yaml", "--roster-output", "nodes.yaml"])

    assert result.exit_code == 0
    assert (tmp_path / "sample.yaml").exists()
    assert Config(str(tmp_path / "sample.yaml")).cni.plugin == "flannel"
    assert load_roster(str(tmp_path / "nodes.yaml")).control_plane is not None


def test_validate(runner, files):
    config_path, roster_path = files
    result = runner.invoke(cli, ["validate", "-c", config_path, "-r", roster_path])

    assert result.exit_code == 0
    assert "유효합니다" in result.output


def test_validate_invalid_roster(runner, files, tmp_path):
    """잘못된 로스터는 종료 코드 1"""
    config_path, _ = files
    roster_path = tmp_path / "broken.yaml"
    roster_path.write_text(yaml.safe_dump({"nodes": [
        {"hostname": "a", "vpn_address": "172.16.0.1", "interface": "wg0", "role": "control-plane"},
        {"hostname": "b", "vpn_address": "172.16.0.2", "interface": "wg0", "role": "control-plane"},
    ]}))

    result = runner.invoke(cli, ["validate", "-c", config_path, "-r", str(roster_path)])

    assert result.exit_code == 1


def test_allocate_persists_pod_cidrs(runner, files):
    config_path, roster_path = files
    result = runner.invoke(cli, ["allocate", "-c", config_path, "-r", roster_path])

    assert result.exit_code == 0
    saved = load_roster(roster_path)
    assert [node.pod_cidr for node in saved] == ["10.10.1.0/24", "10.10.2.0/24", "10.10.3.0/24"]


def test_add_node_uses_next_ordinal(runner, files):
    """새 노드는 다음 ordinal과 Pod CIDR을 받고 기존 노드는 유지"""
    config_path, roster_path = files
    result = runner.invoke(cli, [
        "add-node", "-c", config_path, "-r", roster_path,
        "--hostname", "worker-3", "--vpn-address", "172.16.0.4", "--interface", "wg0",
    ])

    assert result.exit_code == 0
    saved = load_roster(roster_path)
    added = saved.get("worker-3")
    assert added.ordinal == 4
    assert added.pod_cidr == "10.10.4.0/24"
    assert saved.get("worker-1").pod_cidr == "10.10.2.0/24"


def test_add_node_after_removed_legacy_node(runner, files, tmp_path):
    """노드 문자열 로스터에서 중간 노드가 빠져도 고정된 CIDR과 겹치지 않음"""
    config_path, _ = files
    roster_path = tmp_path / "legacy.yaml"
    roster_path.write_text(yaml.safe_dump({"nodes": [
        "k8s-01:172.16.0.1:10.10.1.0/24:enp0s6:control-plane:172.16.0.1",
        "k8s-03:172.16.0.3:10.10.3.0/24:eth0:worker:172.16.0.3",
    ]}), encoding="utf-8")

    result = runner.invoke(cli, [
        "add-node", "-c", config_path, "-r", str(roster_path),
        "--hostname", "k8s-04", "--vpn-address", "172.16.0.4", "--interface", "eth0",
    ])

    assert result.exit_code == 0, result.output
    saved = load_roster(str(roster_path))
    assert saved.get("k8s-03").ordinal == 3
    assert saved.get("k8s-04").ordinal == 4
    assert saved.get("k8s-04").pod_cidr == "10.10.4.0/24"


def test_add_node_requires_fields(runner, files):
    config_path, roster_path = files
    result = runner.invoke(cli, ["add-node", "-c", config_path, "-r", roster_path, "--hostname", "x"])
    assert result.exit_code == 1


def test_add_duplicate_node(runner, files):
    config_path, roster_path = files
    result = runner.invoke(cli, [
        "add-node", "-c", config_path, "-r", roster_path,
        "--spec", "worker-1:172.16.0.9::wg0:worker:",
    ])
    assert result.exit_code == 1


def test_bootstrap_command(runner, files, fake_orchestrator, config):
    """bootstrap 명령 성공 시 종료 코드 0 및 리포트 생성"""
    config_path, roster_path = files
    result = runner.invoke(cli, ["bootstrap", "-c", config_path, "-r", roster_path])

    assert result.exit_code == 0, result.output
    reports = list(Path(config.agent.log_dir).glob("bootstrap_report_*.md"))
    assert len(reports) == 1
    assert "worker-2" in reports[0].read_text(encoding="utf-8")
    assert load_roster(roster_path).get("worker-2").pod_cidr == "10.10.3.0/24"


def test_bootstrap_command_failure_exit_code(runner, files, fake_orchestrator, executor):
    config_path, roster_path = files
    executor.fail_on("worker-1", "install", CommandError("apt failed", "worker-1"))

    result = runner.invoke(cli, ["bootstrap", "-c", config_path, "-r", roster_path])

    assert result.exit_code == 1


def test_status_command(runner, files, monkeypatch, control_plane):
    config_path, roster_path = files
    monkeypatch.setattr(cli_module, "ControlPlane", lambda node, executor, cfg: control_plane)
    monkeypatch.setattr(NetworkChecker, "check_api_server",
                        lambda self, host, port=None, timeout=5: (False, "✗ API 서버 연결 실패"))

    result = runner.invoke(cli, ["status", "-c", config_path, "-r", roster_path])

    assert result.exit_code == 0
    assert "CNI" in result.output
    assert "DNS" in result.output


def test_teardown_requires_confirmation(runner, files, fake_orchestrator, executor):
    config_path, roster_path = files
    result = runner.invoke(cli, ["teardown", "-c", config_path, "-r", roster_path], input="n\n")

    assert result.exit_code == 0
    assert executor.calls == []


def test_health_summary_without_reports(runner, files, config):
    config_path, _ = files
    result = runner.invoke(cli, ["health-summary", "-c", config_path])

    assert result.exit_code == 0
    assert "헬스 리포트가 없습니다" in result.output
