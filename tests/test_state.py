"""
부트스트랩 상태 머신 테스트
"""

import json
import os

import pytest

from k8s_multicloud.errors import ConfigError, InvalidTransition
from k8s_multicloud.state import BootstrapState, FailureKind, NodeProgress, StateStore


def test_advance_forward_only():
    """한 단계씩만 전진"""
    progress = NodeProgress("cp-1")
    for state in (BootstrapState.PREPARED, BootstrapState.INSTALLED, BootstrapState.INITIALIZED,
                  BootstrapState.NETWORK_ATTACHED, BootstrapState.VERIFIED):
        progress = progress.advance(state)
        assert progress.state is state
        assert progress.last_successful is state
    assert progress.verified


@pytest.mark.parametrize("start, target", [
    (BootstrapState.PENDING, BootstrapState.INSTALLED),
    (BootstrapState.INSTALLED, BootstrapState.PREPARED),
    (BootstrapState.PREPARED, BootstrapState.PREPARED),
    (BootstrapState.VERIFIED, BootstrapState.VERIFIED),
    (BootstrapState.PENDING, BootstrapState.FAILED),
])
def test_invalid_transitions(start, target):
    with pytest.raises(InvalidTransition):
        NodeProgress("n", state=start, last_successful=start).advance(target)


def test_joined_and_initialized_share_rank():
    progress = NodeProgress("w", state=BootstrapState.INSTALLED)
    assert progress.advance(BootstrapState.JOINED).state is BootstrapState.JOINED
    assert progress.advance(BootstrapState.INITIALIZED).state is BootstrapState.INITIALIZED


def test_fail_and_resume():
    """실패 후 마지막 성공 상태로 재개"""
    progress = NodeProgress("w").advance(BootstrapState.PREPARED)
    failed = progress.fail(FailureKind.COMMAND, "apt failed")

    assert failed.failed
    assert failed.last_successful is BootstrapState.PREPARED
    assert failed.failure_kind is FailureKind.COMMAND

    with pytest.raises(InvalidTransition):
        failed.advance(BootstrapState.INSTALLED)

    resumed = failed.resume()
    assert resumed.state is BootstrapState.PREPARED
    assert resumed.failure_kind is None
    assert resumed.advance(BootstrapState.INSTALLED).state is BootstrapState.INSTALLED


def test_fail_with_explicit_resume_point():
    progress = NodeProgress("w", state=BootstrapState.VERIFIED, last_successful=BootstrapState.VERIFIED)
    failed = progress.fail(FailureKind.REMEDIATION_EXHAUSTED, "still NotReady",
                           resume_from=BootstrapState.INSTALLED)
    assert failed.resume().state is BootstrapState.INSTALLED


def test_store_roundtrip(tmp_path):
    """노드별 상태 파일 저장/로드"""
    store = StateStore(str(tmp_path / "state"))
    assert store.load("cp-1").state is BootstrapState.PENDING

    progress = NodeProgress("cp-1").advance(BootstrapState.PREPARED).fail(FailureKind.TIMEOUT, "slow")
    store.save(progress)
    store.save(NodeProgress("worker-1"))

    assert store.load("cp-1") == progress
    assert sorted(store.all()) == ["cp-1", "worker-1"]
    assert os.path.exists(tmp_path / "state" / "cp-1.json")

    with open(tmp_path / "state" / "cp-1.json", encoding="utf-8") as f:
        data = json.load(f)
    assert data["state"] == "Failed"
    assert data["failure_kind"] == "timeout"

    store.clear("cp-1")
    assert store.load("cp-1").state is BootstrapState.PENDING


def test_store_corrupt_file(tmp_path):
    store = StateStore(str(tmp_path))
    (tmp_path / "cp-1.json").write_text("{broken")
    with pytest.raises(ConfigError):
        store.load("cp-1")
