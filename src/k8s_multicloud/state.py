"""
부트스트랩 상태 모듈
노드별 상태 머신 (전진만 허용) 및 노드별 JSON 상태 파일 저장
"""

import json
import os
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from .errors import ConfigError, InvalidTransition


class BootstrapState(str, Enum):
    """노드 부트스트랩 상태"""
    PENDING = "Pending"
    PREPARED = "Prepared"
    INSTALLED = "Installed"
    INITIALIZED = "Initialized"
    JOINED = "Joined"
    NETWORK_ATTACHED = "NetworkAttached"
    VERIFIED = "Verified"
    FAILED = "Failed"

    @property
    def rank(self) -> int:
        """전진 순서 (Initialized와 Joined는 같은 단계)"""
        return _RANKS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (BootstrapState.VERIFIED, BootstrapState.FAILED)


_RANKS = {
    BootstrapState.PENDING: 0,
    BootstrapState.PREPARED: 1,
    BootstrapState.INSTALLED: 2,
    BootstrapState.INITIALIZED: 3,
    BootstrapState.JOINED: 3,
    BootstrapState.NETWORK_ATTACHED: 4,
    BootstrapState.VERIFIED: 5,
    BootstrapState.FAILED: -1,
}


class FailureKind(str, Enum):
    """실패 원인 분류"""
    CONFIG = "config"
    UNREACHABLE = "unreachable"
    COMMAND = "command"
    TIMEOUT = "timeout"
    VERIFICATION_TIMEOUT = "verification_timeout"
    DEPENDENCY = "dependency"
    INTERNAL = "internal"
    REMEDIATION_EXHAUSTED = "remediation_exhausted"


def _now() -> str:
    return datetime.now().isoformat(timespec="seconds")


@dataclass(frozen=True)
class NodeProgress:
    """노드 하나의 진행 상태"""
    hostname: str
    state: BootstrapState = BootstrapState.PENDING
    last_successful: BootstrapState = BootstrapState.PENDING
    failure_kind: Optional[FailureKind] = None
    reason: str = ""
    updated_at: str = ""

    @property
    def failed(self) -> bool:
        return self.state is BootstrapState.FAILED

    @property
    def verified(self) -> bool:
        return self.state is BootstrapState.VERIFIED

    def advance(self, target: BootstrapState) -> "NodeProgress":
        """한 단계 전진

        Raises:
            InvalidTransition: 종료 상태에서의 전이, 역방향 또는 단계 건너뛰기
        """
        if target is BootstrapState.FAILED:
            raise InvalidTransition("실패 전이는 fail()을 사용하세요")
        if self.state.is_terminal:
            raise InvalidTransition(f"[{self.hostname}] {self.state.value} 상태에서는 전이할 수 없습니다")
        if target.rank != self.state.rank + 1:
            raise InvalidTransition(
                f"[{self.hostname}] {self.state.value} → {target.value} 전이는 허용되지 않습니다"
            )
        return replace(self, state=target, last_successful=target,
                       failure_kind=None, reason="", updated_at=_now())

    def fail(self, kind: FailureKind, reason: str,
             resume_from: Optional[BootstrapState] = None) -> "NodeProgress":
        """실패로 전이 (마지막 성공 상태를 기록하여 재개 지점으로 사용)"""
        last = resume_from or (self.last_successful if self.failed else self.state)
        return replace(self, state=BootstrapState.FAILED, last_successful=last,
                       failure_kind=kind, reason=reason, updated_at=_now())

    def resume(self) -> "NodeProgress":
        """실패 상태에서 마지막 성공 상태로 복귀"""
        if not self.failed:
            return self
        return replace(self, state=self.last_successful, failure_kind=None,
                       reason="", updated_at=_now())

    def to_dict(self) -> Dict:
        return {
            "hostname": self.hostname,
            "state": self.state.value,
            "last_successful": self.last_successful.value,
            "failure_kind": self.failure_kind.value if self.failure_kind else None,
            "reason": self.reason,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> "NodeProgress":
        kind = data.get("failure_kind")
        return cls(
            hostname=data["hostname"],
            state=BootstrapState(data.get("state", BootstrapState.PENDING.value)),
            last_successful=BootstrapState(data.get("last_successful", BootstrapState.PENDING.value)),
            failure_kind=FailureKind(kind) if kind else None,
            reason=data.get("reason", ""),
            updated_at=data.get("updated_at", ""),
        )


class StateStore:
    """노드별 상태 파일 저장소 (<state_dir>/<hostname>.json)

    노드 작업끼리 같은 파일을 공유하지 않으므로 잠금이 필요 없다.
    """

    def __init__(self, state_dir: str):
        self.state_dir = os.path.expanduser(state_dir)
        os.makedirs(self.state_dir, exist_ok=True)

    def _path(self, hostname: str) -> str:
        return os.path.join(self.state_dir, f"{hostname}.json")

    def load(self, hostname: str) -> NodeProgress:
        """저장된 상태 (없으면 Pending)"""
        path = self._path(hostname)
        if not os.path.exists(path):
            return NodeProgress(hostname=hostname)
        with open(path, 'r', encoding='utf-8') as f:
            try:
                return NodeProgress.from_dict(json.load(f))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                raise ConfigError(f"상태 파일이 손상되었습니다: {path} ({e})") from e

    def save(self, progress: NodeProgress):
        path = self._path(progress.hostname)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(progress.to_dict(), f, indent=2)
        os.replace(tmp_path, path)

    def all(self) -> Dict[str, NodeProgress]:
        """저장된 모든 노드 상태"""
        states = {}
        for filename in sorted(os.listdir(self.state_dir)):
            if filename.endswith(".json"):
                hostname = filename[:-len(".json")]
                states[hostname] = self.load(hostname)
        return states

    def clear(self, hostname: str):
        path = self._path(hostname)
        if os.path.exists(path):
            os.remove(path)
