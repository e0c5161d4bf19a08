"""
클러스터 리컨실러

이 모듈은 다음 기능을 제공합니다:
- 노드 Ready 상태, Flannel 및 CoreDNS Pod 상태 주기적 확인
- grace period 이상 NotReady인 노드의 네트워크 단계 재실행
- 최대 복구 횟수 초과 시 노드를 Failed(remediation_exhausted)로 표시
- 주기별 헬스 리포트 저장 및 요약
"""

import json
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Optional

from .cidr import CIDRAllocator
from .config import Config
from .errors import BootstrapError
from .executor import RemoteExecutor
from .k8s import ControlPlane, NodeCondition
from .logger import get_logger
from .roster import ClusterTopology, NodeSpec
from .state import BootstrapState, FailureKind, StateStore
from .steps import network_batch


class ClusterReconciler:
    """NotReady 노드를 감지하여 해당 노드만 네트워크를 다시 연결하는 클래스"""

    def __init__(self, config: Config, topology: ClusterTopology, executor: RemoteExecutor,
                 control_plane: ControlPlane, store: StateStore, log_dir: Optional[str] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            config: 전체 설정
            topology: 클러스터 토폴로지
            executor: 노드 명령 실행기
            control_plane: 컨트롤 플레인 클라이언트
            store: 노드 상태 저장소
            log_dir: 헬스 리포트 저장 경로 (기본값: agent.log_dir)
        """
        self.config = config
        self.topology = topology
        self.executor = executor
        self.control_plane = control_plane
        self.store = store
        self.log_dir = Path(log_dir or config.agent.log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.sleep = sleep
        self.clock = clock
        self.logger = get_logger()

        self.not_ready_since: Dict[str, float] = {}
        self.remediations: Dict[str, int] = {}
        self.running = False

        self._allocator = CIDRAllocator(config.cluster.pod_cidr, config.cluster.node_cidr_mask_size)

    def _pod_cidr(self, node: NodeSpec) -> str:
        if node.pod_cidr:
            return node.pod_cidr
        return str(self._allocator.subnet_for(node.ordinal))

    def remediate(self, node: NodeSpec) -> bool:
        """네트워크 단계 재실행 (서브넷 파일 재작성, 런타임 재시작)"""
        attempt = self.remediations.get(node.hostname, 0) + 1
        self.remediations[node.hostname] = attempt
        logger = self.logger.for_node(node.hostname)
        logger.warning(
            "re-attaching network "
            f"(attempt {attempt}/{self.config.reconciler.max_remediations})"
        )
        try:
            cidr = self.control_plane.ensure_pod_cidr(node.hostname, self._pod_cidr(node))
            self.executor.run(node, network_batch(node, cidr, self.config))
        except BootstrapError as e:
            logger.error(f"remediation failed: {e}")
            return False
        return True

    def _check_node(self, node: NodeSpec, condition: Optional[NodeCondition]) -> Dict:
        hostname = node.hostname
        progress = self.store.load(hostname)

        if progress.failed and progress.failure_kind is FailureKind.REMEDIATION_EXHAUSTED:
            return {"healthy": False, "status": "exhausted", "message": progress.reason}

        if condition is None and progress.state not in (BootstrapState.NETWORK_ATTACHED,
                                                        BootstrapState.VERIFIED):
            return {"healthy": False, "status": "not_bootstrapped", "message": progress.state.value}

        if condition is not None and condition.ready:
            if hostname in self.not_ready_since or hostname in self.remediations:
                self.logger.for_node(hostname).info("is Ready again")
            self.not_ready_since.pop(hostname, None)
            self.remediations.pop(hostname, None)
            return {"healthy": True, "status": "Ready", "pod_cidr": condition.pod_cidr, "message": "Ready"}

        detail = condition.describe() if condition else "not registered"
        now = self.clock()
        since = self.not_ready_since.setdefault(hostname, now)
        not_ready_for = now - since

        if not_ready_for < self.config.reconciler.grace_period:
            self.logger.for_node(hostname).info(f"{detail} for {int(not_ready_for)}s")
            return {"healthy": False, "status": "NotReady", "message": detail,
                    "not_ready_seconds": int(not_ready_for)}

        if self.remediations.get(hostname, 0) >= self.config.reconciler.max_remediations:
            reason = (f"{self.remediations.get(hostname, 0)}회 복구 후에도 {detail}")
            self.store.save(progress.fail(FailureKind.REMEDIATION_EXHAUSTED, reason,
                                          resume_from=BootstrapState.INSTALLED))
            self.logger.for_node(hostname).error(f"remediation exhausted: {detail}")
            return {"healthy": False, "status": "exhausted", "message": reason}

        remediated = self.remediate(node)
        self.not_ready_since[hostname] = self.clock()
        return {"healthy": False, "status": "remediated" if remediated else "remediation_failed",
                "message": detail, "remediations": self.remediations[hostname]}

    def reconcile_once(self) -> Dict:
        """한 번의 점검/복구 주기

        Returns:
            Dict: 헬스 리포트
        """
        results = {
            "timestamp": datetime.now().isoformat(),
            "nodes": {},
            "cni": {},
            "dns": {},
            "overall_status": "healthy",
        }

        try:
            conditions = self.control_plane.nodes()
            cni_healthy, cni_detail = self.control_plane.cni_health()
            dns_healthy, dns_detail = self.control_plane.dns_health()
        except BootstrapError as e:
            self.logger.error(f"Could not query the control plane: {e}")
            results["overall_status"] = "unhealthy"
            results["cni"] = {"healthy": False, "message": str(e)}
            return results

        results["cni"] = {"healthy": cni_healthy, "message": cni_detail}
        results["dns"] = {"healthy": dns_healthy, "message": dns_detail}
        if not dns_healthy:
            self.logger.warning(f"CoreDNS unhealthy: {dns_detail}")

        for node in self.topology:
            results["nodes"][node.hostname] = self._check_node(node, conditions.get(node.hostname))

        unhealthy = [hostname for hostname, check in results["nodes"].items() if not check["healthy"]]
        if unhealthy or not cni_healthy or not dns_healthy:
            results["overall_status"] = "unhealthy"
            results["unhealthy_nodes"] = unhealthy

        return results

    def all_failed(self) -> bool:
        """모든 노드가 복구 불가 상태인지"""
        return all(self.store.load(node.hostname).failed for node in self.topology)

    def save_health_report(self, results: Dict) -> Path:
        """헬스 리포트를 파일로 저장"""
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        report_file = self.log_dir / f"health_report_{timestamp}.json"

        with open(report_file, "w", encoding="utf-8") as f:
            json.dump(results, f, indent=2, ensure_ascii=False)

        self.logger.debug(f"Health report saved: {report_file}")
        return report_file

    def run(self, duration: Optional[int] = None, max_cycles: Optional[int] = None) -> int:
        """리컨실 루프

        Args:
            duration: 실행 시간 (초). None이면 무한 실행
            max_cycles: 최대 주기 수

        Returns:
            int: 실행한 주기 수
        """
        interval = self.config.reconciler.interval
        self.logger.info(f"Reconciler started (interval {interval}s)")
        self.running = True
        start = self.clock()
        cycles = 0

        try:
            while self.running:
                cycles += 1
                results = self.reconcile_once()
                self.save_health_report(results)

                if results["overall_status"] == "unhealthy":
                    self.logger.warning(
                        f"Cycle #{cycles}: unhealthy nodes {results.get('unhealthy_nodes', [])}"
                    )
                else:
                    self.logger.info(f"Cycle #{cycles}: all nodes Ready")

                if self.all_failed():
                    self.logger.error("Every node is Failed, stopping reconciler")
                    break
                if max_cycles and cycles >= max_cycles:
                    break
                if duration and (self.clock() - start) >= duration:
                    break

                self.sleep(interval)
        except KeyboardInterrupt:
            self.logger.info("Reconciler interrupted by user")
        finally:
            self.running = False

        self.logger.info(f"Reconciler stopped after {cycles} cycle(s)")
        return cycles

    def stop(self):
        self.running = False


def generate_health_summary(log_dir: str = "/var/log/k8s-multicloud", limit: int = 10) -> Dict:
    """최근 헬스 리포트 요약

    Args:
        log_dir: 로그 디렉토리 경로
        limit: 분석할 최근 리포트 수
    """
    logger = get_logger()
    report_files = sorted(Path(log_dir).glob("health_report_*.json"), reverse=True)

    if not report_files:
        return {
            "status": "no_reports",
            "message": "헬스 리포트가 없습니다."
        }

    recent_reports = []
    for report_file in report_files[:limit]:
        try:
            with open(report_file, "r", encoding="utf-8") as f:
                recent_reports.append(json.load(f))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Skipping unreadable health report {report_file}: {e}")

    if not recent_reports:
        return {
            "status": "error",
            "message": "유효한 헬스 리포트가 없습니다."
        }

    total_checks = len(recent_reports)
    healthy_checks = sum(1 for report in recent_reports if report.get("overall_status") == "healthy")
    unhealthy_checks = total_checks - healthy_checks
    latest = recent_reports[0]

    not_ready_counts: Dict[str, int] = {}
    for report in recent_reports:
        for hostname, check in report.get("nodes", {}).items():
            if not check.get("healthy"):
                not_ready_counts[hostname] = not_ready_counts.get(hostname, 0) + 1

    summary = {
        "latest_check": latest.get("timestamp"),
        "latest_status": latest.get("overall_status"),
        "total_checks": total_checks,
        "healthy_checks": healthy_checks,
        "unhealthy_checks": unhealthy_checks,
        "health_rate": round(healthy_checks / total_checks * 100, 2),
        "latest_nodes": latest.get("nodes", {}),
        "not_ready_counts": not_ready_counts,
    }

    if unhealthy_checks > 0:
        summary["warning"] = f"최근 {total_checks}번의 체크 중 {unhealthy_checks}번 비정상 감지"

    return summary
