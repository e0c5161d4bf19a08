"""
부트스트랩 오케스트레이터
노드별 상태 머신을 병렬로 실행하고, 컨트롤 플레인이 검증될 때까지 워커 조인을 막는다
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .cidr import CIDRAllocator
from .config import Config
from .errors import (
    BarrierAborted,
    BootstrapError,
    CommandError,
    CommandTimeoutError,
    ConfigError,
    TransientRemoteError,
    VerificationTimeout,
)
from .executor import RemoteExecutor, build_executor
from .k8s import ControlPlane
from .logger import get_logger
from .manifests import flannel_manifests
from .roster import ClusterTopology, NodeRole, NodeSpec, save_roster
from .state import BootstrapState, FailureKind, NodeProgress, StateStore
from .steps import init_batch, install_batch, join_batch, network_batch, prepare_batch, teardown_batch

TransitionObserver = Callable[[str, BootstrapState], None]


class ControlPlaneBarrier:
    """컨트롤 플레인 준비 완료 신호

    컨트롤 플레인이 Verified가 되면 release, 실패하면 abort.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._aborted = False
        self._reason = ""

    @property
    def released(self) -> bool:
        return self._event.is_set() and not self._aborted

    def release(self):
        with self._lock:
            if not self._event.is_set():
                self._event.set()

    def abort(self, reason: str):
        with self._lock:
            if self._event.is_set():
                return
            self._aborted = True
            self._reason = reason
            self._event.set()

    def wait(self, timeout: float):
        """release될 때까지 대기

        Raises:
            BarrierAborted: 컨트롤 플레인 실패 또는 timeout 초과
        """
        if not self._event.wait(timeout):
            raise BarrierAborted(f"컨트롤 플레인이 {timeout}초 안에 준비되지 않았습니다")
        if self._aborted:
            raise BarrierAborted(f"컨트롤 플레인 부트스트랩 실패: {self._reason}")


def classify_failure(exc: BaseException) -> FailureKind:
    """예외 → 실패 원인"""
    if isinstance(exc, ConfigError):
        return FailureKind.CONFIG
    if isinstance(exc, CommandTimeoutError):
        return FailureKind.TIMEOUT
    if isinstance(exc, TransientRemoteError):
        return FailureKind.UNREACHABLE
    if isinstance(exc, CommandError):
        return FailureKind.COMMAND
    if isinstance(exc, VerificationTimeout):
        return FailureKind.VERIFICATION_TIMEOUT
    if isinstance(exc, BarrierAborted):
        return FailureKind.DEPENDENCY
    return FailureKind.INTERNAL


class NodeBootstrapper:
    """노드 하나의 단계를 순서대로 실행"""

    def __init__(self, node: NodeSpec, topology: ClusterTopology, pod_cidrs: Mapping[str, str],
                 config: Config, executor: RemoteExecutor, control_plane: ControlPlane,
                 store: StateStore, barrier: ControlPlaneBarrier,
                 on_transition: Optional[TransitionObserver] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.node = node
        self.topology = topology
        self.pod_cidrs = pod_cidrs
        self.config = config
        self.executor = executor
        self.control_plane = control_plane
        self.store = store
        self.barrier = barrier
        self.on_transition = on_transition
        self.sleep = sleep
        self.clock = clock
        self.logger = get_logger().for_node(node.hostname)

    @property
    def hostname(self) -> str:
        return self.node.hostname

    def _steps(self) -> Dict[BootstrapState, tuple]:
        if self.node.is_control_plane:
            return {
                BootstrapState.PENDING: (self.prepare, BootstrapState.PREPARED),
                BootstrapState.PREPARED: (self.install, BootstrapState.INSTALLED),
                BootstrapState.INSTALLED: (self.initialize, BootstrapState.INITIALIZED),
                BootstrapState.INITIALIZED: (self.attach_network, BootstrapState.NETWORK_ATTACHED),
                BootstrapState.NETWORK_ATTACHED: (self.verify, BootstrapState.VERIFIED),
            }
        return {
            BootstrapState.PENDING: (self.prepare, BootstrapState.PREPARED),
            BootstrapState.PREPARED: (self.install, BootstrapState.INSTALLED),
            BootstrapState.INSTALLED: (self.join, BootstrapState.JOINED),
            BootstrapState.JOINED: (self.attach_network, BootstrapState.NETWORK_ATTACHED),
            BootstrapState.NETWORK_ATTACHED: (self.verify, BootstrapState.VERIFIED),
        }

    def _record(self, progress: NodeProgress) -> NodeProgress:
        self.store.save(progress)
        if self.on_transition:
            self.on_transition(self.hostname, progress.state)
        return progress

    def run(self) -> NodeProgress:
        """노드 부트스트랩 (Verified면 아무것도 하지 않음, Failed면 마지막 성공 상태부터 재개)"""
        progress = self.store.load(self.hostname)

        if progress.verified:
            self.logger.info("already Verified, nothing to do")
            if self.node.is_control_plane:
                self.barrier.release()
            return progress

        if progress.failed:
            self.logger.info(
                f"resuming from {progress.last_successful.value} "
                f"(previous failure: {progress.failure_kind.value if progress.failure_kind else '-'})"
            )
            progress = self._record(progress.resume())

        steps = self._steps()
        try:
            while not progress.state.is_terminal:
                step, target = steps[progress.state]
                self.logger.info(f"{progress.state.value} → {target.value}")
                step()
                progress = self._record(progress.advance(target))

            if self.node.is_control_plane:
                self.barrier.release()
            self.logger.info("bootstrap completed")
        except Exception as e:
            kind = classify_failure(e)
            if kind is FailureKind.INTERNAL:
                self.logger.exception(f"unexpected error during {progress.state.value}")
            else:
                self.logger.error(f"failed during {progress.state.value}: {e}")
            progress = self._record(progress.fail(kind, str(e)))
        finally:
            if self.node.is_control_plane and not progress.verified:
                self.barrier.abort(progress.reason or "control plane did not reach Verified")

        return progress

    # 단계별 작업

    def prepare(self):
        self.executor.run(self.node, prepare_batch(self.node))

    def install(self):
        self.executor.run(self.node, install_batch(self.config))

    def initialize(self):
        self.executor.run(self.node, init_batch(self.topology, self.node, self.config))
        self.control_plane.wait_for_registration(
            self.hostname, timeout=self.config.agent.verify_timeout,
            interval=self.config.agent.poll_interval, sleep=self.sleep, clock=self.clock,
        )
        self.control_plane.ensure_pod_cidr(self.hostname, self.pod_cidrs[self.hostname])

    def join(self):
        self._await_control_plane()
        credentials = self.control_plane.create_join_credentials()
        self.executor.run(self.node, join_batch(self.node, credentials, self.config))

    def attach_network(self):
        if self.node.is_control_plane:
            self.control_plane.apply(flannel_manifests(self.topology, self.config.cluster, self.config.cni))
        else:
            self._await_control_plane()
            self.control_plane.wait_for_registration(
                self.hostname, timeout=self.config.agent.verify_timeout,
                interval=self.config.agent.poll_interval, sleep=self.sleep, clock=self.clock,
            )

        cidr = self.control_plane.ensure_pod_cidr(self.hostname, self.pod_cidrs[self.hostname])
        self.executor.run(self.node, network_batch(self.node, cidr, self.config))

    def verify(self):
        if not self.node.is_control_plane:
            self._await_control_plane()
        detail = self.control_plane.wait_ready(
            self.hostname, timeout=self.config.agent.verify_timeout,
            interval=self.config.agent.poll_interval, check_cni=True,
            sleep=self.sleep, clock=self.clock,
        )
        if self.node.is_control_plane:
            dns_healthy, dns_detail = self.control_plane.dns_health()
            detail = f"{detail}, DNS: {dns_detail}"
            if not dns_healthy:
                self.logger.warning(f"CoreDNS is not ready yet: {dns_detail}")
        self.logger.info(f"verified: {detail}")

    def _await_control_plane(self):
        if not self.barrier.released:
            self.logger.info("waiting for control plane")
        self.barrier.wait(self.config.agent.join_timeout)


@dataclass
class BootstrapReport:
    """부트스트랩 실행 결과"""
    nodes: List[NodeProgress]
    pod_cidrs: Dict[str, str]
    started_at: str = ""
    finished_at: str = ""
    roles: Dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return bool(self.nodes) and all(progress.verified for progress in self.nodes)

    @property
    def failed(self) -> List[NodeProgress]:
        return [progress for progress in self.nodes if not progress.verified]

    @property
    def exit_code(self) -> int:
        return 0 if self.success else 1


class BootstrapOrchestrator:
    """클러스터 부트스트랩/초기화 진입점"""

    def __init__(self, config: Config, topology: ClusterTopology,
                 executor: Optional[RemoteExecutor] = None,
                 control_plane: Optional[ControlPlane] = None,
                 store: Optional[StateStore] = None,
                 roster_path: Optional[str] = None,
                 on_transition: Optional[TransitionObserver] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.topology = topology
        self.executor = executor or build_executor(config)
        self.control_plane = control_plane or ControlPlane(topology.control_plane, self.executor, config)
        self.store = store or StateStore(config.agent.state_dir)
        self.roster_path = roster_path
        self.on_transition = on_transition
        self.sleep = sleep
        self.clock = clock
        self.logger = get_logger()

    def allocate(self, reset: bool = False) -> Dict[str, str]:
        """Pod CIDR 할당 후 변경된 경우 로스터에 기록"""
        allocator = CIDRAllocator(self.config.cluster.pod_cidr, self.config.cluster.node_cidr_mask_size)
        assignments = allocator.allocate(self.topology, reset=reset)

        changed = any(node.pod_cidr != assignments[node.hostname] for node in self.topology)
        if changed:
            self.topology = self.topology.with_pod_cidrs(assignments)
            self.topology.validate()
            if self.roster_path:
                backup = save_roster(self.topology, self.roster_path)
                self.logger.info(f"Pod CIDR assignments saved to {self.roster_path} (backup: {backup or '-'})")
        return assignments

    def _precheck_control_plane(self, barrier: ControlPlaneBarrier):
        """워커만 실행할 때 기존 컨트롤 플레인 상태 확인"""
        hostname = self.topology.control_plane.hostname
        try:
            status = self.control_plane.node_status(hostname)
            healthy, detail = self.control_plane.cni_health()
        except BootstrapError as e:
            barrier.abort(f"컨트롤 플레인 상태 확인 실패: {e}")
            return

        if status is None or not status.ready:
            barrier.abort(f"컨트롤 플레인 {hostname}이 Ready가 아닙니다 ({status.describe() if status else 'not registered'})")
        elif not healthy:
            barrier.abort(f"CNI 상태 이상: {detail}")
        else:
            self.logger.info(f"Control plane {hostname} is Ready ({detail})")
            barrier.release()

    def bootstrap(self, role: Optional[NodeRole] = None,
                  hosts: Optional[Iterable[str]] = None) -> BootstrapReport:
        """선택한 노드 부트스트랩

        Raises:
            ConfigError: 설정/로스터 오류 (노드 작업 시작 전)
        """
        started_at = datetime.now().isoformat(timespec="seconds")
        self.config.validate()
        self.topology.validate()

        selected = self.topology.select(hostnames=hosts, role=role)
        if not selected:
            raise ConfigError("부트스트랩할 노드가 없습니다")

        pod_cidrs = MappingProxyType(dict(self.allocate()))
        selected = [self.topology.get(node.hostname) for node in selected]

        barrier = ControlPlaneBarrier()
        if not any(node.is_control_plane for node in selected):
            self._precheck_control_plane(barrier)

        self.logger.info(
            f"Bootstrapping {len(selected)} node(s): {', '.join(node.hostname for node in selected)}"
        )

        results = {}
        with ThreadPoolExecutor(max_workers=len(selected), thread_name_prefix="node") as pool:
            futures = {}
            for node in selected:
                bootstrapper = NodeBootstrapper(
                    node, self.topology, pod_cidrs, self.config, self.executor,
                    self.control_plane, self.store, barrier,
                    on_transition=self.on_transition, sleep=self.sleep, clock=self.clock,
                )
                futures[node.hostname] = pool.submit(bootstrapper.run)
            for hostname, future in futures.items():
                results[hostname] = future.result()

        report = BootstrapReport(
            nodes=[results[node.hostname] for node in selected],
            pod_cidrs=dict(pod_cidrs),
            started_at=started_at,
            finished_at=datetime.now().isoformat(timespec="seconds"),
            roles={node.hostname: node.role.value for node in selected},
        )

        if report.success:
            self.logger.info("All selected nodes are Verified")
        else:
            for progress in report.failed:
                self.logger.for_node(progress.hostname).error(
                    f"{progress.state.value}"
                    f" ({progress.failure_kind.value if progress.failure_kind else '-'}): {progress.reason}"
                )
        return report

    def teardown(self, hosts: Optional[Iterable[str]] = None) -> Dict[str, str]:
        """노드 초기화 (워커 먼저 병렬, 컨트롤 플레인은 마지막)

        Returns:
            Dict[str, str]: hostname → 오류 메시지 (성공이면 빈 문자열)
        """
        selected = self.topology.select(hostnames=hosts)
        workers = [node for node in selected if not node.is_control_plane]
        control_planes = [node for node in selected if node.is_control_plane]
        results = {}

        def reset(node: NodeSpec) -> str:
            logger = self.logger.for_node(node.hostname)
            try:
                if not node.is_control_plane:
                    try:
                        self.control_plane.delete_node(node.hostname)
                    except BootstrapError as e:
                        logger.warning(f"could not delete node from API: {e}")
                self.executor.run(node, teardown_batch())
            except BootstrapError as e:
                logger.error(f"teardown failed: {e}")
                return str(e)
            self.store.clear(node.hostname)
            logger.info("teardown completed")
            return ""

        if workers:
            with ThreadPoolExecutor(max_workers=len(workers), thread_name_prefix="teardown") as pool:
                for node, error in zip(workers, pool.map(reset, workers)):
                    results[node.hostname] = error

        for node in control_planes:
            results[node.hostname] = reset(node)

        return results
