"""
CLI 메인 인터페이스
Click 및 Rich 기반 사용자 친화적 CLI
"""

import os
import sys
from typing import Optional, Tuple

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm, Prompt
from rich.table import Table

from . import __version__
from .bootstrap import BootstrapOrchestrator
from .cidr import CIDRAllocator
from .config import Config
from .errors import BootstrapError
from .executor import build_executor
from .k8s import ControlPlane
from .logger import get_logger, init_logger
from .network import NetworkChecker
from .reconciler import ClusterReconciler, generate_health_summary
from .report import ReportGenerator
from .roster import (
    ClusterTopology,
    NodeRole,
    NodeSpec,
    create_sample_roster,
    load_roster,
    save_roster,
)
from .state import BootstrapState, StateStore

console = Console()

STATE_COLORS = {
    BootstrapState.VERIFIED: "green",
    BootstrapState.FAILED: "red",
    BootstrapState.PENDING: "white",
}


class CLIGroup(click.Group):
    """BootstrapError를 빨간 메시지와 종료 코드 1로 변환"""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except BootstrapError as e:
            console.print(f"[red]✗ {e}[/red]")
            sys.exit(1)


def _setup(config_path: Optional[str], roster_path: Optional[str],
           debug: bool = False) -> Tuple[Config, ClusterTopology, str]:
    """설정/로거/로스터 로드"""
    cfg = Config(config_path)
    init_logger(cfg.agent.log_dir, cfg.agent.log_level, debug)
    roster_path = roster_path or cfg.agent.roster_path
    allocator = CIDRAllocator(cfg.cluster.pod_cidr, cfg.cluster.node_cidr_mask_size)
    topology = load_roster(roster_path, ordinal_for=allocator.ordinal_for)
    get_logger().debug(f"Loaded {len(topology)} node(s) from {roster_path}")
    return cfg, topology, roster_path


def _state_text(state: BootstrapState) -> str:
    color = STATE_COLORS.get(state, "yellow")
    return f"[{color}]{state.value}[/{color}]"


def _topology_table(topology: ClusterTopology, title: str = "노드 로스터") -> Table:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("#", justify="right")
    table.add_column("노드", style="cyan")
    table.add_column("역할")
    table.add_column("VPN 주소")
    table.add_column("인터페이스")
    table.add_column("외부 주소")
    table.add_column("Pod CIDR", style="green")
    for node in topology:
        table.add_row(
            str(node.ordinal or "-"),
            node.hostname,
            node.role.value,
            node.vpn_address,
            node.interface,
            node.external_address or "-",
            node.pod_cidr or "-",
        )
    return table


def _show_report(report):
    table = Table(title="실행 결과 요약", show_header=True, header_style="bold magenta")
    table.add_column("노드", style="cyan")
    table.add_column("Pod CIDR")
    table.add_column("상태")
    table.add_column("원인")
    table.add_column("메시지")

    for progress in report.nodes:
        table.add_row(
            progress.hostname,
            report.pod_cidrs.get(progress.hostname, "-"),
            _state_text(progress.state),
            progress.failure_kind.value if progress.failure_kind else "",
            progress.reason[:80],
        )
    console.print(table)


@click.group(cls=CLIGroup)
@click.version_option(version=__version__)
def cli():
    """K8s Multi-Cloud Bootstrap

    VPN으로 연결된 여러 클라우드의 노드로 단일 Kubernetes 클러스터를 구성합니다.
    """
    pass


@cli.command()
@click.argument('output', type=click.Path(), default='./config.yaml')
@click.option('--roster-output', type=click.Path(), default='./roster.yaml', help='샘플 로스터 경로')
def init(output, roster_output):
    """샘플 설정 및 로스터 파일 생성"""
    cfg = Config()
    cfg.create_sample(output)
    console.print(f"[green]✓ 샘플 설정 파일 생성: {output}[/green]")

    if os.path.exists(roster_output):
        console.print(f"[yellow]로스터 파일이 이미 있습니다: {roster_output} (건너뜀)[/yellow]")
    else:
        create_sample_roster(roster_output)
        console.print(f"[green]✓ 샘플 로스터 파일 생성: {roster_output}[/green]")

    console.print("[cyan]파일을 편집한 후 다음 명령어로 실행하세요:[/cyan]")
    console.print(f"[cyan]  k8s-multicloud bootstrap --config {output} --roster {roster_output}[/cyan]")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--roster', '-r', type=click.Path(), help='로스터 파일 경로')
def validate(config, roster):
    """설정 및 로스터 유효성 검사"""
    cfg, topology, _ = _setup(config, roster)
    cfg.validate()

    allocator = CIDRAllocator(cfg.cluster.pod_cidr, cfg.cluster.node_cidr_mask_size)
    topology = topology.with_pod_cidrs(allocator.allocate(topology))
    topology.validate()

    console.print("[green]✓ 설정 및 로스터가 유효합니다.[/green]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("항목", style="cyan")
    table.add_column("값")
    table.add_row("클러스터", cfg.cluster.name)
    table.add_row("Kubernetes 버전", cfg.cluster.kubernetes_version)
    table.add_row("Pod CIDR", f"{cfg.cluster.pod_cidr} (/{cfg.cluster.node_cidr_mask_size} per node)")
    table.add_row("Service CIDR", cfg.cluster.service_cidr)
    table.add_row("CNI", f"{cfg.cni.plugin} ({cfg.cni.backend})")
    table.add_row("컨트롤 플레인", topology.control_plane.hostname)
    table.add_row("워커 수", str(len(topology.workers)))
    console.print(table)
    console.print(_topology_table(topology))


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--roster', '-r', type=click.Path(), help='로스터 파일 경로')
@click.option('--reset', is_flag=True, help='기존 Pod CIDR을 무시하고 ordinal 기준으로 재할당')
def allocate(config, roster, reset):
    """노드별 Pod CIDR 할당 및 로스터 저장"""
    cfg, topology, roster_path = _setup(config, roster)
    cfg.validate()

    if reset and not Confirm.ask("기존 Pod CIDR을 모두 재할당합니다. 계속하시겠습니까?", default=False):
        console.print("[yellow]취소되었습니다.[/yellow]")
        return

    allocator = CIDRAllocator(cfg.cluster.pod_cidr, cfg.cluster.node_cidr_mask_size)
    topology = topology.with_pod_cidrs(allocator.allocate(topology, reset=reset))
    topology.validate()
    backup = save_roster(topology, roster_path)

    console.print(_topology_table(topology, title="Pod CIDR 할당"))
    console.print(f"[green]✓ 로스터 저장: {roster_path}[/green]")
    if backup:
        console.print(f"  백업: {backup}")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--roster', '-r', type=click.Path(), help='로스터 파일 경로')
@click.option('--role', type=click.Choice(['all', 'control-plane', 'worker']), default='all',
              help='부트스트랩할 노드 역할')
@click.option('--host', 'hosts', multiple=True, help='특정 노드만 실행 (여러 번 지정 가능)')
@click.option('--debug', is_flag=True, help='디버그 모드')
def bootstrap(config, roster, role, hosts, debug):
    """클러스터 부트스트랩 (컨트롤 플레인 → 워커)"""
    cfg, topology, roster_path = _setup(config, roster, debug)
    logger = get_logger()

    console.print(Panel.fit(
        "[bold cyan]K8s Multi-Cloud Bootstrap[/bold cyan]\n"
        f"클러스터 {cfg.cluster.name}: 컨트롤 플레인 1개, 워커 {len(topology.workers)}개",
        border_style="cyan"
    ))
    logger.info(f"=== Bootstrap started (role={role}, hosts={list(hosts) or 'all'}) ===")

    def on_transition(hostname: str, state: BootstrapState):
        console.print(f"  [cyan]{hostname}[/cyan] → {_state_text(state)}")

    orchestrator = BootstrapOrchestrator(cfg, topology, roster_path=roster_path, on_transition=on_transition)
    try:
        report = orchestrator.bootstrap(
            role=None if role == 'all' else NodeRole.parse(role),
            hosts=hosts or None,
        )
    except KeyboardInterrupt:
        console.print("\n[yellow]사용자에 의해 중단되었습니다.[/yellow]")
        logger.warning("Bootstrap interrupted by user")
        sys.exit(130)

    _show_report(report)

    log_files = logger.get_log_files()
    report_file = ReportGenerator(cfg.agent.log_dir).generate(
        report, orchestrator.topology, cfg.cni.namespace, log_files
    )
    console.print("\n[bold]로그 파일:[/bold]")
    console.print(f"  Main: {log_files['main_log']}")
    console.print(f"  Error: {log_files['error_log']}")
    for hostname, path in log_files["node_logs"].items():
        console.print(f"  {hostname}: {path}")
    console.print(f"  Report: {report_file}")

    if report.success:
        console.print("\n[bold green]✓ 모든 노드가 Verified 상태입니다![/bold green]")
    else:
        console.print(f"\n[bold red]✗ {len(report.failed)}개 노드 실패[/bold red]")
    sys.exit(report.exit_code)


@cli.command('add-node')
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--roster', '-r', type=click.Path(), help='로스터 파일 경로')
@click.option('--spec', 'spec_string', help='노드 문자열 (hostname:vpn_ip:pod_cidr:interface:role:external_ip)')
@click.option('--hostname', help='노드 호스트명')
@click.option('--vpn-address', help='VPN 주소')
@click.option('--interface', help='VPN 인터페이스')
@click.option('--external-address', default='', help='외부 주소')
@click.option('--role', type=click.Choice(['worker', 'control-plane']), default='worker', help='노드 역할')
@click.option('--interactive', '-i', is_flag=True, help='대화형 모드')
@click.option('--bootstrap', 'run_bootstrap', is_flag=True, help='추가 후 바로 부트스트랩')
def add_node(config, roster, spec_string, hostname, vpn_address, interface, external_address,
             role, interactive, run_bootstrap):
    """로스터에 노드 추가 (다음 ordinal과 Pod CIDR 할당)"""
    cfg, topology, roster_path = _setup(config, roster)
    logger = get_logger()

    if interactive:
        console.print("\n[bold cyan]노드 정보 입력[/bold cyan]\n")
        hostname = Prompt.ask("호스트명", default=hostname or "")
        vpn_address = Prompt.ask("VPN 주소", default=vpn_address or "")
        interface = Prompt.ask("인터페이스", default=interface or "wg0")
        external_address = Prompt.ask("외부 주소", default=external_address or vpn_address)
        role = Prompt.ask("역할", choices=["worker", "control-plane"], default=role)

    if spec_string:
        spec = NodeSpec.from_string(spec_string)
    else:
        if not hostname or not vpn_address or not interface:
            console.print("[red]오류: --hostname, --vpn-address, --interface가 필요합니다.[/red]")
            console.print("[yellow]--spec 또는 --interactive 옵션을 사용할 수 있습니다.[/yellow]")
            sys.exit(1)
        spec = NodeSpec.from_dict({
            "hostname": hostname,
            "vpn_address": vpn_address,
            "interface": interface,
            "role": role,
            "external_address": external_address,
        })

    allocator = CIDRAllocator(cfg.cluster.pod_cidr, cfg.cluster.node_cidr_mask_size)
    topology = topology.add_node(spec, ordinal_for=allocator.ordinal_for)
    topology = topology.with_pod_cidrs(allocator.allocate(topology))
    topology.validate()
    backup = save_roster(topology, roster_path)

    added = topology.get(spec.hostname)
    logger.for_node(added.hostname).info(f"added with ordinal {added.ordinal}, pod CIDR {added.pod_cidr}")
    console.print(f"[green]✓ {added.hostname} 추가 (ordinal {added.ordinal}, Pod CIDR {added.pod_cidr})[/green]")
    if backup:
        console.print(f"  로스터 백업: {backup}")

    if run_bootstrap:
        orchestrator = BootstrapOrchestrator(cfg, topology, roster_path=roster_path)
        report = orchestrator.bootstrap(hosts=[added.hostname])
        _show_report(report)
        sys.exit(report.exit_code)

    console.print("[cyan]다음 명령어로 노드를 부트스트랩하세요:[/cyan]")
    console.print(f"[cyan]  k8s-multicloud bootstrap --host {added.hostname}[/cyan]")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--roster', '-r', type=click.Path(), help='로스터 파일 경로')
def status(config, roster):
    """노드 상태, Pod CIDR, CNI 및 API 서버 상태 표시"""
    cfg, topology, _ = _setup(config, roster)
    store = StateStore(cfg.agent.state_dir)
    control_plane = ControlPlane(topology.control_plane, build_executor(cfg), cfg)

    conditions = {}
    cni = (False, "-")
    dns = (False, "-")
    try:
        conditions = control_plane.nodes()
        cni = control_plane.cni_health()
        dns = control_plane.dns_health()
    except BootstrapError as e:
        console.print(f"[yellow]컨트롤 플레인 조회 실패: {e}[/yellow]")

    table = Table(title="노드 상태", show_header=True, header_style="bold magenta")
    table.add_column("노드", style="cyan")
    table.add_column("역할")
    table.add_column("상태")
    table.add_column("Ready")
    table.add_column("Pod CIDR (할당)")
    table.add_column("Pod CIDR (클러스터)")

    for node in topology:
        progress = store.load(node.hostname)
        condition = conditions.get(node.hostname)
        if condition is None:
            ready = "[dim]미등록[/dim]"
        elif condition.ready:
            ready = "[green]Ready[/green]"
        else:
            ready = f"[red]{condition.describe()}[/red]"
        table.add_row(
            node.hostname,
            node.role.value,
            _state_text(progress.state),
            ready,
            node.pod_cidr or "-",
            condition.pod_cidr if condition and condition.pod_cidr else "-",
        )
    console.print(table)

    for label, (healthy, detail) in (("CNI", cni), ("DNS", dns)):
        color = "green" if healthy else "red"
        console.print(f"{label}: [{color}]{detail}[/{color}]")

    checker = NetworkChecker(api_server_port=cfg.cluster.api_server_port)
    _, message = checker.check_api_server(topology.control_plane.vpn_address)
    console.print(f"API 서버: {message}")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--roster', '-r', type=click.Path(), help='로스터 파일 경로')
@click.option('--host', 'hosts', multiple=True, help='특정 노드만 초기화 (여러 번 지정 가능)')
@click.option('--yes', '-y', is_flag=True, help='확인 없이 실행')
def teardown(config, roster, hosts, yes):
    """노드 초기화 (kubeadm reset 및 CNI 상태 정리)"""
    cfg, topology, roster_path = _setup(config, roster)
    targets = topology.select(hostnames=hosts or None)

    console.print(_topology_table(ClusterTopology(nodes=tuple(targets), name=topology.name),
                                  title="초기화 대상"))
    if not yes and not Confirm.ask("[bold red]위 노드를 초기화합니다. 계속하시겠습니까?[/bold red]",
                                   default=False):
        console.print("[yellow]취소되었습니다.[/yellow]")
        return

    orchestrator = BootstrapOrchestrator(cfg, topology, roster_path=roster_path)
    results = orchestrator.teardown(hosts=hosts or None)

    failed = {hostname: error for hostname, error in results.items() if error}
    for hostname, error in results.items():
        if error:
            console.print(f"  [red]✗ {hostname}: {error}[/red]")
        else:
            console.print(f"  [green]✓ {hostname} 초기화 완료[/green]")
    sys.exit(1 if failed else 0)


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--roster', '-r', type=click.Path(), help='로스터 파일 경로')
@click.option('--interval', type=int, default=None, help='점검 간격 (초, 기본값: 설정 파일)')
@click.option('--duration', type=int, default=None, help='실행 시간 (초, 기본값: 무한)')
@click.option('--cycles', type=int, default=None, help='최대 점검 횟수')
def reconcile(config, roster, interval, duration, cycles):
    """NotReady 노드 감지 및 네트워크 재연결"""
    cfg, topology, _ = _setup(config, roster)
    if interval:
        cfg.reconciler.interval = interval

    executor = build_executor(cfg)
    reconciler = ClusterReconciler(
        cfg, topology, executor,
        ControlPlane(topology.control_plane, executor, cfg),
        StateStore(cfg.agent.state_dir),
    )

    console.print("[bold cyan]K8s Multi-Cloud - 리컨실러 시작[/bold cyan]\n")
    console.print(f"[green]점검 간격: {cfg.reconciler.interval}초, "
                  f"grace period: {cfg.reconciler.grace_period}초, "
                  f"최대 복구: {cfg.reconciler.max_remediations}회[/green]")
    if not duration and not cycles:
        console.print("[green]실행 시간: 무한 (Ctrl+C로 중지)[/green]")

    performed = reconciler.run(duration=duration, max_cycles=cycles)
    console.print(f"[green]리컨실러 종료 ({performed}회 점검)[/green]")


@cli.command('health-summary')
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--log-dir', type=click.Path(exists=True), default=None, help='로그 디렉토리 경로')
def health_summary(config, log_dir):
    """리컨실러 헬스 리포트 요약 보기"""
    cfg = Config(config)
    log_dir = log_dir or cfg.agent.log_dir
    init_logger(log_dir, cfg.agent.log_level, False)
    console.print("[bold cyan]K8s Multi-Cloud - 헬스체크 요약[/bold cyan]\n")

    summary = generate_health_summary(log_dir)

    if summary.get("status") == "no_reports":
        console.print("[yellow]헬스 리포트가 없습니다.[/yellow]")
        return

    if summary.get("status") == "error":
        console.print(f"[red]오류: {summary.get('message')}[/red]")
        return

    table = Table(title="헬스체크 요약")
    table.add_column("항목", style="cyan")
    table.add_column("값", style="white")

    table.add_row("최근 체크 시간", summary["latest_check"])
    table.add_row("최근 상태", summary["latest_status"])
    table.add_row("총 체크 횟수", str(summary["total_checks"]))
    table.add_row("정상 체크", str(summary["healthy_checks"]))
    table.add_row("비정상 체크", str(summary["unhealthy_checks"]))
    table.add_row("정상률", f"{summary['health_rate']}%")
    console.print(table)

    if summary["not_ready_counts"]:
        nodes = Table(title="비정상 감지 노드")
        nodes.add_column("노드", style="cyan")
        nodes.add_column("비정상 횟수", justify="right")
        for hostname, count in sorted(summary["not_ready_counts"].items()):
            nodes.add_row(hostname, str(count))
        console.print(nodes)

    if summary.get("warning"):
        console.print(f"\n[yellow]⚠️  {summary['warning']}[/yellow]")


@cli.command()
@click.option('--config', '-c', type=click.Path(exists=True), help='설정 파일 경로')
@click.option('--roster', '-r', type=click.Path(), help='로스터 파일 경로')
def preflight(config, roster):
    """노드 사전 점검 (인터페이스, VPN 주소, 컨트롤 플레인 경로)"""
    cfg, topology, _ = _setup(config, roster)
    checker = NetworkChecker(build_executor(cfg), cfg.cluster.api_server_port)
    results = checker.preflight(topology)
    sys.exit(0 if all(result["overall"] for result in results.values()) else 1)


def main():
    """메인 엔트리 포인트"""
    cli()


if __name__ == '__main__':
    main()
