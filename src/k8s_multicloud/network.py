"""
네트워크 연결성 체크 모듈
로컬 포트/API 서버 체크 및 노드에서 실행하는 인터페이스, VPN 주소, 피어 체크
"""

import re
import shlex
import socket
from typing import Dict, Optional, Tuple

import requests
from rich.console import Console

from .errors import RemoteExecutionError
from .executor import CommandBatch, RemoteExecutor
from .logger import get_logger
from .roster import ClusterTopology, NodeSpec

console = Console()

_LINK_UP = re.compile(r"<[^>]*\bUP\b[^>]*>")


class NetworkChecker:
    """네트워크 연결성 확인 클래스"""

    def __init__(self, executor: Optional[RemoteExecutor] = None, api_server_port: int = 6443):
        self.executor = executor
        self.api_server_port = api_server_port
        self.logger = get_logger()

    def check_port(self, host: str, port: int, timeout: int = 5) -> Tuple[bool, str]:
        """포트 연결 테스트"""
        self.logger.debug(f"Checking port {host}:{port}...")
        try:
            with socket.create_connection((host, port), timeout=timeout):
                pass
        except socket.gaierror:
            self.logger.error(f"✗ Cannot resolve {host}")
            return False, f"✗ {host} 호스트를 찾을 수 없습니다"
        except (OSError, OverflowError) as e:
            self.logger.warning(f"✗ {host}:{port} is closed ({e})")
            return False, f"✗ {host}:{port} 연결 실패"

        self.logger.debug(f"✓ {host}:{port} is open")
        return True, f"✓ {host}:{port} 연결 성공"

    def check_api_server(self, host: str, port: Optional[int] = None, timeout: int = 5) -> Tuple[bool, str]:
        """API 서버 /readyz 확인 (자체 서명 인증서이므로 검증하지 않음)"""
        url = f"https://{host}:{port or self.api_server_port}/readyz"
        self.logger.debug(f"Checking API server {url}...")
        try:
            response = requests.get(url, timeout=timeout, verify=False)
        except requests.exceptions.Timeout:
            self.logger.error(f"✗ API server timeout: {url}")
            return False, f"✗ API 서버 타임아웃 ({url})"
        except requests.exceptions.ConnectionError:
            self.logger.error(f"✗ API server connection failed: {url}")
            return False, f"✗ API 서버 연결 실패 ({url})"
        except requests.exceptions.RequestException as e:
            self.logger.error(f"API server check error: {e}")
            return False, f"✗ API 서버 확인 오류: {e}"

        if response.status_code < 400:
            self.logger.debug(f"✓ API server ready (status: {response.status_code})")
            return True, f"✓ API 서버 Ready ({url})"
        self.logger.warning(f"✗ API server not ready: {response.status_code}")
        return False, f"✗ API 서버 응답 {response.status_code}: {response.text.strip()[:200]}"

    def _run(self, node: NodeSpec, name: str, command: str):
        batch = CommandBatch(name=name, commands=[command], timeout=30)
        return self.executor.run(node, batch, check=False)

    def check_interface(self, node: NodeSpec) -> Tuple[bool, str]:
        """노드에서 인터페이스 존재 및 UP 상태 확인"""
        result = self._run(node, "check-interface", f"ip -o link show {shlex.quote(node.interface)}")
        if not result.ok:
            self.logger.for_node(node.hostname).warning(f"interface {node.interface} not found")
            return False, f"✗ {node.interface} 인터페이스를 찾을 수 없습니다"
        if _LINK_UP.search(result.stdout):
            return True, f"✓ {node.interface} 인터페이스 활성화"
        self.logger.for_node(node.hostname).warning(f"interface {node.interface} is DOWN")
        return False, f"✗ {node.interface} 인터페이스 비활성화"

    def check_vpn_address(self, node: NodeSpec) -> Tuple[bool, str]:
        """노드에 VPN 주소가 할당되어 있는지 확인"""
        result = self._run(node, "check-vpn-address", "ip -o addr show")
        addresses = re.findall(r"inet6?\s+([0-9a-fA-F.:]+)/", result.stdout)
        if node.vpn_address in addresses:
            return True, f"✓ VPN 주소 {node.vpn_address} 확인"
        self.logger.for_node(node.hostname).warning(f"VPN address {node.vpn_address} not assigned")
        return False, f"✗ VPN 주소 {node.vpn_address}가 할당되지 않았습니다"

    def check_peer(self, node: NodeSpec, peer: NodeSpec, count: int = 2) -> Tuple[bool, str]:
        """노드에서 VPN을 통해 피어로 ping"""
        result = self._run(
            node, f"ping-{peer.hostname}", f"ping -c {count} -W 3 {shlex.quote(peer.vpn_address)}"
        )
        if result.ok:
            return True, f"✓ {peer.hostname}({peer.vpn_address}) 응답 성공"
        self.logger.for_node(node.hostname).warning(f"{peer.hostname} ({peer.vpn_address}) is unreachable")
        return False, f"✗ {peer.hostname}({peer.vpn_address}) 응답 실패"

    def preflight(self, topology: ClusterTopology) -> Dict[str, Dict]:
        """노드별 사전 점검 (인터페이스, VPN 주소, 컨트롤 플레인까지의 VPN 경로)"""
        console.print("\n[bold cyan]노드 사전 점검 시작...[/bold cyan]\n")
        self.logger.info("Starting preflight checks...")
        control_plane = topology.control_plane
        results = {}

        for node in topology:
            checks = {}
            console.print(f"[bold]{node.hostname}[/bold] ({node.vpn_address}, {node.role.value})")
            try:
                checks["interface"] = self.check_interface(node)
                checks["vpn_address"] = self.check_vpn_address(node)
                if not node.is_control_plane:
                    checks["control_plane"] = self.check_peer(node, control_plane)
            except RemoteExecutionError as e:
                self.logger.for_node(node.hostname).error(f"preflight failed: {e}")
                checks["connection"] = (False, f"✗ 노드 접속 실패: {e}")

            for success, message in checks.values():
                console.print(f"  {message}")

            results[node.hostname] = {
                "checks": {name: {"success": success, "message": message}
                           for name, (success, message) in checks.items()},
                "overall": all(success for success, _ in checks.values()),
            }

        passed = all(result["overall"] for result in results.values())
        console.print()
        if passed:
            console.print("[bold green]✓ 사전 점검 통과[/bold green]")
            self.logger.info("Preflight checks passed")
        else:
            console.print("[bold red]✗ 사전 점검 실패[/bold red]")
            self.logger.error("Preflight checks failed")
        return results
