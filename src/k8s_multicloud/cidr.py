"""
Pod CIDR 할당 모듈
노드 ordinal을 기준으로 supernet(/16)에서 노드별 /24 블록을 결정적으로 할당
"""

import ipaddress
from typing import Dict, Iterable, Optional

from .errors import CIDRExhaustedError, ConfigError
from .logger import get_logger
from .roster import NodeSpec


class CIDRAllocator:
    """노드별 Pod CIDR 할당기

    ordinal N인 노드는 supernet의 N번째 서브넷을 받는다
    (10.10.0.0/16, /24 → 10.10.N.0/24). 호스트명 해시가 아닌 ordinal을 쓰므로
    사람이 예측할 수 있다.
    """

    def __init__(self, supernet: str = "10.10.0.0/16", mask_size: int = 24):
        try:
            self.supernet = ipaddress.ip_network(supernet, strict=True)
        except ValueError as e:
            raise ConfigError(f"Pod CIDR supernet 값이 올바르지 않습니다: {supernet} ({e})") from e

        if not self.supernet.prefixlen < mask_size <= self.supernet.max_prefixlen:
            raise ConfigError(f"마스크 크기 /{mask_size}는 {self.supernet}보다 작은 블록이어야 합니다")

        self.mask_size = mask_size
        self.capacity = 2 ** (mask_size - self.supernet.prefixlen)
        self.logger = get_logger()

    def subnet_for(self, ordinal: int) -> ipaddress.IPv4Network:
        """ordinal에 해당하는 서브넷

        Raises:
            CIDRExhaustedError: ordinal이 supernet 범위를 벗어남
        """
        if ordinal < 1 or ordinal >= self.capacity:
            raise CIDRExhaustedError(
                f"ordinal {ordinal}에 할당할 /{self.mask_size} 블록이 {self.supernet}에 없습니다 "
                f"(사용 가능: 1-{self.capacity - 1})"
            )
        offset = ordinal * (2 ** (self.supernet.max_prefixlen - self.mask_size))
        return ipaddress.ip_network(
            f"{self.supernet.network_address + offset}/{self.mask_size}"
        )

    def ordinal_for(self, cidr: str) -> Optional[int]:
        """서브넷의 블록 번호 (subnet_for의 역함수, supernet 밖이면 None)"""
        try:
            network = ipaddress.ip_network(cidr, strict=True)
        except ValueError:
            return None
        if network.prefixlen != self.mask_size or not network.subnet_of(self.supernet):
            return None
        offset = int(network.network_address) - int(self.supernet.network_address)
        ordinal = offset >> (self.supernet.max_prefixlen - self.mask_size)
        return ordinal or None

    def _check_pinned(self, node: NodeSpec) -> ipaddress.IPv4Network:
        try:
            network = ipaddress.ip_network(node.pod_cidr, strict=True)
        except ValueError as e:
            raise ConfigError(f"{node.hostname}: pod_cidr 값이 올바르지 않습니다: {node.pod_cidr}") from e

        if network.prefixlen != self.mask_size or not network.subnet_of(self.supernet):
            raise ConfigError(
                f"{node.hostname}: pod_cidr {network}는 {self.supernet} 안의 /{self.mask_size} 블록이어야 합니다"
            )
        return network

    def allocate(self, nodes: Iterable[NodeSpec], reset: bool = False) -> Dict[str, str]:
        """노드별 Pod CIDR 할당

        Args:
            nodes: ordinal이 부여된 노드 목록
            reset: True면 기존 pod_cidr을 무시하고 ordinal 기준으로 재할당

        Returns:
            Dict[str, str]: hostname → CIDR

        Raises:
            CIDRExhaustedError: supernet 공간 부족
            ConfigError: ordinal 누락, 범위를 벗어난 CIDR, CIDR 중복
        """
        assignments = {}
        owners = {}

        for node in nodes:
            if node.pod_cidr and not reset:
                network = self._check_pinned(node)
            else:
                if node.ordinal is None:
                    raise ConfigError(f"{node.hostname}: ordinal이 없어 Pod CIDR을 할당할 수 없습니다")
                network = self.subnet_for(node.ordinal)

            for other, owner in owners.items():
                if network.overlaps(other):
                    raise ConfigError(f"Pod CIDR 중복: {node.hostname}({network})와 {owner}({other})")

            owners[network] = node.hostname
            assignments[node.hostname] = str(network)
            self.logger.for_node(node.hostname).debug(f"pod CIDR {network} (ordinal {node.ordinal})")

        return assignments
