"""
K8s Multi-Cloud Bootstrap
WireGuard VPN으로 연결된 여러 클라우드의 노드를 하나의 Kubernetes 클러스터로 구성하는 오케스트레이터

Features:
- 노드 로스터 기반 선언적 클러스터 구성
- 노드별 Pod CIDR 자동 할당 (ordinal 기반, 결정적)
- 로컬/SSH 명령 실행 및 재시도
- 노드별 상태 머신 (Pending → ... → Verified), 병렬 실행
- Flannel CNI 구성 및 NotReady 노드 자동 복구
"""

__version__ = "1.0.0"
__author__ = "DevOps Team"
