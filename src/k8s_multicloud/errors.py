"""
오류 분류
설정 오류, 원격 실행 오류, 검증 타임아웃 등 부트스트랩 과정의 예외 계층
"""

from typing import Optional


class BootstrapError(RuntimeError):
    """부트스트랩 관련 오류의 기본 클래스"""


class ConfigError(BootstrapError):
    """잘못된 설정 또는 로스터. 노드에 접근하기 전에 발생"""


class CIDRExhaustedError(ConfigError):
    """supernet에 남은 Pod CIDR 블록이 없음"""


class InvalidTransition(BootstrapError):
    """허용되지 않은 상태 전이 (역방향 또는 단계 건너뛰기)"""


class RemoteExecutionError(BootstrapError):
    """원격 명령 실행 오류의 기본 클래스"""

    def __init__(self, message: str, hostname: str = "", result=None):
        super().__init__(message)
        self.hostname = hostname
        self.result = result


class TransientRemoteError(RemoteExecutionError):
    """일시적인 네트워크/SSH 오류. 백오프 후 재시도 대상"""


class UnreachableError(TransientRemoteError):
    """노드에 연결 또는 인증할 수 없음"""


class CommandError(RemoteExecutionError):
    """명령이 0이 아닌 종료 코드로 끝남. 자동 재시도하지 않음"""

    def __str__(self):
        message = super().__str__()
        if self.result is None:
            return message
        detail = (self.result.stderr or self.result.stdout).strip()
        if detail:
            return f"{message} (exit {self.result.exit_code}): {detail.splitlines()[-1]}"
        return f"{message} (exit {self.result.exit_code})"


class CommandTimeoutError(RemoteExecutionError):
    """명령이 제한 시간을 초과함"""


class VerificationTimeout(BootstrapError):
    """폴링 시간 내에 노드 또는 CNI가 준비 상태가 되지 않음"""

    def __init__(self, message: str, last_condition: Optional[str] = None):
        super().__init__(message)
        self.last_condition = last_condition

    def __str__(self):
        message = super().__str__()
        if self.last_condition:
            return f"{message} (last condition: {self.last_condition})"
        return message


class BarrierAborted(BootstrapError):
    """컨트롤 플레인 부트스트랩이 실패하여 워커가 조인할 수 없음"""
