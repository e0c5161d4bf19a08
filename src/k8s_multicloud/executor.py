"""
원격 명령 실행 모듈
명령 배치를 로컬(subprocess) 또는 SSH(paramiko)로 실행하고 결과를 구조화하여 반환
"""

import base64
import os
import posixpath
import shlex
import socket
import subprocess
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import paramiko

from .errors import (
    CommandError,
    ConfigError,
    CommandTimeoutError,
    TransientRemoteError,
    UnreachableError,
)
from .logger import get_logger
from .retry import retry_call
from .roster import NodeSpec


@dataclass(frozen=True)
class ExecutionResult:
    """명령 배치 실행 결과"""
    command: str
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    hostname: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class RemoteFile:
    """명령 실행 전에 노드에 기록할 파일"""
    path: str
    content: str
    mode: str = "0644"


@dataclass
class CommandBatch:
    """하나의 bash 스크립트로 실행되는 멱등 명령 묶음"""
    name: str
    commands: List[str] = field(default_factory=list)
    files: List[RemoteFile] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    timeout: Optional[int] = None

    def render(self) -> str:
        """bash 스크립트로 변환 (파일 내용은 base64로 그대로 전달)"""
        lines = ["set -euo pipefail"]
        for key, value in self.env.items():
            lines.append(f"export {key}={shlex.quote(value)}")
        for remote_file in self.files:
            path = shlex.quote(remote_file.path)
            encoded = base64.b64encode(remote_file.content.encode("utf-8")).decode("ascii")
            lines.append(f"install -d {shlex.quote(posixpath.dirname(remote_file.path) or '/')}")
            lines.append(f"echo {encoded} | base64 -d > {path}")
            lines.append(f"chmod {remote_file.mode} {path}")
        lines.extend(self.commands)
        return "\n".join(lines) + "\n"


class RemoteExecutor:
    """노드에서 명령 배치를 실행하는 기본 클래스"""

    def __init__(self, default_timeout: int = 900):
        self.default_timeout = default_timeout
        self.logger = get_logger()

    def run(self, node: NodeSpec, batch: CommandBatch,
            timeout: Optional[int] = None, check: bool = True) -> ExecutionResult:
        """명령 배치 실행

        Raises:
            UnreachableError: 연결/인증 실패 (재시도 가능)
            CommandTimeoutError: 제한 시간 초과
            CommandError: 0이 아닌 종료 코드 (check=True일 때)
        """
        timeout = timeout or batch.timeout or self.default_timeout
        logger = self.logger.for_node(node.hostname)
        logger.debug(f"running '{batch.name}' (timeout {timeout}s)")

        result = self._execute(node, batch, timeout)

        logger.debug(
            f"'{batch.name}' exit={result.exit_code} ({result.duration_ms}ms)"
        )
        if result.stdout.strip():
            logger.debug(f"stdout:\n{result.stdout.rstrip()}")
        if result.stderr.strip():
            logger.debug(f"stderr:\n{result.stderr.rstrip()}")

        if check and not result.ok:
            logger.error(
                f"'{batch.name}' failed with exit code {result.exit_code}"
            )
            raise CommandError(f"[{node.hostname}] {batch.name} 실패", node.hostname, result)
        return result

    def _execute(self, node: NodeSpec, batch: CommandBatch, timeout: int) -> ExecutionResult:
        raise NotImplementedError


class LocalExecutor(RemoteExecutor):
    """현재 호스트에서 직접 실행"""

    def _execute(self, node: NodeSpec, batch: CommandBatch, timeout: int) -> ExecutionResult:
        started = time.monotonic()
        try:
            completed = subprocess.run(
                ["bash", "-s"],
                input=batch.render(),
                capture_output=True,
                text=True,
                timeout=timeout
            )
        except subprocess.TimeoutExpired as e:
            self.logger.for_node(node.hostname).error(f"'{batch.name}' timed out after {timeout}s")
            raise CommandTimeoutError(
                f"[{node.hostname}] {batch.name}: {timeout}초 시간 초과", node.hostname
            ) from e
        except FileNotFoundError as e:
            raise UnreachableError(f"[{node.hostname}] bash를 실행할 수 없습니다: {e}", node.hostname) from e

        return ExecutionResult(
            command=batch.name,
            exit_code=completed.returncode,
            stdout=completed.stdout,
            stderr=completed.stderr,
            duration_ms=int((time.monotonic() - started) * 1000),
            hostname=node.hostname,
        )


class SSHExecutor(RemoteExecutor):
    """paramiko SSH로 원격 노드에서 실행"""

    KEY_TYPES = (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey)

    def __init__(self, user: str = "root", port: int = 22, key_path: str = "",
                 password: str = "", connect_timeout: int = 15, sudo: bool = False,
                 use_external_address: bool = False, default_timeout: int = 900):
        super().__init__(default_timeout)
        self.user = user
        self.port = port
        self.key_path = key_path
        self.password = password
        self.connect_timeout = connect_timeout
        self.sudo = sudo
        self.use_external_address = use_external_address

    def _address(self, node: NodeSpec) -> str:
        if self.use_external_address and node.external_address:
            return node.external_address
        return node.vpn_address

    def _load_key(self) -> Optional[paramiko.PKey]:
        if not self.key_path:
            return None
        key_path = os.path.expanduser(self.key_path)
        if not os.path.exists(key_path):
            self.logger.debug(f"SSH key not found: {key_path}, falling back to agent/password")
            return None

        for key_cls in self.KEY_TYPES:
            try:
                return key_cls.from_private_key_file(key_path, password=self.password or None)
            except paramiko.SSHException:
                continue
        raise ConfigError(f"지원하지 않는 SSH 키 형식: {key_path}")

    @contextmanager
    def session(self, node: NodeSpec):
        """SSH 세션 (종료 시 항상 연결 해제)"""
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        address = self._address(node)
        try:
            pkey = self._load_key()
            client.connect(
                hostname=address,
                port=self.port,
                username=self.user,
                pkey=pkey,
                password=self.password or None,
                timeout=self.connect_timeout,
                banner_timeout=self.connect_timeout,
                auth_timeout=self.connect_timeout,
                allow_agent=pkey is None,
                look_for_keys=pkey is None,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise UnreachableError(
                f"[{node.hostname}] SSH 인증 실패 ({self.user}@{address}): {e}", node.hostname
            ) from e
        except (paramiko.SSHException, OSError) as e:
            client.close()
            raise UnreachableError(
                f"[{node.hostname}] SSH 연결 실패 ({address}:{self.port}): {e}", node.hostname
            ) from e

        try:
            yield client
        finally:
            client.close()

    def _execute(self, node: NodeSpec, batch: CommandBatch, timeout: int) -> ExecutionResult:
        command = "sudo -n bash -s" if self.sudo else "bash -s"
        started = time.monotonic()

        with self.session(node) as client:
            try:
                stdin, stdout, _stderr = client.exec_command(command)
                stdin.write(batch.render())
                stdin.flush()
                stdin.channel.shutdown_write()
                out, err = self._drain(stdout.channel, started + timeout)
                exit_code = stdout.channel.recv_exit_status()
            except CommandTimeoutError:
                self.logger.for_node(node.hostname).error(f"'{batch.name}' timed out after {timeout}s")
                raise CommandTimeoutError(
                    f"[{node.hostname}] {batch.name}: {timeout}초 시간 초과", node.hostname
                ) from None
            except (paramiko.SSHException, socket.timeout, OSError) as e:
                raise TransientRemoteError(
                    f"[{node.hostname}] {batch.name} 실행 중 SSH 세션 오류: {e}", node.hostname
                ) from e

        return ExecutionResult(
            command=batch.name,
            exit_code=exit_code,
            stdout=out,
            stderr=err,
            duration_ms=int((time.monotonic() - started) * 1000),
            hostname=node.hostname,
        )

    @staticmethod
    def _drain(channel, deadline: float):
        """채널 출력 수집 (deadline 초과 시 채널을 닫고 CommandTimeoutError)"""
        out, err = [], []
        while True:
            while channel.recv_ready():
                out.append(channel.recv(32768))
            while channel.recv_stderr_ready():
                err.append(channel.recv_stderr(32768))
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break
            if time.monotonic() >= deadline:
                channel.close()
                raise CommandTimeoutError("deadline exceeded")
            time.sleep(0.1)
        return (b"".join(out).decode("utf-8", errors="replace"),
                b"".join(err).decode("utf-8", errors="replace"))


class RoutingExecutor(RemoteExecutor):
    """로컬 노드는 직접, 나머지는 SSH로 실행"""

    def __init__(self, local_hostname: str, local: RemoteExecutor, remote: RemoteExecutor):
        super().__init__(local.default_timeout)
        self.local_hostname = local_hostname
        self.local = local
        self.remote = remote

    def _target(self, node: NodeSpec) -> RemoteExecutor:
        return self.local if node.hostname == self.local_hostname else self.remote

    def run(self, node, batch, timeout=None, check=True):
        return self._target(node).run(node, batch, timeout=timeout, check=check)


class RetryingExecutor(RemoteExecutor):
    """일시적 오류(TransientRemoteError)만 지수 백오프로 재시도"""

    def __init__(self, inner: RemoteExecutor, attempts: int = 5, backoff: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep):
        super().__init__(inner.default_timeout)
        self.inner = inner
        self.attempts = attempts
        self.backoff = backoff
        self.sleep = sleep

    def run(self, node, batch, timeout=None, check=True):
        def on_retry(attempt: int, exc: Exception):
            self.logger.for_node(node.hostname).warning(
                f"'{batch.name}' attempt {attempt}/{self.attempts} failed: {exc}; retrying"
            )

        return retry_call(
            lambda: self.inner.run(node, batch, timeout=timeout, check=check),
            attempts=self.attempts,
            backoff=self.backoff,
            retry_on=(TransientRemoteError,),
            on_retry=on_retry,
            sleep=self.sleep,
        )


def build_executor(config) -> RemoteExecutor:
    """설정으로부터 실행기 구성"""
    local_hostname = config.agent.local_hostname or socket.gethostname()
    local = LocalExecutor(default_timeout=config.agent.command_timeout)
    remote = SSHExecutor(
        user=config.ssh.user,
        port=config.ssh.port,
        key_path=config.ssh.key_path,
        password=config.ssh.password,
        connect_timeout=config.ssh.connect_timeout,
        sudo=config.use_sudo(),
        use_external_address=config.ssh.use_external_address,
        default_timeout=config.agent.command_timeout,
    )
    return RetryingExecutor(
        RoutingExecutor(local_hostname, local, remote),
        attempts=config.agent.max_retry,
        backoff=config.agent.retry_backoff,
    )
