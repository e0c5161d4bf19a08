"""
로깅 시스템
파일 및 콘솔 로깅, 디버그 모드 지원, 노드별 로그 파일
"""

import logging
import os
import threading
from datetime import datetime
from typing import Dict, Optional
from rich.logging import RichHandler
from rich.console import Console

console = Console()



class NodeFilter(logging.Filter):
    """지정한 노드의 레코드만 통과"""

    def __init__(self, hostname: str):
        super().__init__()
        self.hostname = hostname

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "node", None) == self.hostname


class NodeLogger(logging.LoggerAdapter):
    """메시지 앞에 [hostname]을 붙이고 레코드에 node 속성을 남기는 어댑터"""

    @property
    def hostname(self) -> str:
        return self.extra["node"]

    def process(self, msg, kwargs):
        extra = dict(kwargs.get("extra") or {})
        extra["node"] = self.hostname
        kwargs["extra"] = extra
        return f"[{self.hostname}] {msg}", kwargs


class AgentLogger:
    """오케스트레이터 로거"""

    def __init__(self, log_dir: str = "/var/log/k8s-multicloud", log_level: str = "INFO", debug: bool = False):
        self.log_dir = log_dir
        self.log_level = logging.DEBUG if debug else getattr(logging, log_level.upper(), logging.INFO)
        self.debug_mode = debug

        # 로그 디렉토리 생성
        os.makedirs(log_dir, exist_ok=True)

        # 로그 파일 경로
        self.timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self.log_file = os.path.join(log_dir, f"bootstrap_{self.timestamp}.log")
        self.error_file = os.path.join(log_dir, f"error_{self.timestamp}.log")
        self.node_files: Dict[str, str] = {}
        self._node_loggers: Dict[str, NodeLogger] = {}
        self._lock = threading.Lock()

        self.logger = logging.getLogger("k8s_multicloud")
        self.logger.setLevel(self.log_level)
        self.logger.propagate = False

        # 기존 핸들러 제거
        for handler in list(self.logger.handlers):
            handler.close()
        self.logger.handlers.clear()

        # 파일 핸들러 (스레드 이름으로 노드 작업 구분)
        file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
        file_handler.setLevel(self.log_level)
        self.file_formatter = file_formatter = logging.Formatter(
            '%(asctime)s - %(threadName)s - %(levelname)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        file_handler.setFormatter(file_formatter)
        self.logger.addHandler(file_handler)

        # 에러 파일 핸들러
        error_handler = logging.FileHandler(self.error_file, encoding='utf-8')
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(file_formatter)
        self.logger.addHandler(error_handler)

        # 콘솔 핸들러 (Rich)
        rich_handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            show_time=False,
            show_path=debug
        )
        rich_handler.setLevel(self.log_level)
        self.logger.addHandler(rich_handler)

    def for_node(self, hostname: str) -> NodeLogger:
        """노드별 로거

        메인 로그에는 [hostname] 접두어로 기록되고, 같은 레코드가
        node_<hostname>_<timestamp>.log 파일에도 따로 남는다.
        """
        with self._lock:
            node_logger = self._node_loggers.get(hostname)
            if node_logger is None:
                path = os.path.join(self.log_dir, f"node_{hostname}_{self.timestamp}.log")
                handler = logging.FileHandler(path, encoding='utf-8')
                handler.setLevel(self.log_level)
                handler.setFormatter(self.file_formatter)
                handler.addFilter(NodeFilter(hostname))
                self.logger.addHandler(handler)

                node_logger = NodeLogger(self.logger, {"node": hostname})
                self.node_files[hostname] = path
                self._node_loggers[hostname] = node_logger
            return node_logger

    def debug(self, message: str):
        self.logger.debug(message)

    def info(self, message: str):
        self.logger.info(message)

    def warning(self, message: str):
        self.logger.warning(message)

    def error(self, message: str):
        self.logger.error(message)

    def critical(self, message: str):
        self.logger.critical(message)

    def exception(self, message: str):
        """예외 로그 (트레이스백 포함)"""
        self.logger.exception(message)

    def get_log_files(self) -> dict:
        """로그 파일 경로 반환"""
        return {
            "main_log": self.log_file,
            "error_log": self.error_file,
            "node_logs": dict(self.node_files),
            "log_dir": self.log_dir
        }


# 글로벌 로거 인스턴스
_logger: Optional[AgentLogger] = None


def get_logger(log_dir: str = "/var/log/k8s-multicloud",
               log_level: str = "INFO",
               debug: bool = False) -> AgentLogger:
    """로거 인스턴스 가져오기"""
    global _logger
    if _logger is None:
        _logger = AgentLogger(log_dir, log_level, debug)
    return _logger


def init_logger(log_dir: str, log_level: str, debug: bool) -> AgentLogger:
    """로거 초기화"""
    global _logger
    _logger = AgentLogger(log_dir, log_level, debug)
    return _logger
