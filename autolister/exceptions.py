"""
Pipeline Exception Classes

파이프라인/어댑터 경계에서 사용하는 구조화된 예외 정의.
각 예외는 ErrorKind를 가지고 있어 복구 엔진이 문자열 매칭 없이 분류할 수 있다.
"""
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """에러 심각도 레벨"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorKind(str, Enum):
    """복구 전략 선택에 사용하는 닫힌 에러 분류"""
    DATABASE_ERROR = "DATABASE_ERROR"
    API_ERROR = "API_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class PipelineError(Exception):
    """
    Base exception for all pipeline errors

    Attributes:
        message: 에러 메시지
        error_code: 에러 코드
        severity: 에러 심각도
        context: 추가 컨텍스트 정보
        recoverable: 복구(재시도) 가능 여부
    """

    error_kind: ErrorKind = ErrorKind.UNKNOWN_ERROR

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False
    ):
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.context = context or {}
        self.recoverable = recoverable
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """에러 정보를 딕셔너리로 변환"""
        return {
            "error_code": self.error_code,
            "kind": self.error_kind.value,
            "message": self.message,
            "severity": self.severity.value,
            "context": self.context,
            "recoverable": self.recoverable
        }


class ExternalServiceError(PipelineError):
    """
    Marketplace / AI provider call failures

    Attributes:
        service: 호출 대상 서비스 이름 (etsy, shopify, gemini ...)
        status_code: HTTP 상태 코드
    """

    error_kind = ErrorKind.API_ERROR

    def __init__(
        self,
        service: str,
        message: Optional[str] = None,
        status_code: Optional[int] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        recoverable: bool = True,
        **kwargs
    ):
        context = {"service": service, "status_code": status_code}
        context.update(kwargs)
        super().__init__(
            message=message or f"{service} service unavailable",
            error_code="EXTERNAL_SERVICE_ERROR",
            severity=severity,
            context=context,
            recoverable=recoverable
        )
        self.service = service
        self.status_code = status_code


class RateLimitError(ExternalServiceError):
    error_kind = ErrorKind.RATE_LIMIT_ERROR

    def __init__(self, service: str, message: Optional[str] = None, retry_after: Optional[float] = None, **kwargs):
        super().__init__(service, message or f"{service} rate limit exceeded", retry_after=retry_after, **kwargs)
        self.error_code = "RATE_LIMIT_ERROR"
        self.retry_after = retry_after


class ServiceTimeoutError(ExternalServiceError):
    error_kind = ErrorKind.TIMEOUT_ERROR

    def __init__(self, service: str, message: Optional[str] = None, timeout_seconds: Optional[float] = None, **kwargs):
        super().__init__(service, message or f"{service} request timed out", timeout_seconds=timeout_seconds, **kwargs)
        self.error_code = "TIMEOUT_ERROR"
        self.timeout_seconds = timeout_seconds


class AuthenticationError(ExternalServiceError):
    error_kind = ErrorKind.AUTH_ERROR

    def __init__(self, service: str, message: Optional[str] = None, **kwargs):
        super().__init__(service, message or f"{service} rejected credentials", **kwargs)
        self.error_code = "AUTH_ERROR"


class ConfigurationError(PipelineError):
    """Missing credentials, unknown provider / marketplace names"""

    error_kind = ErrorKind.CONFIG_ERROR

    def __init__(self, message: str, setting: Optional[str] = None, **kwargs):
        context = {"setting": setting}
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code="CONFIG_ERROR",
            severity=ErrorSeverity.HIGH,
            context=context,
            recoverable=True
        )
        self.setting = setting


class ValidationError(PipelineError):
    """
    Input / listing shape failures

    Attributes:
        details: 사용자에게 그대로 노출 가능한 검증 오류 목록
    """

    def __init__(self, message: str, details: Optional[List[str]] = None, **kwargs):
        super().__init__(
            message=message,
            error_code="VALIDATION_ERROR",
            severity=ErrorSeverity.LOW,
            context={"details": details or [], **kwargs},
            recoverable=False
        )
        self.details = details or []


class InsufficientDataError(PipelineError):
    def __init__(self, message: str, available: int = 0, required: int = 0):
        super().__init__(
            message=message,
            error_code="INSUFFICIENT_DATA",
            severity=ErrorSeverity.LOW,
            context={"available": available, "required": required},
            recoverable=False
        )
        self.available = available
        self.required = required


class DuplicateJobError(PipelineError):
    """같은 job_key로 이미 실행(또는 실행 중)된 작업 - 재시도 대상이 아니라 skip 대상"""

    def __init__(self, job_key: str, stage: Optional[str] = None):
        super().__init__(
            message=f"Job already exists for key {job_key}",
            error_code="DUPLICATE_JOB",
            severity=ErrorSeverity.LOW,
            context={"job_key": job_key, "stage": stage},
            recoverable=False
        )
        self.job_key = job_key
        self.stage = stage


class InvalidJobTransitionError(PipelineError):
    def __init__(self, job_id: Any, current_status: str, target_status: str):
        super().__init__(
            message=f"Job {job_id} is already {current_status}; cannot move to {target_status}",
            error_code="INVALID_JOB_TRANSITION",
            severity=ErrorSeverity.HIGH,
            context={"job_id": str(job_id), "current": current_status, "target": target_status},
            recoverable=False
        )


class GenerationError(PipelineError):
    """
    AI output malformed (non-JSON when JSON was requested, schema mismatch)

    Attributes:
        provider: AI 제공자 (gemini, openai)
        raw_output: 파싱에 실패한 원본 출력 (앞부분만 보관)
    """

    error_kind = ErrorKind.API_ERROR

    def __init__(self, message: str, provider: Optional[str] = None, raw_output: Optional[str] = None, **kwargs):
        context = {"provider": provider, "raw_output": (raw_output or "")[:500] or None}
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code="GENERATION_ERROR",
            severity=ErrorSeverity.MEDIUM,
            context=context,
            recoverable=True
        )
        self.provider = provider
        self.raw_output = raw_output


class DatabaseError(PipelineError):
    error_kind = ErrorKind.DATABASE_ERROR

    def __init__(
        self,
        message: str,
        table_name: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        context = {"table_name": table_name, "operation": operation}
        context.update(kwargs)
        super().__init__(
            message=message,
            error_code="DATABASE_ERROR",
            severity=ErrorSeverity.HIGH,
            context=context,
            recoverable=True
        )
        self.table_name = table_name
        self.operation = operation


def wrap_exception(
    error: Exception,
    error_class: type = PipelineError,
    **kwargs
) -> PipelineError:
    """
    일반 예외를 구조화된 파이프라인 예외로 래핑

    Args:
        error: 원래 예외
        error_class: 래핑할 파이프라인 예외 클래스
        **kwargs: 예외 생성자에 전달할 추가 인자

    Returns:
        래핑된 PipelineError 인스턴스
    """
    if isinstance(error, PipelineError):
        return error

    message = str(error) or error.__class__.__name__
    wrapped = error_class(message, **kwargs)
    wrapped.__cause__ = error
    return wrapped
