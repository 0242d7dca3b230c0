"""
Error Classifier & Recovery Engine

외부 호출(마켓/AI)에서 발생한 예외를 분류하고, 분류별 복구 전략을 적용한 뒤
재시도/폴백/에스컬레이션 여부를 결정한다.

- 분류: 타입 기반(PipelineError.error_kind 등) 우선, 외부 라이브러리 예외는 메시지 키워드 매칭
- 빈도: (context, error_kind) 별 카운터. 주입 가능한 저장소 뒤에 있으며 기본 구현은
  프로세스 메모리(재시작 시 초기화)
- 에스컬레이션: 같은 (context, kind)가 임계치(기본 3회) 이상이면 CRITICAL 알림
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

import httpx
from sqlalchemy.exc import SQLAlchemyError

from autolister.exceptions import ErrorKind, PipelineError
from autolister.settings import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[Any]]
AlertSink = Callable[[BaseException, str, ErrorKind], Any]


# 순서가 의미 있음: 더 구체적인 키워드를 먼저 검사한다
_KEYWORD_RULES: tuple[tuple[ErrorKind, tuple[str, ...]], ...] = (
    (ErrorKind.RATE_LIMIT_ERROR, ("rate limit", "too many", "quota")),
    (ErrorKind.TIMEOUT_ERROR, ("timeout", "timed out")),
    (ErrorKind.AUTH_ERROR, ("unauthorized", "forbidden", "auth")),
    (ErrorKind.DATABASE_ERROR, ("database", "sqlalchemy", "sql")),
    (ErrorKind.CONFIG_ERROR, ("config", "env")),
    (ErrorKind.API_ERROR, ("api", "fetch", "network", "connection")),
)


class ErrorClassifier:
    def classify(self, error: BaseException) -> ErrorKind:
        if isinstance(error, PipelineError) and error.error_kind is not ErrorKind.UNKNOWN_ERROR:
            return error.error_kind
        if isinstance(error, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
            return ErrorKind.TIMEOUT_ERROR
        if isinstance(error, SQLAlchemyError):
            return ErrorKind.DATABASE_ERROR
        if isinstance(error, httpx.TransportError):
            return ErrorKind.API_ERROR
        return self.classify_message(str(error))

    def classify_message(self, message: str) -> ErrorKind:
        text = (message or "").lower()
        for kind, keywords in _KEYWORD_RULES:
            if any(keyword in text for keyword in keywords):
                return kind
        return ErrorKind.UNKNOWN_ERROR


class ErrorFrequencyStore(Protocol):
    def increment(self, key: str) -> int: ...

    def get(self, key: str) -> int: ...

    def clear(self) -> None: ...

    def snapshot(self) -> Dict[str, int]: ...


class InMemoryErrorFrequencyStore:
    """프로세스 수명 동안 유지되는 카운터. 재시작하면 초기화된다."""

    def __init__(self):
        self._counts: Dict[str, int] = {}

    def increment(self, key: str) -> int:
        self._counts[key] = self._counts.get(key, 0) + 1
        return self._counts[key]

    def get(self, key: str) -> int:
        return self._counts.get(key, 0)

    def clear(self) -> None:
        self._counts.clear()

    def snapshot(self) -> Dict[str, int]:
        return dict(self._counts)


@dataclass
class RecoveryOutcome:
    kind: ErrorKind
    count: int
    recovered: bool
    action: Optional[str] = None
    escalated: bool = False


@dataclass
class RecoveryRun:
    value: Any = None
    error: Optional[BaseException] = None
    attempts: int = 0
    outcomes: List[RecoveryOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None


class RecoveryEngine:
    def __init__(
        self,
        settings: Settings,
        frequency_store: Optional[ErrorFrequencyStore] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: SleepFunc = asyncio.sleep,
        health_check: Optional[Callable[[], Any]] = None,
        config_reloader: Optional[Callable[[], Any]] = None,
        credential_refresher: Optional[Callable[[], Any]] = None,
        alert_sink: Optional[AlertSink] = None,
        cache: Optional[Dict[str, Any]] = None,
    ):
        self.settings = settings
        self.frequency_store = frequency_store or InMemoryErrorFrequencyStore()
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self._health_check = health_check
        self._config_reloader = config_reloader or settings.reload
        self._credential_refresher = credential_refresher
        self._alert_sink = alert_sink
        self._cache: Dict[str, Any] = cache if cache is not None else {}
        self.max_attempts = settings.recovery_max_attempts
        self.escalation_threshold = settings.recovery_escalation_threshold

        self.strategies: Dict[ErrorKind, Callable[[], Awaitable[None]]] = {
            ErrorKind.DATABASE_ERROR: self._recover_database,
            ErrorKind.API_ERROR: self._recover_api,
            ErrorKind.CONFIG_ERROR: self._recover_config,
            ErrorKind.AUTH_ERROR: self._recover_auth,
            ErrorKind.RATE_LIMIT_ERROR: self._recover_rate_limit,
            ErrorKind.TIMEOUT_ERROR: self._recover_timeout,
        }

    @staticmethod
    def _frequency_key(context: str, kind: ErrorKind) -> str:
        return f"{context}:{kind.value}"

    async def handle_error(self, error: BaseException, context: str) -> RecoveryOutcome:
        """
        classify -> 빈도 기록 -> 1차 전략 -> (실패 & 임계치 미만) 폴백 체인 -> (임계치 이상) 에스컬레이션.
        복구 시스템 자체의 실패는 밖으로 전파하지 않는다.
        """
        logger.error(f"Error detected in {context}: {error}")
        kind = ErrorKind.UNKNOWN_ERROR
        count = 0
        try:
            kind = self.classifier.classify(error)
            count = self.frequency_store.increment(self._frequency_key(context, kind))

            if await self._apply_strategy(kind):
                logger.info(f"Recovered from {kind.value} in {context} (occurrence {count})")
                return RecoveryOutcome(kind=kind, count=count, recovered=True, action=f"strategy:{kind.value}")

            if count < self.escalation_threshold:
                logger.info(f"Attempting fallback recovery for {context}...")
                action = await self._apply_fallbacks(context)
                return RecoveryOutcome(kind=kind, count=count, recovered=action is not None, action=action)

            await self._alert_critical(error, context, kind, count)
            return RecoveryOutcome(kind=kind, count=count, recovered=False, escalated=True)
        except Exception as recovery_error:
            logger.error(f"Recovery system failed: {recovery_error}", exc_info=True)
            return RecoveryOutcome(kind=kind, count=count, recovered=False)

    async def _apply_strategy(self, kind: ErrorKind) -> bool:
        strategy = self.strategies.get(kind)
        if strategy is None:
            return False
        try:
            await strategy()
            return True
        except Exception as e:
            logger.error(f"Recovery strategy failed for {kind.value}: {e}")
            return False

    async def _apply_fallbacks(self, context: str) -> Optional[str]:
        fallbacks = (
            ("fallback:backoff", self._retry_with_backoff),
            ("fallback:cache", self._use_cached_data),
            ("fallback:degrade", self._degrade_gracefully),
        )
        for name, fallback in fallbacks:
            try:
                await fallback(context)
                logger.info(f"Fallback recovery successful ({name})")
                return name
            except Exception as e:
                logger.debug(f"{name} failed for {context}: {e}")
        return None

    async def _call(self, func: Optional[Callable[[], Any]]) -> Any:
        if func is None:
            return None
        result = func()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _recover_database(self) -> None:
        logger.info("Attempting database reconnection...")
        await self._sleep(self.settings.recovery_database_delay)
        if self._health_check is not None and not await self._call(self._health_check):
            raise RuntimeError("Database reconnection failed")

    async def _recover_api(self) -> None:
        logger.info("Implementing API error recovery...")
        await self._sleep(self.settings.recovery_api_delay)

    async def _recover_config(self) -> None:
        logger.info("Reloading configuration...")
        reloaded = await self._call(self._config_reloader)
        if isinstance(reloaded, Settings):
            self.settings = reloaded

    async def _recover_auth(self) -> None:
        logger.info("Authentication error - attempting credential refresh...")
        await self._call(self._credential_refresher)

    async def _recover_rate_limit(self) -> None:
        logger.info("Rate limit hit - backing off...")
        await self._sleep(self.settings.recovery_rate_limit_delay)

    async def _recover_timeout(self) -> None:
        logger.info("Timeout detected - waiting before retry...")
        await self._sleep(self.settings.recovery_timeout_delay)

    async def _retry_with_backoff(self, context: str) -> None:
        for delay in self.settings.recovery_backoff_ladder:
            logger.info(f"Retrying {context} after {delay}s...")
            await self._sleep(delay)

    async def _use_cached_data(self, context: str) -> None:
        if context not in self._cache:
            raise LookupError(f"No cached data for {context}")
        logger.info(f"Falling back to cached data for {context}")

    async def _degrade_gracefully(self, context: str) -> None:
        logger.info(f"Degrading gracefully for {context} - partial functionality only")

    async def _alert_critical(self, error: BaseException, context: str, kind: ErrorKind, count: int) -> None:
        logger.critical(
            f"CRITICAL: unable to recover {kind.value} in {context} after {count} occurrences: {error}"
        )
        if self._alert_sink is None:
            return
        try:
            await self._call(lambda: self._alert_sink(error, context, kind))
        except Exception as e:
            logger.error(f"Alert delivery failed: {e}")

    def cache_result(self, context: str, value: Any) -> None:
        self._cache[context] = value

    def cached_result(self, context: str) -> Any:
        return self._cache.get(context)

    async def run(self, operation: Callable[[], Awaitable[T]], context: str) -> RecoveryRun:
        """
        operation을 최대 max_attempts 회 실행. 실패 시(마지막 시도 제외) 복구 파이프라인을 거치고,
        복구에 성공한 경우에만 다음 시도로 넘어간다. 재시도 불가능한 PipelineError는 즉시 중단.
        """
        run = RecoveryRun()
        for attempt in range(1, self.max_attempts + 1):
            run.attempts = attempt
            try:
                run.value = await operation()
                run.error = None
                return run
            except Exception as e:
                run.error = e
                if isinstance(e, PipelineError) and not e.recoverable:
                    logger.warning(f"{context}: non-recoverable {e.error_code}, not retrying")
                    break
                if attempt >= self.max_attempts:
                    break
                outcome = await self.handle_error(e, context)
                run.outcomes.append(outcome)
                if not outcome.recovered:
                    break

        logger.error(f"{context}: operation failed after {run.attempts} attempt(s): {run.error}")
        return run

    async def with_recovery(self, operation: Callable[[], Awaitable[T]], context: str) -> Optional[T]:
        """소진 시 예외 대신 None을 반환한다. 엄격한 실패가 필요한 호출자는 None을 직접 확인할 것."""
        run = await self.run(operation, context)
        return run.value if run.succeeded else None

    def get_health_status(self) -> Dict[str, Any]:
        return {
            "status": "operational",
            "errorsHandled": len(self.frequency_store.snapshot()),
            "strategiesLoaded": len(self.strategies),
            "frequencies": self.frequency_store.snapshot(),
        }

    def clear_history(self) -> None:
        self.frequency_store.clear()
