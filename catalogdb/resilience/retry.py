from __future__ import annotations

from collections.abc import Awaitable, Callable, Coroutine
from functools import wraps
from typing import Any, ParamSpec, TypeVar, cast

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    after_nothing,
    before_nothing,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_random_exponential,
)
from tenacity.retry import retry_base
from tenacity.stop import stop_base

from ..logger import get_logger
from .config import RetryConfig

logger = get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")

type AttemptCallback = Callable[[RetryCallState], Awaitable[None] | None]


class RetryLogicError(RuntimeError): ...


def log_before_sleep(retry_state: RetryCallState) -> None:
    """Log the failed attempt and the upcoming wait."""
    outcome = retry_state.outcome
    next_action = retry_state.next_action
    error = outcome.exception() if outcome is not None else None
    logger.warning(
        "Retrying after failure",
        operation=getattr(retry_state.fn, "__qualname__", repr(retry_state.fn)),
        attempt=retry_state.attempt_number,
        wait_s=round(next_action.sleep, 3) if next_action is not None else 0.0,
        error=str(error) if error is not None else None,
    )


class Retry:
    """Async retry policy built from a `RetryConfig`.

    Use as a decorator on a coroutine function, or call `acall` directly.

    Examples
    --------
    >>> @Retry(RetryConfig(max_attempts=5, retry_on_exceptions=(DatabaseConnectionError,)))
    ... async def aopen_catalog() -> DatabaseRouter:
    ...     return await DatabaseRouter.aopen(config)
    """

    def __init__(
        self,
        config: RetryConfig,
        before: AttemptCallback | None = None,
        after: AttemptCallback | None = None,
        before_sleep: AttemptCallback | None = log_before_sleep,
    ) -> None:
        self._config = config
        self._before = before
        self._after = after
        self._before_sleep = before_sleep

        stop: stop_base = stop_after_attempt(config.max_attempts)
        if config.max_delay_seconds:
            stop = stop | stop_after_delay(config.max_delay_seconds)
        self._stop = stop

        # NOTE: full jitter, see RetryConfig
        self._wait = wait_random_exponential(
            multiplier=config.multiplier,
            min=config.wait_min,
            max=config.wait_max,
            exp_base=config.exp_base,
        )
        self._retry_condition = self._build_retry_condition(config)

    @property
    def config(self) -> RetryConfig:
        return self._config

    def _build_retry_condition(self, config: RetryConfig) -> retry_base:
        if config.retry_on_exceptions:
            condition: retry_base = retry_if_exception_type(config.retry_on_exceptions)
        else:
            condition = retry_if_exception_type(Exception)

        if config.never_retry_on:
            condition = condition & retry_if_not_exception_type(config.never_retry_on)

        return condition

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            stop=self._stop,
            wait=self._wait,
            retry=self._retry_condition,
            before=cast(Callable[[RetryCallState], Awaitable[None] | None], self._before or before_nothing),
            after=cast(Callable[[RetryCallState], Awaitable[None] | None], self._after or after_nothing),
            before_sleep=self._before_sleep,
            reraise=self._config.reraise,
        )

    async def acall(self, func: Callable[..., Awaitable[R]], *args: Any, **kwargs: Any) -> R:
        """Await ``func(*args, **kwargs)`` until it succeeds or the policy gives up."""
        async for attempt in self._retrying():
            with attempt:
                return await func(*args, **kwargs)

        raise RetryLogicError("Async retry loop completed without success or failure")

    def __call__(self, func: Callable[P, Coroutine[object, object, R]]) -> Callable[P, Coroutine[object, object, R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            return await self.acall(func, *args, **kwargs)

        return wrapper


def retry(
    config: RetryConfig | None = None,
    before: AttemptCallback | None = None,
    after: AttemptCallback | None = None,
    before_sleep: AttemptCallback | None = log_before_sleep,
) -> Retry:
    return Retry(config or RetryConfig(), before, after, before_sleep)
