from __future__ import annotations

import concurrent.futures
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, FrozenSet, List, Optional

from pydantic import BaseModel, Field
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from stackfold.config import ProviderConfig
from stackfold.errors import ProviderError, ProviderTimeout, StackfoldError
from stackfold.logger import logger


class ProviderResult(BaseModel):
    """
    What a provider returns when it creates a resource.
    """

    provider_ids: Dict[str, Any] = Field(
        default_factory=dict,
        description="Identifiers assigned by the provider, e.g. an ARN or an endpoint.",
    )
    outputs: Dict[str, Any] = Field(
        default_factory=dict,
        description="Attributes other resources can reference.",
    )


class Provider(ABC):
    """
    Abstract base class for a provider adapter.

    A provider owns one resource kind and exposes the four verbs the executor calls.
    Errors must be raised as `ProviderError`, flagged retryable when repeating the call
    can succeed (e.g. throttling). `read` raises `ResourceNotFound` for a resource
    that does not exist.
    """

    kind: str = ""

    # Verbs for which exceeding the call deadline is worth another attempt
    retryable_timeouts: FrozenSet[str] = frozenset()

    def __init__(self, config: ProviderConfig) -> None:
        self.config = config

    @abstractmethod
    def create(self, attrs: Dict[str, Any]) -> ProviderResult:
        pass

    @abstractmethod
    def read(self, provider_ids: Dict[str, Any]) -> Dict[str, Any]:
        pass

    @abstractmethod
    def update(
        self, provider_ids: Dict[str, Any], attrs: Dict[str, Any]
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    def delete(self, provider_ids: Dict[str, Any]) -> None:
        pass

    def identify(self, attrs: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Derives the provider identifiers from the desired attributes, for resources
        whose identity is fully determined by their name. Used to verify interrupted
        creates. Returns None when the identity is assigned by the provider.
        """
        return None


class ProviderRegistry:
    def __init__(self, providers: Optional[List[Provider]] = None) -> None:
        self._providers: Dict[str, Provider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: Provider) -> None:
        if not provider.kind:
            raise ValueError(f"{type(provider).__name__} does not declare a kind")
        self._providers[provider.kind] = provider

    def get(self, kind: str) -> Provider:
        try:
            return self._providers[kind]
        except KeyError:
            raise StackfoldError(f"No provider is registered for kind '{kind}'")

    def __contains__(self, kind: object) -> bool:
        return kind in self._providers

    def kinds(self) -> List[str]:
        return sorted(self._providers)


def _is_retryable(e: BaseException) -> bool:
    return isinstance(e, ProviderError) and e.retryable


class ProviderCaller:
    """
    Calls provider verbs under a deadline, retrying retryable errors with a bounded
    exponential backoff.
    """

    def __init__(
        self,
        config: ProviderConfig,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.sleep = sleep

    def call(self, provider: Provider, verb: str, *args: Any) -> Any:
        """
        Calls `verb` of `provider`.

        Returns:
            Any: What the verb returned.

        Raises:
            ProviderError: The last error once the attempts are exhausted, or the first
                non-retryable one.
        """

        def log_retry(state: RetryCallState) -> None:
            e = state.outcome.exception() if state.outcome else None
            delay = state.next_action.sleep if state.next_action else 0
            logger.warning(
                f"{provider.kind} {verb} failed (attempt {state.attempt_number}/"
                f"{self.config.retryLimit}): {e}. Retrying in {delay:.1f}s..."
            )

        retrying = Retrying(
            stop=stop_after_attempt(self.config.retryLimit),
            wait=wait_exponential(
                multiplier=self.config.backoffInitial, max=self.config.backoffMax
            ),
            retry=retry_if_exception(_is_retryable),
            sleep=self.sleep,
            before_sleep=log_retry,
            reraise=True,
        )
        return retrying(self._call_with_deadline, provider, verb, *args)

    def _call_with_deadline(self, provider: Provider, verb: str, *args: Any) -> Any:
        fn = getattr(provider, verb)
        timeout = self.config.callTimeout
        if timeout is None:
            return fn(*args)

        future: concurrent.futures.Future = concurrent.futures.Future()

        def runner() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except BaseException as e:
                future.set_exception(e)

        # A daemon thread, a call that never returns must not keep the process alive
        thread = threading.Thread(
            target=runner, name=f"{provider.kind}-{verb}", daemon=True
        )
        thread.start()
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            if future.done():
                # The verb itself raised a timeout error
                raise
            raise ProviderTimeout(
                f"{provider.kind} {verb} did not finish within {timeout}s",
                retryable=verb in provider.retryable_timeouts,
            )
