"""
LLM proxy service.

The single entry point application code uses to call language models on
behalf of a workspace. Each request passes, in order: key resolution,
quota gate, rate-limit gate, response cache, provider call with a timeout,
usage recording, cache population. Any stage may abort with a ProxyError.
Nothing is retried here; callers own retry policy.

Adapters are built on first dispatch and kept per (provider, key) until
``aclose``.
"""

import asyncio
import logging
import time
import uuid
from typing import Callable, Dict, List, Optional, Tuple

from .cache import ResponseCache, fingerprint
from .key_encryption import reveal_api_key
from .errors import (
    ConfigurationError,
    InfrastructureError,
    ProxyError,
    ProxyTimeoutError,
    QuotaExceededError,
    RateLimitedError,
    UpstreamError,
    UpstreamErrorKind,
    run_store_call,
)
from .pricing import PRICING_TABLE, PricingTable, calculate_cost
from .rate_limiter import RateLimitConfig, RateLimiter, RateLimitReservation
from .types import LLMRequest, LLMResponse, ProxyRequest, ProxyResponse, ProxyUsage, validate_llm_request
from .usage_monitor import UsageMonitor
from ai_quota_proxy.config.loader import ProxyConfig
from ai_quota_proxy.providers import ProviderAdapter, create_adapter
from ai_quota_proxy.storage.db import DEFAULT_DB_PATH
from ai_quota_proxy.storage.models import UsageRecord
from ai_quota_proxy.storage.repository import (
    AppSettingsRepository,
    RateLimitRepository,
    UsageRepository,
    WorkspaceRepository,
    api_key_setting,
)

logger = logging.getLogger(__name__)

KEY_SOURCE_CENTRALIZED = "centralized"
KEY_SOURCE_WORKSPACE = "workspace"

USAGE_NOT_RECORDED_WARNING = (
    "Usage for this request could not be recorded and is not reflected in the workspace quota."
)

AdapterFactory = Callable[[str, str, float], ProviderAdapter]


class LLMProxyService:
    """Orchestrates quota, rate limiting, caching and provider calls."""

    def __init__(
        self,
        usage_monitor: UsageMonitor,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        workspace_repository: WorkspaceRepository,
        config: Optional[ProxyConfig] = None,
        adapter_factory: AdapterFactory = create_adapter,
        pricing: PricingTable = PRICING_TABLE,
        settings_repository: Optional[AppSettingsRepository] = None,
    ):
        self.usage_monitor = usage_monitor
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.workspace_repository = workspace_repository
        self.config = config or ProxyConfig()
        self.adapter_factory = adapter_factory
        self.pricing = pricing
        self.settings_repository = settings_repository
        self._adapters: Dict[Tuple[str, str], ProviderAdapter] = {}

    @classmethod
    def from_db_path(cls, db_path: str = DEFAULT_DB_PATH, config: Optional[ProxyConfig] = None) -> "LLMProxyService":
        """Wire a service against one SQLite store."""
        config = config or ProxyConfig()
        workspace_repository = WorkspaceRepository(db_path)
        return cls(
            usage_monitor=UsageMonitor(UsageRepository(db_path), workspace_repository),
            rate_limiter=RateLimiter(RateLimitRepository(db_path)),
            cache=ResponseCache(
                ttl_seconds=config.cache.ttl_seconds,
                max_entries=config.cache.max_entries,
                enabled=config.cache.enabled,
            ),
            workspace_repository=workspace_repository,
            config=config,
            settings_repository=AppSettingsRepository(db_path),
        )

    async def __aenter__(self) -> "LLMProxyService":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close every adapter built so far."""
        adapters, self._adapters = list(self._adapters.values()), {}
        for adapter in adapters:
            await adapter.aclose()

    async def process_request(
        self,
        request: ProxyRequest,
        user_id: str,
        rate_limits: Optional[RateLimitConfig] = None,
    ) -> ProxyResponse:
        """Run one chat completion for a workspace.

        Args:
            request: Provider, workspace, canonical request and endpoint tag
            user_id: Authenticated user making the request
            rate_limits: Ceilings for this call site; defaults to the
                configured profile for ``request.endpoint``

        Returns:
            ProxyResponse with the completion and its metadata

        Raises:
            ConfigurationError: No usable key or adapter for the provider
            QuotaExceededError: Workspace is over its monthly limit
            RateLimitedError: Workspace exceeded a request-rate ceiling
            UpstreamError: Invalid request or provider failure
            ProxyTimeoutError: Provider call exceeded the request timeout
        """
        logger.info(
            "Processing request: provider=%s workspace=%s endpoint=%s model=%s",
            request.provider, request.workspace_id, request.endpoint, request.request.model,
        )
        started = time.monotonic()
        llm_request = validate_llm_request(request.request)

        api_key, key_source = await self._resolve_api_key(request.provider, request.workspace_id)

        await self._check_quota(request.workspace_id)

        limits = rate_limits or self.config.rate_limits_for(request.endpoint)
        reservation = await self._reserve_rate_limit(request.workspace_id, limits)

        finalizing = False
        try:
            cache_key = fingerprint(request.provider, llm_request, request.workspace_id)
            cached = self.cache.get(cache_key)
            if cached is not None:
                logger.info("Cache hit for workspace %s", request.workspace_id)
                return self._cached_response(cached, key_source, started)

            adapter = self._adapter_for(request.provider, api_key)
            response = await self._dispatch(adapter, request.provider, llm_request)
            latency_ms = int((time.monotonic() - started) * 1000)
            request_id = str(uuid.uuid4())
            usage = self._estimate_usage(llm_request.model, response)

            # The upstream call is billed now; finish recording even if the caller goes away
            finalizing = True
            warnings = await asyncio.shield(self._finalize(
                request, user_id, llm_request.model, usage, latency_ms, request_id, reservation,
            ))
        finally:
            if reservation is not None and not finalizing:
                await asyncio.shield(self._release(reservation))

        if response.usage is not None:
            self.cache.set(cache_key, response)

        return ProxyResponse(
            data=response,
            usage=usage,
            cached=False,
            key_source=key_source,
            latency_ms=latency_ms,
            request_id=request_id,
            warnings=warnings,
        )

    async def _resolve_api_key(self, provider: str, workspace_id: str) -> Tuple[str, str]:
        """Find the key to call ``provider`` with.

        Order: centralized key from the environment, centralized key from
        app settings, then the workspace's own key for this provider.
        Stored keys are decrypted; legacy plaintext values are accepted.

        Raises:
            ConfigurationError: If no key exists or a stored key cannot be
                decrypted
        """
        centralized = self.config.centralized_key(provider)
        if centralized:
            return centralized, KEY_SOURCE_CENTRALIZED

        if self.settings_repository is not None:
            stored = await run_store_call(
                "fetch app settings", self.settings_repository.get_setting, api_key_setting(provider)
            )
            if stored:
                return self._reveal(stored, provider), KEY_SOURCE_CENTRALIZED

        workspace = await run_store_call(
            "fetch workspace key", self.workspace_repository.get_workspace, workspace_id
        )
        if workspace and workspace.api_key and workspace.api_provider == provider:
            return self._reveal(workspace.api_key, provider), KEY_SOURCE_WORKSPACE

        logger.error("No API key for provider %s (workspace %s)", provider, workspace_id)
        raise ConfigurationError(f"No API key configured for {provider}")

    def _reveal(self, stored: str, provider: str) -> str:
        try:
            return reveal_api_key(stored, self.config.encryption_secret)
        except ConfigurationError as e:
            logger.error("Failed to decrypt API key for %s: %s", provider, e)
            raise ConfigurationError(f"Failed to decrypt API key for {provider}: {e}") from None

    def _adapter_for(self, provider: str, api_key: str) -> ProviderAdapter:
        adapter = self._adapters.get((provider, api_key))
        if adapter is None:
            adapter = self.adapter_factory(provider, api_key, self.config.adapter_timeout_seconds)
            self._adapters[(provider, api_key)] = adapter
        return adapter

    async def _check_quota(self, workspace_id: str) -> None:
        try:
            result = await self.usage_monitor.check_workspace_quota(workspace_id)
        except InfrastructureError as e:
            # Fail open: a degraded ledger must not take the AI features down
            logger.warning("Quota check failed for workspace %s, allowing request: %s", workspace_id, e)
            return

        if not result.allowed:
            raise QuotaExceededError(result.message or "Monthly usage limit exceeded", usage=result.usage)

    async def _reserve_rate_limit(
        self,
        workspace_id: str,
        limits: RateLimitConfig,
    ) -> Optional[RateLimitReservation]:
        try:
            reservation = await self.rate_limiter.reserve(workspace_id, limits)
        except InfrastructureError as e:
            logger.warning("Rate limit check failed for workspace %s, continuing without it: %s", workspace_id, e)
            return None

        if not reservation.allowed:
            retry_after = reservation.status.retry_after_seconds or 1
            raise RateLimitedError(
                f"Rate limit exceeded. Please try again in {retry_after} seconds.",
                retry_after_seconds=retry_after,
            )
        return reservation

    async def _dispatch(self, adapter: ProviderAdapter, provider: str, llm_request: LLMRequest) -> LLMResponse:
        try:
            return await asyncio.wait_for(
                adapter.complete(llm_request),
                timeout=self.config.request_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.error("Provider %s timed out after %.1fs", provider, self.config.request_timeout_seconds)
            raise ProxyTimeoutError(
                f"Request to {provider} timed out after {self.config.request_timeout_seconds:g} seconds"
            ) from None
        except ProxyError as e:
            logger.error("Provider %s failed: %s", provider, type(e).__name__)
            raise
        except Exception as e:
            logger.exception("Unexpected adapter failure for provider %s", provider)
            raise UpstreamError(
                f"Unexpected {provider} adapter failure: {e}",
                kind=UpstreamErrorKind.UNAVAILABLE,
                provider=provider,
            ) from e

    def _estimate_usage(self, model: str, response: LLMResponse) -> ProxyUsage:
        tokens = response.usage
        input_tokens = tokens.prompt_tokens if tokens else 0
        output_tokens = tokens.completion_tokens if tokens else 0
        return ProxyUsage(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=tokens.total_tokens if tokens else 0,
            estimated_cost=calculate_cost(model, input_tokens, output_tokens, self.pricing),
        )

    async def _finalize(
        self,
        request: ProxyRequest,
        user_id: str,
        model: str,
        usage: ProxyUsage,
        latency_ms: int,
        request_id: str,
        reservation: Optional[RateLimitReservation],
    ) -> List[str]:
        """Write the ledger row and count the request. Returns warnings."""
        warnings = []
        record = UsageRecord(
            workspace_id=request.workspace_id,
            user_id=user_id,
            provider=request.provider,
            model=model,
            endpoint=request.endpoint,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            total_tokens=usage.total_tokens,
            estimated_cost=usage.estimated_cost,
            response_time_ms=latency_ms,
            created_at=self.usage_monitor.clock(),
            cache_hit=False,
            request_id=request_id,
        )
        try:
            await self.usage_monitor.record_usage(record)
            logger.info("Recorded $%.6f for workspace %s", usage.estimated_cost, request.workspace_id)
        except InfrastructureError as e:
            logger.warning("Failed to record usage for workspace %s: %s", request.workspace_id, e)
            warnings.append(USAGE_NOT_RECORDED_WARNING)

        if reservation is not None:
            reservation.commit()

        return warnings

    async def _release(self, reservation: RateLimitReservation) -> None:
        try:
            await reservation.release()
        except InfrastructureError as e:
            logger.warning("Failed to release rate limit slot for workspace %s: %s", reservation.workspace_id, e)

    def _cached_response(self, cached: LLMResponse, key_source: str, started: float) -> ProxyResponse:
        tokens = cached.usage
        return ProxyResponse(
            data=cached,
            usage=ProxyUsage(
                input_tokens=tokens.prompt_tokens if tokens else 0,
                output_tokens=tokens.completion_tokens if tokens else 0,
                total_tokens=tokens.total_tokens if tokens else 0,
                estimated_cost=0.0,
            ),
            cached=True,
            key_source=key_source,
            latency_ms=int((time.monotonic() - started) * 1000),
            request_id=str(uuid.uuid4()),
        )
