"""
Error taxonomy for the resolution pipeline.

Every error crossing the package boundary carries a stable code and maps to a localized message.
"""

from typing import Any, Dict, Optional


class ResolverError(Exception):
    """Base class for all resolution pipeline errors."""

    code = "internal_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code


class InvalidArgument(ResolverError):
    """Input rejected at intake. Never retried."""

    code = "invalid_argument"


class ProviderUnavailable(ResolverError):
    """A known provider is not configured (missing credentials)."""

    code = "provider_unavailable"

    def __init__(self, provider: str, message: str = ""):
        super().__init__(message or f"Provider '{provider}' is not configured")
        self.provider = provider


class UnknownProvider(ResolverError):
    """The requested provider identity is not recognized."""

    code = "unknown_provider"

    def __init__(self, provider: str):
        super().__init__(f"Unknown provider: {provider}")
        self.provider = provider


class NoProviderAvailable(ResolverError):
    code = "no_provider_available"


class ProviderError(ResolverError):
    """Failure reported by (or while talking to) an upstream provider."""

    def __init__(self, provider: str, message: str = ""):
        super().__init__(message)
        self.provider = provider


class RateLimited(ProviderError):
    """Upstream answered HTTP 429 and the retry budget is spent."""

    code = "rate_limited"

    def __init__(self, provider: str, retry_after: Optional[float] = None):
        super().__init__(provider, f"Provider '{provider}' is rate limiting requests")
        self.retry_after = retry_after


class UpstreamError(ProviderError):
    """Non-2xx response or transport failure.

    The raw status and body are kept for diagnostics only; they are never
    part of the payload returned to callers.
    """

    code = "upstream_error"

    def __init__(self, provider: str, status: Optional[int], body: str = ""):
        super().__init__(provider, f"Provider '{provider}' returned status {status}")
        self.status = status
        self.body = body


class MalformedResponse(ProviderError):
    """The provider answered, but the payload could not be decoded."""

    code = "malformed_response"

    def __init__(self, provider: str, raw: Any = None):
        super().__init__(provider, f"Provider '{provider}' returned an unparseable response")
        self.raw = raw


class LimitExceeded(ResolverError):
    """A per-user governance limit was reached. Never retried."""


class DailyLimitExceeded(LimitExceeded):
    code = "daily_limit_exceeded"


class MonthlyLimitExceeded(LimitExceeded):
    code = "monthly_limit_exceeded"


class RateLimitExceeded(LimitExceeded):
    code = "rate_limit_exceeded"


MESSAGES: Dict[str, Dict[str, str]] = {
    "internal_error": {
        "ja": "内部エラーが発生しました",
        "en": "An internal error occurred",
    },
    "invalid_argument": {
        "ja": "入力内容が正しくありません",
        "en": "The request contains invalid input",
    },
    "provider_unavailable": {
        "ja": "指定されたAIプロバイダーは現在利用できません",
        "en": "The requested AI provider is not available",
    },
    "unknown_provider": {
        "ja": "指定されたAIプロバイダーはサポートされていません",
        "en": "The requested AI provider is not supported",
    },
    "no_provider_available": {
        "ja": "利用可能なAIプロバイダーがありません",
        "en": "No AI provider is currently available",
    },
    "rate_limited": {
        "ja": "AIプロバイダーが混雑しています。しばらくしてから再試行してください",
        "en": "The AI provider is busy, please retry shortly",
    },
    "upstream_error": {
        "ja": "AIプロバイダーでエラーが発生しました",
        "en": "The AI provider returned an error",
    },
    "malformed_response": {
        "ja": "AIプロバイダーの応答を解析できませんでした",
        "en": "The AI provider response could not be understood",
    },
    "daily_limit_exceeded": {
        "ja": "本日のAI利用上限に達しました",
        "en": "Daily AI usage limit exceeded",
    },
    "monthly_limit_exceeded": {
        "ja": "今月のAI利用上限に達しました",
        "en": "Monthly AI usage limit exceeded",
    },
    "rate_limit_exceeded": {
        "ja": "リクエストが多すぎます。しばらくしてから再試行してください",
        "en": "Rate limit exceeded, please try again later",
    },
}


def error_payload(error: BaseException, language: str = "ja") -> Dict[str, str]:
    """Translate an exception into a caller-safe payload.

    Args:
        error: Any exception raised by the pipeline
        language: Message locale ("ja" or "en"); unknown locales fall back to "en"

    Returns:
        Dictionary with a stable ``code`` and a localized ``message``
    """
    code = error.code if isinstance(error, ResolverError) else ResolverError.code
    messages = MESSAGES.get(code, MESSAGES[ResolverError.code])
    return {"code": code, "message": messages.get(language, messages["en"])}
