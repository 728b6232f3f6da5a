"""
Provider lookup
"""

import logging
from typing import Awaitable, Callable, Optional, Union

from core.errors import ProviderError
from providers.base import BaseProvider, ProviderOptions, ProviderRequest, ProviderResponse
from providers.harvester import HarvesterProvider
from providers.twocaptcha import TwoCaptchaProvider

logger = logging.getLogger(__name__)

SolveFunction = Callable[[ProviderRequest], Awaitable[Union[str, ProviderResponse, None]]]

ALIASES = {
    '2captcha': '2captcha',
    'twocaptcha': '2captcha',
    'harvester': 'harvester',
}


class CallableProvider(BaseProvider):
    """Adapts an async function to the provider interface"""

    def __init__(self, fn: SolveFunction, provider_id: str = 'custom',
                 options: Optional[ProviderOptions] = None):
        super().__init__(options)
        self.fn = fn
        self.provider_id = provider_id

    async def _solve(self, request: ProviderRequest) -> ProviderResponse:
        answer = await self.fn(request)
        if isinstance(answer, ProviderResponse):
            return answer
        if not answer:
            raise ProviderError(self.provider_id, 'no answer')
        return ProviderResponse(provider_id=self.provider_id, text=str(answer))


def get_provider(provider_id: str, *, api_key: Optional[str] = None,
                 harvester_url: Optional[str] = None,
                 options: Optional[ProviderOptions] = None) -> BaseProvider:
    """
    Create a provider by id

    Raises:
        ValueError: unknown provider id
    """
    key = ALIASES.get((provider_id or '').strip().lower())
    if key == '2captcha':
        if not api_key:
            logger.warning("[!] 2captcha selected without an API key")
        return TwoCaptchaProvider(api_key, options=options)
    if key == 'harvester':
        return HarvesterProvider(harvester_url or "http://localhost:8000", options=options)
    raise ValueError(f"Unknown captcha provider: {provider_id!r} (expected one of {sorted(set(ALIASES.values()))})")


def provider_from_config(config) -> BaseProvider:
    """Build the provider selected by a Config"""
    return get_provider(
        config.CAPTCHA_PROVIDER,
        api_key=config.TWOCAPTCHA_TOKEN,
        harvester_url=config.HARVESTER_URL,
        options=config.provider_options,
    )
