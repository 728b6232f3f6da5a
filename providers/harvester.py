"""
CAPTCHA Harvester backend
=========================
Sends widget challenges to a human-in-the-loop harvester service and polls
for the token a person solved in the harvester UI.

Usage:
    async with HarvesterProvider("http://localhost:8000") as provider:
        solution = await provider.solve_challenge(challenge)
"""

import asyncio
import logging
from typing import Optional

import aiohttp

from core.errors import ProviderError
from core.models import VendorTag
from providers.base import BaseProvider, ProviderOptions, ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)

PROVIDER_ID = 'harvester'

CAPTCHA_TYPES = {
    VendorTag.WIDGET_CHECKBOX: 'recaptcha_v2',
    VendorTag.WIDGET_SCORE: 'recaptcha_v3',
    VendorTag.WIDGET_ALT: 'hcaptcha',
}


class HarvesterProvider(BaseProvider):
    """Client for a CAPTCHA harvester service"""

    provider_id = PROVIDER_ID

    def __init__(self, harvester_url: str = "http://localhost:8000",
                 options: Optional[ProviderOptions] = None, request_timeout: int = 10,
                 session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize harvester provider

        Args:
            harvester_url: Base URL of harvester service (e.g., http://localhost:8000)
            options: Polling interval / timeout
            request_timeout: Per request timeout in seconds
        """
        super().__init__(options)
        self.harvester_url = harvester_url.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)
        self.session = session
        self._checked = False

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session"""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    async def close(self):
        """Close aiohttp session"""
        if self.session and not self.session.closed:
            await self.session.close()

    async def health_check(self) -> bool:
        """Check if harvester service answers on /api/stats"""
        try:
            session = await self._get_session()
            async with session.get(f"{self.harvester_url}/api/stats") as response:
                return response.status == 200
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[X] Harvester health check failed: {e}")
            return False

    async def ensure_available(self):
        """Run the health check once, before the first challenge is created"""
        if self._checked:
            return
        if not await self.health_check():
            raise ProviderError(PROVIDER_ID, f"harvester not reachable at {self.harvester_url}", 'UNAVAILABLE')
        self._checked = True

    async def _solve(self, request: ProviderRequest) -> ProviderResponse:
        captcha_type = CAPTCHA_TYPES.get(request.vendor_tag)
        if captcha_type is None:
            raise ProviderError(PROVIDER_ID, f"unsupported challenge type: {request.vendor_tag.value}")

        await self.ensure_available()
        challenge_id = await self.create_challenge(request.site_key, request.page_url, captcha_type)
        token = await self.get_solution(challenge_id)
        return ProviderResponse(provider_id=PROVIDER_ID, text=token, provider_captcha_id=challenge_id)

    async def create_challenge(self, sitekey: str, page_url: str, captcha_type: str) -> str:
        """
        Create a new challenge in the harvester

        Returns:
            Harvester challenge ID
        """
        session = await self._get_session()
        params = {"sitekey": sitekey, "page_url": page_url, "captcha_type": captcha_type}
        async with session.post(f"{self.harvester_url}/api/challenge/create", params=params) as response:
            if response.status != 200:
                raise ProviderError(PROVIDER_ID, f"create failed: HTTP {response.status}", str(response.status))
            data = await response.json()

        challenge_id = data.get("challenge_id")
        if not challenge_id:
            raise ProviderError(PROVIDER_ID, f"create returned no challenge id: {data!r}")
        logger.info(f"[+] Challenge created: {challenge_id} ({captcha_type})")
        return challenge_id

    async def get_solution(self, challenge_id: str) -> str:
        """Poll until the harvester has a token or the timeout expires"""
        deadline = asyncio.get_event_loop().time() + self.options.timeout
        logger.info(f"[SOLVE] Polling harvester for {challenge_id} (timeout: {self.options.timeout}s)")

        while True:
            session = await self._get_session()
            async with session.get(f"{self.harvester_url}/api/challenge/{challenge_id}/solution") as response:
                if response.status == 200:
                    data = await response.json()
                    if data.get("token"):
                        logger.info(f"[OK] Solution received: {challenge_id[:8]}...")
                        return data["token"]
                else:
                    logger.warning(f"Harvester API error: {response.status}")

            if asyncio.get_event_loop().time() >= deadline:
                raise ProviderError(PROVIDER_ID, f"no solution for {challenge_id} after {self.options.timeout}s",
                                    'TIMEOUT')
            await asyncio.sleep(self.options.polling_interval)
