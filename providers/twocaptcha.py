"""
2captcha backend

Submits to in.php and polls res.php until the answer is ready:

    POST in.php  method=userrecaptcha|hcaptcha|base64  -> {status: 1, request: <captcha id>}
    GET  res.php action=get&id=<captcha id>           -> {status: 0, request: CAPCHA_NOT_READY}
                                                      -> {status: 1, request: <answer>}
"""

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from core.errors import ProviderError
from core.models import VendorTag
from providers.base import BaseProvider, ProviderOptions, ProviderRequest, ProviderResponse

logger = logging.getLogger(__name__)

PROVIDER_ID = '2captcha'
API_BASE = 'https://2captcha.com'
NOT_READY = 'CAPCHA_NOT_READY'


class TwoCaptchaProvider(BaseProvider):
    """2captcha.com legacy in.php / res.php API"""

    provider_id = PROVIDER_ID

    def __init__(self, api_key: Optional[str], options: Optional[ProviderOptions] = None,
                 api_base: str = API_BASE, request_timeout: int = 30,
                 session: Optional[aiohttp.ClientSession] = None):
        super().__init__(options)
        self.api_key = api_key
        self.api_base = api_base.rstrip('/')
        self.timeout = aiohttp.ClientTimeout(total=request_timeout)
        self.session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session"""
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    async def close(self):
        if self.session and not self.session.closed:
            await self.session.close()

    def submit_params(self, request: ProviderRequest) -> Dict[str, Any]:
        """Form fields for in.php"""
        params: Dict[str, Any] = {'key': self.api_key, 'json': 1}
        if request.vendor_tag is VendorTag.IMAGE:
            params['method'] = 'base64'
            params['body'] = request.image_base64
            return params

        if request.vendor_tag is VendorTag.WIDGET_ALT:
            params['method'] = 'hcaptcha'
            params['sitekey'] = request.site_key
        else:
            params['method'] = 'userrecaptcha'
            params['googlekey'] = request.site_key
        params['pageurl'] = request.page_url
        params.update(request.extra_params)
        if request.proxy:
            params.update(request.proxy.to_params())
        return params

    async def _solve(self, request: ProviderRequest) -> ProviderResponse:
        if not self.api_key:
            raise ProviderError(PROVIDER_ID, 'missing API key', 'ERROR_KEY_DOES_NOT_EXIST')

        params = self.submit_params(request)
        logger.info(f"[SOLVE] Submitting {params['method']} to {PROVIDER_ID} ({request.challenge_id})")
        captcha_id = await self._submit(params)
        text = await self._poll(captcha_id)
        logger.info(f"[SOLVE] {PROVIDER_ID} answered {request.challenge_id} (captcha id {captcha_id})")
        return ProviderResponse(provider_id=PROVIDER_ID, text=text, provider_captcha_id=captcha_id)

    async def _submit(self, params: Dict[str, Any]) -> str:
        session = await self._get_session()
        async with session.post(f"{self.api_base}/in.php", data=params) as response:
            data = await self._read_json(response)
        if data.get('status') != 1:
            code = str(data.get('request') or 'UNKNOWN_ERROR')
            raise ProviderError(PROVIDER_ID, f"submit failed: {code}", code)
        return str(data['request'])

    async def _poll(self, captcha_id: str) -> str:
        session = await self._get_session()
        params = {'key': self.api_key, 'action': 'get', 'id': captcha_id, 'json': 1}
        deadline = asyncio.get_event_loop().time() + self.options.timeout

        while True:
            await asyncio.sleep(self.options.polling_interval)
            async with session.get(f"{self.api_base}/res.php", params=params) as response:
                data = await self._read_json(response)

            if data.get('status') == 1:
                return str(data['request'])
            code = str(data.get('request') or 'UNKNOWN_ERROR')
            if code != NOT_READY:
                raise ProviderError(PROVIDER_ID, f"poll failed: {code}", code)

            if asyncio.get_event_loop().time() >= deadline:
                raise ProviderError(PROVIDER_ID, f"no answer for {captcha_id} after {self.options.timeout}s",
                                    'TIMEOUT')
            logger.debug(f"[SOLVE] Waiting for {PROVIDER_ID} answer ({captcha_id})")

    @staticmethod
    async def _read_json(response) -> Dict[str, Any]:
        try:
            data = await response.json(content_type=None)
        except (aiohttp.ContentTypeError, ValueError) as e:
            raise ProviderError(PROVIDER_ID, f"malformed response (HTTP {response.status}): {e}")
        if not isinstance(data, dict):
            raise ProviderError(PROVIDER_ID, f"malformed response (HTTP {response.status}): {data!r}")
        return data
