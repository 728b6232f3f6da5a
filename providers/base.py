"""
Provider Adapter interface

A provider turns one ChallengeRecord into one Solution. Request building is
local and raises MissingChallengeData before any remote call is made; the
remote part (submit, poll) is the provider's own business and never raises.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from core.errors import CaptchaError, MissingChallengeData, format_error
from core.models import ChallengeRecord, Solution, VendorTag, utcnow
from providers.proxy import NormalizedProxy, ProxyConfig, resolve_proxy

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProviderOptions:
    use_enterprise_flag: bool = False
    use_action_value: bool = True
    polling_interval: float = 2.0
    timeout: float = 180.0
    proxy: Optional[ProxyConfig] = None
    ambient_proxy: Optional[NormalizedProxy] = None


@dataclass(frozen=True)
class ProviderRequest:
    """Everything a backend needs to solve one challenge"""
    challenge_id: str
    vendor_tag: VendorTag
    page_url: Optional[str] = None
    site_key: Optional[str] = None
    image_base64: Optional[str] = None
    image_url: Optional[str] = None
    extra_params: Dict[str, Any] = field(default_factory=dict)
    proxy: Optional[NormalizedProxy] = None


@dataclass(frozen=True)
class ProviderResponse:
    provider_id: str
    text: Optional[str] = None
    provider_captcha_id: Optional[str] = None
    error: Optional[str] = None


def strip_data_url(data: str) -> str:
    """'data:image/png;base64,AAAA' -> 'AAAA'"""
    if data.startswith('data:') and ',' in data:
        return data.split(',', 1)[1]
    return data


class BaseProvider(ABC):
    """Base class for solving backends"""

    provider_id = 'base'

    def __init__(self, options: Optional[ProviderOptions] = None):
        self.options = options or ProviderOptions()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def close(self):
        """Release network resources"""

    def build_request(self, challenge: ChallengeRecord) -> ProviderRequest:
        """
        Build the backend request for a challenge

        Raises:
            MissingChallengeData: site key / page URL or image snapshot absent
        """
        image = challenge.image
        if image is not None:
            if not image.image_snapshot:
                reason = image.snapshot_error or 'no snapshot taken'
                raise MissingChallengeData(f"image {image.image_url} has no snapshot ({reason})")
            return ProviderRequest(
                challenge_id=challenge.id,
                vendor_tag=challenge.vendor_tag,
                page_url=challenge.frame_url,
                image_base64=strip_data_url(image.image_snapshot),
                image_url=image.image_url,
            )

        widget = challenge.widget
        if widget is None or not widget.site_key or not widget.page_url:
            raise MissingChallengeData(f"challenge {challenge.id} has no site key or page URL")

        extra: Dict[str, Any] = {}
        if widget.extra_site_param:
            extra['data-s'] = widget.extra_site_param
        if self.options.use_action_value and widget.action:
            extra['action'] = widget.action
        if self.options.use_enterprise_flag and widget.is_enterprise:
            extra['enterprise'] = 1
        if challenge.vendor_tag is VendorTag.WIDGET_SCORE:
            extra['version'] = 'v3'
        if widget.is_invisible and challenge.vendor_tag is VendorTag.WIDGET_CHECKBOX:
            extra['invisible'] = 1

        return ProviderRequest(
            challenge_id=challenge.id,
            vendor_tag=challenge.vendor_tag,
            page_url=widget.page_url,
            site_key=widget.site_key,
            extra_params=extra,
            proxy=resolve_proxy(self.options.proxy, self.options.ambient_proxy),
        )

    async def solve(self, request: ProviderRequest) -> ProviderResponse:
        """Solve one request; failures come back in ProviderResponse.error"""
        try:
            return await self._solve(request)
        except CaptchaError as e:
            logger.warning(f"[SOLVE] {request.challenge_id}: {e}")
            return ProviderResponse(provider_id=self.provider_id, error=format_error(e))
        except Exception as e:
            logger.error(f"[SOLVE] {request.challenge_id}: unexpected {type(e).__name__}: {e}")
            return ProviderResponse(provider_id=self.provider_id, error=format_error(e))

    async def solve_challenge(self, challenge: ChallengeRecord) -> Solution:
        """Build, send and time the request for one challenge"""
        requested_at = utcnow()
        try:
            request = self.build_request(challenge)
        except MissingChallengeData as e:
            logger.warning(f"[SOLVE] {challenge.id}: {e}")
            return Solution(
                id=challenge.id,
                vendor_tag=challenge.vendor_tag,
                provider_id=self.provider_id,
                requested_at=requested_at,
                error=format_error(e),
                challenge=challenge,
            )

        response = await self.solve(request)
        responded_at = utcnow()
        error = response.error
        if error is None and not response.text:
            error = f"ProviderError: {self.provider_id} returned an empty answer"
        return Solution(
            id=challenge.id,
            vendor_tag=challenge.vendor_tag,
            provider_id=response.provider_id or self.provider_id,
            requested_at=requested_at,
            text=response.text,
            provider_captcha_id=response.provider_captcha_id,
            responded_at=responded_at,
            duration_seconds=(responded_at - requested_at).total_seconds(),
            error=error,
            challenge=challenge,
        )

    @abstractmethod
    async def _solve(self, request: ProviderRequest) -> ProviderResponse:
        """Backend specific solve; may raise"""
