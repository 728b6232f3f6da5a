"""Tests for providers/twocaptcha.py and the request building in providers/base.py."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from core.errors import MissingChallengeData
from core.models import ChallengeRecord, ImagePayload, VendorTag, WidgetPayload
from providers.base import ProviderOptions, ProviderRequest
from providers.proxy import NormalizedProxy, ProxyConfig
from providers.twocaptcha import TwoCaptchaProvider


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _mock_aiohttp_response(json_data, status=200):
    """Return an async-context-manager mock that behaves like aiohttp response."""
    resp = AsyncMock()
    resp.json = AsyncMock(return_value=json_data)
    resp.status = status
    cm = AsyncMock()
    cm.__aenter__ = AsyncMock(return_value=resp)
    cm.__aexit__ = AsyncMock(return_value=False)
    return cm


def _mock_session():
    session = MagicMock()
    session.closed = False
    session.close = AsyncMock()
    return session


def _provider(session=None, api_key="test_key_123", **options):
    defaults = {'polling_interval': 0, 'timeout': 5}
    defaults.update(options)
    return TwoCaptchaProvider(api_key, options=ProviderOptions(**defaults), session=session or _mock_session())


def _widget(vendor_tag=VendorTag.WIDGET_CHECKBOX, **payload):
    values = {'site_key': 'SITEKEY', 'page_url': 'https://site.test/login'}
    values.update(payload)
    return ChallengeRecord(
        vendor_tag=vendor_tag, id='c1', frame_url='https://site.test/login',
        is_in_viewport=True, payload=WidgetPayload(**values),
    )


def _image(snapshot='data:image/png;base64,iVBORw0KGgo=', error=None):
    return ChallengeRecord(
        vendor_tag=VendorTag.IMAGE, id='img1', frame_url='https://site.test/login', is_in_viewport=True,
        payload=ImagePayload(image_url='https://site.test/captcha.png', image_snapshot=snapshot,
                             snapshot_error=error),
    )


# ===================================================================
# Request building
# ===================================================================

class TestBuildRequest:
    def test_checkbox_widget(self):
        p = _provider()
        req = p.build_request(_widget(action='login', extra_site_param='S-VALUE'))
        params = p.submit_params(req)
        assert params['method'] == 'userrecaptcha'
        assert params['googlekey'] == 'SITEKEY'
        assert params['pageurl'] == 'https://site.test/login'
        assert params['data-s'] == 'S-VALUE'
        assert params['action'] == 'login'
        assert params['json'] == 1
        assert 'version' not in params

    def test_score_widget_sends_v3(self):
        p = _provider()
        params = p.submit_params(p.build_request(_widget(VendorTag.WIDGET_SCORE, action='submit')))
        assert params['version'] == 'v3'

    def test_action_value_can_be_disabled(self):
        p = _provider(use_action_value=False)
        params = p.submit_params(p.build_request(_widget(action='login')))
        assert 'action' not in params

    def test_enterprise_flag_is_opt_in(self):
        p = _provider()
        assert 'enterprise' not in p.submit_params(p.build_request(_widget(is_enterprise=True)))
        p = _provider(use_enterprise_flag=True)
        assert p.submit_params(p.build_request(_widget(is_enterprise=True)))['enterprise'] == 1

    def test_alt_widget(self):
        p = _provider()
        params = p.submit_params(p.build_request(_widget(VendorTag.WIDGET_ALT)))
        assert params['method'] == 'hcaptcha'
        assert params['sitekey'] == 'SITEKEY'
        assert 'googlekey' not in params

    def test_image_strips_data_url_prefix(self):
        p = _provider()
        params = p.submit_params(p.build_request(_image()))
        assert params['method'] == 'base64'
        assert params['body'] == 'iVBORw0KGgo='

    def test_missing_site_key(self):
        with pytest.raises(MissingChallengeData):
            _provider().build_request(_widget(site_key=''))

    def test_missing_snapshot(self):
        with pytest.raises(MissingChallengeData, match='cross-origin'):
            _provider().build_request(_image(snapshot=None, error='cross-origin image'))

    def test_explicit_proxy_beats_ambient(self):
        p = _provider(proxy=ProxyConfig(server='http://u:p@5.6.7.8:3128'),
                      ambient_proxy=NormalizedProxy('SOCKS4', '1.2.3.4:1080'))
        params = p.submit_params(p.build_request(_widget()))
        assert params['proxytype'] == 'HTTP'
        assert params['proxy'] == 'u:p@5.6.7.8:3128'

    def test_ambient_proxy_used_without_explicit(self):
        p = _provider(ambient_proxy=NormalizedProxy('SOCKS4', '1.2.3.4:1080'))
        params = p.submit_params(p.build_request(_widget()))
        assert params['proxytype'] == 'SOCKS4'
        assert params['proxy'] == '1.2.3.4:1080'


# ===================================================================
# Submit / poll
# ===================================================================

class TestSolve:
    async def test_success_after_not_ready(self):
        sess = _mock_session()
        sess.post = MagicMock(return_value=_mock_aiohttp_response({"status": 1, "request": "REQ123"}))
        sess.get = MagicMock(side_effect=[
            _mock_aiohttp_response({"status": 0, "request": "CAPCHA_NOT_READY"}),
            _mock_aiohttp_response({"status": 1, "request": "TOKEN_ABC"}),
        ])
        p = _provider(sess)

        with patch("asyncio.sleep", new_callable=AsyncMock):
            solution = await p.solve_challenge(_widget())

        assert solution.has_solution
        assert solution.text == "TOKEN_ABC"
        assert solution.provider_captcha_id == "REQ123"
        assert solution.provider_id == "2captcha"
        assert solution.duration_seconds >= 0
        assert sess.get.call_count == 2
        assert sess.get.call_args.kwargs['params'] == {
            'key': 'test_key_123', 'action': 'get', 'id': 'REQ123', 'json': 1}

    async def test_submit_error_is_reported(self):
        sess = _mock_session()
        sess.post = MagicMock(return_value=_mock_aiohttp_response({"status": 0, "request": "ERROR_ZERO_BALANCE"}))
        p = _provider(sess)

        solution = await p.solve_challenge(_widget())

        assert not solution.has_solution
        assert "ERROR_ZERO_BALANCE" in solution.error
        assert solution.error.startswith("ProviderError")

    async def test_poll_error_is_reported(self):
        sess = _mock_session()
        sess.post = MagicMock(return_value=_mock_aiohttp_response({"status": 1, "request": "REQ1"}))
        sess.get = MagicMock(return_value=_mock_aiohttp_response(
            {"status": 0, "request": "ERROR_CAPTCHA_UNSOLVABLE"}))
        p = _provider(sess)

        with patch("asyncio.sleep", new_callable=AsyncMock):
            solution = await p.solve_challenge(_image())

        assert "ERROR_CAPTCHA_UNSOLVABLE" in solution.error

    async def test_poll_timeout(self):
        sess = _mock_session()
        sess.post = MagicMock(return_value=_mock_aiohttp_response({"status": 1, "request": "REQ1"}))
        sess.get = MagicMock(return_value=_mock_aiohttp_response({"status": 0, "request": "CAPCHA_NOT_READY"}))
        p = _provider(sess, timeout=0)

        with patch("asyncio.sleep", new_callable=AsyncMock):
            solution = await p.solve_challenge(_widget())

        assert "no answer for REQ1" in solution.error

    async def test_malformed_json(self):
        sess = _mock_session()
        sess.post = MagicMock(return_value=_mock_aiohttp_response(["not", "a", "dict"]))
        p = _provider(sess)

        response = await p.solve(ProviderRequest('c1', VendorTag.WIDGET_CHECKBOX, 'https://x.test', 'K'))
        assert "malformed response" in response.error

    async def test_missing_api_key_makes_no_call(self):
        sess = _mock_session()
        sess.post = MagicMock()
        p = _provider(sess, api_key=None)

        solution = await p.solve_challenge(_widget())

        assert "missing API key" in solution.error
        sess.post.assert_not_called()

    async def test_missing_data_makes_no_call(self):
        sess = _mock_session()
        sess.post = MagicMock()
        p = _provider(sess)

        solution = await p.solve_challenge(_image(snapshot=None, error='image not loaded'))

        assert solution.error.startswith("MissingChallengeData")
        assert solution.responded_at is None
        sess.post.assert_not_called()

    async def test_close(self):
        sess = _mock_session()
        p = _provider(sess)
        await p.close()
        sess.close.assert_awaited_once()
