"""In-browser tests: the page scripts running against real documents in Chromium."""

import asyncio
import base64
from dataclasses import replace

import pytest

from agents.captcha_agent import CaptchaAgent
from core.descriptor import ElementDescriptor
from core.models import FilterReason, Solution, SolveOptions, VendorTag, utcnow
from providers.registry import CallableProvider
from vendors.base import page_function
from vendors.hcaptcha import HcaptchaHandler
from vendors.image import ImageHandler
from vendors.recaptcha import RecaptchaHandler

PIXEL = 'data:image/gif;base64,R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7'

BUILD = page_function("return buildDescriptor(document.querySelector(arg.selector));")
RESOLVES_TO = page_function(
    "const found = resolveDescriptor(arg.rendered);"
    "return !!found && found === document.querySelector(arg.selector);"
)
RESOLVES = page_function("return resolveDescriptor(arg.rendered) !== null;")


def _stub_provider():
    async def solve(request):
        return f"answer-{request.vendor_tag.value}"

    return CallableProvider(solve, provider_id='stub')


async def _describe(page, selector):
    return ElementDescriptor.from_dict(await page.evaluate(BUILD, {'selector': selector}))


class TestDescriptorInPage:
    async def test_round_trip(self, page):
        await page.set_content(f"""
            <div id="root">
              <div class="row">first</div>
              <div class="row"><img class="pic" src="{PIXEL}"></div>
            </div>
            <form><input name="captcha_code"><span><b>x</b></span></form>
            <p id="plain">text</p>
        """)
        cases = {
            '#root img': '#root > div.row:nth-of-type(2) > img.pic',
            'input': 'input[name="captcha_code"]',
            '#plain': '#plain',
            'b': 'body > form > span > b',
        }
        for selector, expected in cases.items():
            descriptor = await _describe(page, selector)
            assert descriptor.selector == expected
            assert await page.evaluate(RESOLVES_TO, {'rendered': descriptor.selector, 'selector': selector})

    async def test_removed_element_does_not_resolve(self, page):
        await page.set_content('<div><p class="gone">bye</p></div>')
        descriptor = await _describe(page, 'p.gone')
        await page.evaluate("document.querySelector('p.gone').remove()")
        assert not await page.evaluate(RESOLVES, {'rendered': descriptor.selector})

    async def test_invalid_selector_is_not_found(self, page):
        await page.set_content('<p>x</p>')
        assert not await page.evaluate(RESOLVES, {'rendered': 'div[[['})


class TestDetectionInPage:
    async def test_empty_document(self, page):
        await page.set_content('<html><body></body></html>')
        agent = CaptchaAgent(_stub_provider(), options=SolveOptions(solve_image_captchas=True))
        result = await agent.find(page)
        assert result.challenges == []
        assert result.filtered == []
        assert result.error is None

    async def test_duplicate_images_yield_one_challenge(self, page):
        await page.set_content(f"""
            <img class="captcha" src="{PIXEL}">
            <img alt="CAPTCHA" src="{PIXEL}">
            <img src="{PIXEL}" alt="logo">
        """)
        detection = await ImageHandler().detect(page.main_frame, SolveOptions())
        assert len(detection.challenges) == 1
        assert detection.challenges[0].image.image_snapshot == PIXEL

    async def test_images_inside_forms_are_preferred(self, page):
        await page.set_content(f"""
            <img id="captcha-banner" src="{PIXEL}#banner">
            <form><img id="captcha-img" src="{PIXEL}#form"><input type="text" name="answer"></form>
        """)
        [challenge] = (await ImageHandler().detect(page.main_frame, SolveOptions())).challenges
        assert challenge.descriptor.selector == '#captcha-img'
        assert challenge.input_descriptor.selector == 'input[name="answer"]'

    async def test_visual_feedback_marks_detected_images(self, page):
        await page.set_content(f'<img id="c" class="captcha" src="{PIXEL}">')
        await ImageHandler().detect(page.main_frame, SolveOptions())
        assert '255, 0, 0' in await page.evaluate("getComputedStyle(document.getElementById('c')).borderColor")

        await page.set_content(f'<img id="c" class="captcha" src="{PIXEL}">')
        await ImageHandler().detect(page.main_frame, SolveOptions(visual_feedback=False))
        assert await page.evaluate("document.getElementById('c').style.border") == ''

    async def test_score_client_from_registration_object(self, page):
        await page.set_content("""
            <script>
              window.___grecaptcha_cfg = {clients: {100000: {id: 100000, aa: {bb: {
                sitekey: 'v3-key', size: 'invisible', action: 'login', callback: 'onToken'
              }}}}};
            </script>
        """)
        agent = CaptchaAgent(_stub_provider(), handlers=[RecaptchaHandler()])
        result = await agent.find(page)
        [decision] = result.filtered
        assert decision.reason is FilterReason.SCORE_BASED_DISABLED
        challenge = decision.challenge
        assert challenge.vendor_tag is VendorTag.WIDGET_SCORE
        assert challenge.widget.widget_id == '100000'
        assert challenge.widget.site_key == 'v3-key'
        assert challenge.widget.action == 'login'
        assert challenge.widget.is_invisible

    async def test_hcaptcha_iframe(self, page):
        await page.set_content("""
            <div class="h-captcha" data-sitekey="markup-key">
              <iframe data-hcaptcha-widget-id="w1" src="about:blank#frame=checkbox&id=w1&sitekey=frame-key"></iframe>
              <textarea name="h-captcha-response" id="h-captcha-response-w1"></textarea>
            </div>
        """)
        [challenge] = (await HcaptchaHandler().detect(page.main_frame, SolveOptions())).challenges
        assert challenge.vendor_tag is VendorTag.WIDGET_ALT
        assert challenge.widget.widget_id == 'w1'
        assert challenge.widget.site_key == 'frame-key'
        assert challenge.widget.has_response_slot
        assert not challenge.widget.has_response


class TestEndToEnd:
    PAGE = f"""
        <script>
          window.tokens = {{}};
          function onRecaptcha(token) {{ window.tokens.recaptcha = token; }}
          function onHcaptcha(token) {{ window.tokens.hcaptcha = token; }}
        </script>
        <div id="recaptcha-box" class="g-recaptcha" data-sitekey="re-key" data-callback="onRecaptcha"></div>
        <div id="hcaptcha-box" class="h-captcha" data-sitekey="h-key" data-callback="onHcaptcha"></div>
        <form onsubmit="event.preventDefault(); window.submitted = true;">
          <table>
            <tr><td><img id="captcha-image" src="{PIXEL}"></td></tr>
            <tr><td><input type="text" id="code"></td></tr>
          </table>
          <button type="submit">Send</button>
        </form>
    """

    async def test_three_vendors(self, page):
        await page.set_content(self.PAGE)
        agent = CaptchaAgent(_stub_provider(), options=SolveOptions(solve_image_captchas=True, submit_delay_ms=50))

        result = await agent.run(page)

        assert result.error is None
        assert len(result.challenges) == 3
        assert {c.vendor_tag for c in result.challenges} == {
            VendorTag.WIDGET_CHECKBOX, VendorTag.WIDGET_ALT, VendorTag.IMAGE}
        assert len(result.solved) == 3
        assert all(record.is_solved for record in result.solved)

        assert await page.evaluate("document.querySelector('#recaptcha-box textarea').value") == \
            'answer-widget-checkbox'
        assert await page.evaluate("document.querySelector('#hcaptcha-box textarea').value") == 'answer-widget-alt'
        assert await page.evaluate("window.tokens") == {
            'recaptcha': 'answer-widget-checkbox', 'hcaptcha': 'answer-widget-alt'}
        assert await page.evaluate("document.getElementById('code').value") == 'answer-image'

        await asyncio.sleep(0.3)
        assert await page.evaluate("window.submitted === true")

    async def test_solved_widgets_are_not_solved_again(self, page):
        await page.set_content(self.PAGE)
        agent = CaptchaAgent(_stub_provider(), options=SolveOptions(submit_delay_ms=50))
        first = await agent.run(page)
        assert len(first.challenges) == 2

        second = await agent.find(page)
        assert second.challenges == []
        assert {f.reason for f in second.filtered} == {
            FilterReason.INACTIVE_CHALLENGE_DISABLED, FilterReason.IMAGE_DISABLED}


SITE = 'https://site.test/login'
PNG = base64.b64decode(
    'iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8DwHwAFBQIAX8jx0gAAAABJRU5ErkJggg==')


async def _serve(page, html):
    """Load html as https://site.test/login; other documents are blank and everything else is a PNG"""
    async def handle(route):
        request = route.request
        if request.url == SITE:
            await route.fulfill(status=200, content_type='text/html', body=html)
        elif request.resource_type == 'document':
            await route.fulfill(status=200, content_type='text/html', body='<html><body></body></html>')
        else:
            await route.fulfill(status=200, content_type='image/png', body=PNG)

    await page.route('**/*', handle)
    await page.goto(SITE)


def _answer(challenge, text, image_url=None):
    if image_url is not None:
        challenge = replace(challenge, payload=replace(challenge.payload, image_url=image_url))
    return Solution(id=challenge.id, vendor_tag=challenge.vendor_tag, provider_id='stub',
                    requested_at=utcnow(), text=text, challenge=challenge)


async def _value(page, element_id):
    return await page.evaluate("(id) => document.getElementById(id).value", element_id)


class TestImageSnapshots:
    async def test_same_origin_and_cross_origin(self, page):
        await _serve(page, """
            <form><img id="local" class="captcha" src="/img/captcha.png"><input type="text"></form>
            <form><img id="remote" class="captcha" src="https://cdn.other.test/captcha.png"><input type="text"></form>
        """)
        challenges = (await ImageHandler().detect(page.main_frame, SolveOptions())).challenges
        by_url = {c.image.image_url: c.image for c in challenges}

        local = by_url['https://site.test/img/captcha.png']
        assert local.image_snapshot.startswith('data:image/png;base64,')
        assert local.snapshot_error is None

        remote = by_url['https://cdn.other.test/captcha.png']
        assert remote.image_snapshot is None
        assert remote.snapshot_error == 'cross-origin image'


class TestImageInputLookup:
    async def test_input_in_sibling_container(self, page):
        await _serve(page, """
            <div id="outer">
              <div id="pic"><img id="c" class="captcha" src="/img/captcha.png"></div>
              <div id="entry"><input type="text" id="code"></div>
            </div>
        """)
        options = SolveOptions(ancestor_search_depth=1)
        [challenge] = (await ImageHandler().detect(page.main_frame, options)).challenges
        assert challenge.input_descriptor.selector == '#code'

        [record] = await ImageHandler().inject(page.main_frame, [_answer(challenge, 'sib1')], options)
        assert record.is_solved
        assert await _value(page, 'code') == 'sib1'

    @pytest.mark.parametrize('top,found', [(100, True), (500, False)])
    async def test_nearest_input_within_distance(self, page, top, found):
        await _serve(page, f"""
            <div><div>
              <img id="c" class="captcha" src="/img/captcha.png"
                   style="position:absolute; left:10px; top:10px; width:60px; height:20px">
            </div></div>
            <p>filler</p>
            <div><span><input type="text" id="code" style="position:absolute; left:10px; top:{top}px"></span></div>
        """)
        options = SolveOptions(ancestor_search_depth=1)
        [challenge] = (await ImageHandler().detect(page.main_frame, options)).challenges

        [record] = await ImageHandler().inject(page.main_frame, [_answer(challenge, 'near')], options)

        if found:
            assert challenge.input_descriptor.selector == '#code'
            assert record.is_solved
            assert await _value(page, 'code') == 'near'
        else:
            assert challenge.input_descriptor is None
            assert not record.is_solved
            assert record.error == 'ElementNotFound: captcha input field'
            assert await _value(page, 'code') == ''


class TestImageRelocation:
    async def test_filename_with_matching_path_wins(self, page):
        await _serve(page, """
            <form><img src="/other/captcha.png"><input type="text" id="decoy-code"></form>
            <form><img src="/static/captcha.png?v=2"><input type="text" id="code"></form>
        """)
        challenges = (await ImageHandler().detect(page.main_frame, SolveOptions())).challenges
        challenge = next(c for c in challenges if '/static/' in c.image.image_url)

        solution = _answer(challenge, 'x7k2', image_url='https://site.test/static/captcha.png?v=1')
        [record] = await ImageHandler().inject(page.main_frame, [solution], SolveOptions())

        assert record.is_solved
        assert await _value(page, 'code') == 'x7k2'
        assert await _value(page, 'decoy-code') == ''

    async def test_substring_match_when_timestamp_changed(self, page):
        await _serve(page, '<form><img src="/captcha/?t=200"><input type="text" id="code"></form>')
        [challenge] = (await ImageHandler().detect(page.main_frame, SolveOptions())).challenges

        solution = _answer(challenge, 'ts99', image_url='https://site.test/captcha/?t=100')
        [record] = await ImageHandler().inject(page.main_frame, [solution], SolveOptions())

        assert record.is_solved
        assert await _value(page, 'code') == 'ts99'

    async def test_descriptor_used_when_src_changed(self, page):
        await _serve(page, '<form><img id="captcha-img" src="/gen/one.png"><input type="text" id="code"></form>')
        [challenge] = (await ImageHandler().detect(page.main_frame, SolveOptions())).challenges
        assert challenge.descriptor.selector == '#captcha-img'

        await page.evaluate("document.getElementById('captcha-img').src = '/gen/two.png'")
        [record] = await ImageHandler().inject(page.main_frame, [_answer(challenge, 'desc')], SolveOptions())

        assert record.is_solved
        assert await _value(page, 'code') == 'desc'

    async def test_removed_image_is_not_found(self, page):
        await _serve(page, '<form><img id="captcha-img" src="/gen/one.png"><input type="text" id="code"></form>')
        [challenge] = (await ImageHandler().detect(page.main_frame, SolveOptions())).challenges

        await page.evaluate("document.getElementById('captcha-img').remove()")
        [record] = await ImageHandler().inject(page.main_frame, [_answer(challenge, 'gone')], SolveOptions())

        assert not record.is_solved
        assert record.error.startswith('ElementNotFound: captcha image')


class TestRecaptchaOverlay:
    BFRAME = 'https://www.google.com/recaptcha/api2/bframe?k=inv-key'

    @pytest.mark.parametrize('overlay,active', [
        ('', False),
        (f'<iframe src="{BFRAME}" style="width:400px; height:580px"></iframe>', True),
        (f'<iframe src="{BFRAME}" style="visibility:hidden"></iframe>', False),
    ])
    async def test_visible_bframe_activates_invisible_widget(self, page, overlay, active):
        await _serve(page, f"""
            <div id="rc" class="g-recaptcha" data-sitekey="inv-key" data-size="invisible"></div>
            {overlay}
        """)
        agent = CaptchaAgent(_stub_provider(), handlers=[RecaptchaHandler()])

        result = await agent.find(page)

        if active:
            [challenge] = result.challenges
            assert challenge.widget.is_invisible
            assert challenge.widget.has_active_challenge_overlay
        else:
            assert result.challenges == []
            [decision] = result.filtered
            assert decision.reason is FilterReason.INACTIVE_CHALLENGE_DISABLED
