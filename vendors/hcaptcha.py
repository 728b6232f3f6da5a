"""
hCaptcha handler

Rendered widgets are recognized by their iframes (data-hcaptcha-widget-id, site
key in the URL fragment); unrendered widgets by .h-captcha[data-sitekey] markup.
A widget whose checkbox frame is gone is still found through its challenge frame.
"""

import logging
from typing import Any, Dict

from core.models import ChallengeRecord, Solution, VendorTag, WidgetPayload
from vendors.base import VendorHandler, new_challenge_id, page_function

logger = logging.getLogger(__name__)

_HELPERS = r"""
const fragmentParams = (src) => {
  try {
    const url = new URL(src, window.location.href);
    return new URLSearchParams(url.hash.slice(1));
  } catch (error) {
    return new URLSearchParams();
  }
};

const widgetFrames = () => {
  const widgets = {};
  document.querySelectorAll('iframe[data-hcaptcha-widget-id]').forEach(iframe => {
    const widgetId = iframe.getAttribute('data-hcaptcha-widget-id');
    const params = fragmentParams(iframe.src);
    const widget = widgets[widgetId] || (widgets[widgetId] = {
      widgetId, sitekey: null, checkbox: null, challenge: null, invisible: false
    });
    widget.sitekey = widget.sitekey || params.get('sitekey');
    if (params.get('frame') === 'challenge') {
      widget.challenge = iframe;
    } else {
      widget.checkbox = iframe;
      if (params.get('size') === 'invisible' || iframe.src.includes('invisible')) widget.invisible = true;
    }
  });
  return Object.values(widgets);
};

const findResponseSlots = (widgetId, container) => {
  const slots = [];
  if (widgetId) {
    const byId = document.getElementById('h-captcha-response-' + widgetId);
    if (byId) slots.push(byId);
  }
  if (container) {
    container
      .querySelectorAll('textarea[name="h-captcha-response"], textarea[name="g-recaptcha-response"]')
      .forEach(slot => { if (!slots.includes(slot)) slots.push(slot); });
  }
  return slots;
};
"""

_FIND_BODY = r"""
const result = { captchas: [], error: null };
try {
  const covered = new Set();
  for (const widget of widgetFrames()) {
    try {
      const anchor = widget.checkbox || widget.challenge;
      const container = widget.checkbox
        ? (widget.checkbox.closest('.h-captcha') || widget.checkbox.parentElement)
        : null;
      const slots = findResponseSlots(widget.widgetId, container);
      if (container) {
        covered.add(container);
        markElement(container, false);
      }
      result.captchas.push({
        widget_id: widget.widgetId,
        sitekey: widget.sitekey || (container && container.getAttribute('data-sitekey')),
        url: window.location.href,
        callback: container ? container.getAttribute('data-callback') : null,
        is_enterprise: false,
        is_invisible: widget.invisible || (!!container && container.getAttribute('data-size') === 'invisible'),
        is_in_viewport: isInViewport(container || anchor),
        has_response_slot: slots.length > 0,
        has_response: slots.some(slot => !!slot.value),
        has_active_challenge_overlay: !!widget.challenge && isVisible(widget.challenge),
        descriptor: buildDescriptor(container)
      });
    } catch (error) {
      debug('error reading hCaptcha widget', { widgetId: widget.widgetId, error: describeError(error) });
    }
  }

  document.querySelectorAll('.h-captcha[data-sitekey]').forEach(container => {
    try {
      if (covered.has(container) || container.querySelector('iframe[data-hcaptcha-widget-id]')) return;
      const slots = findResponseSlots(null, container);
      markElement(container, false);
      result.captchas.push({
        widget_id: null,
        sitekey: container.getAttribute('data-sitekey'),
        url: window.location.href,
        callback: container.getAttribute('data-callback'),
        is_enterprise: false,
        is_invisible: container.getAttribute('data-size') === 'invisible',
        is_in_viewport: isInViewport(container),
        has_response_slot: slots.length > 0,
        has_response: slots.some(slot => !!slot.value),
        has_active_challenge_overlay: false,
        descriptor: buildDescriptor(container)
      });
    } catch (error) {
      debug('error reading hCaptcha markup', { error: describeError(error) });
    }
  });
} catch (error) {
  result.error = describeError(error);
  debug('error finding hCaptchas', { error: result.error });
}
debug('findHcaptchas - result', { count: result.captchas.length, error: result.error });
return result;
"""

_ENTER_BODY = r"""
const result = { solved: [], error: null };
try {
  for (const solution of (arg.solutions || [])) {
    const solved = { id: solution.id, is_solved: false, error: null };
    try {
      if (!solution.text) throw new Error('MissingChallengeData: empty token');
      let container = resolveDescriptor(solution.selector);
      if (!container && solution.widget_id) {
        const frame = document.querySelector('iframe[data-hcaptcha-widget-id="' + solution.widget_id + '"]');
        if (frame) container = frame.closest('.h-captcha') || frame.parentElement;
      }
      let slots = findResponseSlots(solution.widget_id, container);
      if (!slots.length) {
        if (!container) {
          throw new Error('ElementNotFound: hCaptcha widget ' + (solution.selector || solution.widget_id));
        }
        const slot = document.createElement('textarea');
        slot.name = 'h-captcha-response';
        if (solution.widget_id) slot.id = 'h-captcha-response-' + solution.widget_id;
        slot.style.display = 'none';
        container.appendChild(slot);
        slots = [slot];
      }
      slots.forEach(slot => {
        slot.value = solution.text;
        slot.innerHTML = solution.text;
      });

      if (window.hcaptcha && typeof window.hcaptcha.getResponse === 'function') {
        const original = window.hcaptcha.getResponse;
        const token = solution.text;
        const widgetId = solution.widget_id;
        window.hcaptcha.getResponse = function (id) {
          if (id === undefined || id === null || !widgetId || String(id) === String(widgetId)) return token;
          return original.apply(this, arguments);
        };
      }

      if (solution.callback && typeof window[solution.callback] === 'function') {
        try {
          window[solution.callback](solution.text);
        } catch (error) {
          debug('hCaptcha callback failed', { id: solution.id, error: describeError(error) });
        }
      }
      markElement(container, true);
      solved.is_solved = true;
    } catch (error) {
      solved.error = describeError(error);
      debug('error entering hCaptcha solution', { id: solution.id, error: solved.error });
    }
    result.solved.push(solved);
  }
} catch (error) {
  result.error = describeError(error);
}
return result;
"""


class HcaptchaHandler(VendorHandler):
    """hCaptcha checkbox and invisible widgets"""

    name = 'hcaptcha'
    vendor_tags = (VendorTag.WIDGET_ALT,)

    find_script = page_function(_HELPERS + _FIND_BODY)
    enter_script = page_function(_HELPERS + _ENTER_BODY)

    def parse_challenge(self, item: Dict[str, Any], frame_url: str) -> ChallengeRecord:
        payload = WidgetPayload(
            site_key=item.get('sitekey') or '',
            page_url=item.get('url') or frame_url,
            is_enterprise=bool(item.get('is_enterprise')),
            is_invisible=bool(item.get('is_invisible')),
            has_response_slot=bool(item.get('has_response_slot')),
            has_active_challenge_overlay=bool(item.get('has_active_challenge_overlay')),
            has_response=bool(item.get('has_response')),
            widget_id=item.get('widget_id'),
            callback=item.get('callback'),
        )
        return ChallengeRecord(
            vendor_tag=VendorTag.WIDGET_ALT,
            id=new_challenge_id('hcaptcha'),
            frame_url=frame_url,
            is_in_viewport=bool(item.get('is_in_viewport', True)),
            payload=payload,
            descriptor=self.descriptor(item),
        )

    def injection_arg(self, solution: Solution) -> Dict[str, Any]:
        arg = super().injection_arg(solution)
        widget = solution.challenge.widget if solution.challenge else None
        arg['widget_id'] = widget.widget_id if widget else None
        arg['callback'] = widget.callback if widget else None
        return arg
