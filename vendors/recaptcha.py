"""
reCAPTCHA handler (checkbox, invisible and score based widgets)

Widgets are found three ways, in order:
1. Rendered clients registered in window.___grecaptcha_cfg
2. Implicit-render markup (.g-recaptcha[data-sitekey]) not yet rendered
3. Orphan anchor iframes whose container was not matched above
"""

import logging
from typing import Any, Dict

from core.models import ChallengeRecord, Solution, VendorTag, WidgetPayload
from vendors.base import VendorHandler, new_challenge_id, page_function

logger = logging.getLogger(__name__)

# v3 / score clients are registered from this widget id upwards
SCORE_WIDGET_ID_START = 100000

_CLIENT_HELPERS = r"""
const SCORE_WIDGET_ID_START = %(score_start)d;

const clientParams = (client) => {
  const info = { sitekey: null, callback: null, callbackFn: null, size: null, action: null, s: null, elements: [] };
  const seen = new Set();
  const visit = (obj, depth) => {
    if (!obj || typeof obj !== 'object' || depth > 5 || seen.has(obj)) return;
    if (obj === window || obj.window === obj) return;
    seen.add(obj);
    if (obj.nodeType === 1) {
      info.elements.push(obj);
      return;
    }
    if (typeof obj.sitekey === 'string' && !info.sitekey) {
      info.sitekey = obj.sitekey;
      if (typeof obj.callback === 'function') {
        info.callbackFn = obj.callback;
        info.callback = obj.callback.name || 'function';
      } else if (typeof obj.callback === 'string') {
        info.callback = obj.callback;
        info.callbackFn = typeof window[obj.callback] === 'function' ? window[obj.callback] : null;
      }
      info.size = obj.size || null;
      info.action = obj.action || null;
      info.s = obj.s || null;
    }
    for (const key of Object.keys(obj)) {
      try {
        visit(obj[key], depth + 1);
      } catch (error) {
        /* unreadable property */
      }
    }
  };
  visit(client, 0);
  return info;
};

const pickContainer = (elements) => {
  const divs = elements.filter(e => e.tagName !== 'IFRAME' && e.tagName !== 'TEXTAREA');
  return (
    divs.find(e => e.classList && e.classList.contains('g-recaptcha')) ||
    divs.find(e => e.querySelector && e.querySelector('textarea[id^="g-recaptcha-response"]')) ||
    divs[0] ||
    null
  );
};

const responseSlotId = (widgetId) =>
  String(widgetId) === '0' ? 'g-recaptcha-response' : 'g-recaptcha-response-' + widgetId;

const findResponseSlots = (widgetId, container) => {
  const slots = [];
  if (widgetId !== null && widgetId !== undefined) {
    const byId = document.getElementById(responseSlotId(widgetId));
    if (byId) slots.push(byId);
  }
  if (!slots.length && container) {
    container
      .querySelectorAll('textarea[id^="g-recaptcha-response"], textarea[name="g-recaptcha-response"]')
      .forEach(slot => slots.push(slot));
  }
  return slots;
};

const clients = () => {
  const cfg = window.___grecaptcha_cfg;
  if (!cfg || !cfg.clients) return [];
  return Object.keys(cfg.clients).map(key => {
    const client = cfg.clients[key];
    const widgetId = client && client.id !== undefined ? client.id : key;
    return { widgetId: String(widgetId), client };
  });
};
""" % {'score_start': SCORE_WIDGET_ID_START}

_FIND_BODY = r"""
const result = { captchas: [], error: null };
try {
  const isEnterprise =
    !!(window.grecaptcha && window.grecaptcha.enterprise) ||
    !!document.querySelector('iframe[src*="/recaptcha/enterprise/"], script[src*="/recaptcha/enterprise"]');
  const bframes = Array.from(document.querySelectorAll(
    'iframe[src*="/recaptcha/api2/bframe"], iframe[src*="/recaptcha/enterprise/bframe"]'
  ));
  const overlayFor = (container) => {
    const anchor = container ? container.querySelector('iframe[name^="a-"]') : null;
    if (anchor) {
      const popup = bframes.find(f => f.name === 'c-' + anchor.name.slice(2));
      if (popup) return isVisible(popup);
    }
    return bframes.length === 1 && isVisible(bframes[0]);
  };
  const covered = new Set();
  const push = (record, container) => {
    if (container) {
      covered.add(container);
      markElement(container, false);
    }
    result.captchas.push(record);
  };

  for (const { widgetId, client } of clients()) {
    try {
      const params = clientParams(client);
      const container = pickContainer(params.elements);
      const numericId = parseInt(widgetId, 10);
      const isScore = !isNaN(numericId) && numericId >= SCORE_WIDGET_ID_START;
      const isInvisible = isScore || params.size === 'invisible';
      const slots = findResponseSlots(widgetId, container);
      push({
        kind: isScore ? 'score' : (isInvisible ? 'invisible' : 'checkbox'),
        widget_id: widgetId,
        sitekey: params.sitekey,
        url: window.location.href,
        action: params.action,
        s: params.s,
        callback: params.callback,
        is_enterprise: isEnterprise,
        is_invisible: isInvisible,
        is_in_viewport: container ? isInViewport(container) : true,
        has_response_slot: slots.length > 0,
        has_response: slots.some(slot => !!slot.value),
        has_active_challenge_overlay: isScore ? false : overlayFor(container),
        descriptor: isScore ? null : buildDescriptor(container)
      }, isScore ? null : container);
    } catch (error) {
      debug('error reading reCAPTCHA client', { widgetId, error: describeError(error) });
    }
  }

  const isCovered = (element) => Array.from(covered).some(c => c === element || c.contains(element) || element.contains(c));

  document.querySelectorAll('.g-recaptcha[data-sitekey]').forEach(container => {
    try {
      if (isCovered(container)) return;
      const isInvisible = container.getAttribute('data-size') === 'invisible';
      const slots = findResponseSlots(null, container);
      push({
        kind: isInvisible ? 'invisible' : 'checkbox',
        widget_id: null,
        sitekey: container.getAttribute('data-sitekey'),
        url: window.location.href,
        action: container.getAttribute('data-action'),
        s: container.getAttribute('data-s'),
        callback: container.getAttribute('data-callback'),
        is_enterprise: isEnterprise,
        is_invisible: isInvisible,
        is_in_viewport: isInViewport(container),
        has_response_slot: slots.length > 0,
        has_response: slots.some(slot => !!slot.value),
        has_active_challenge_overlay: overlayFor(container),
        descriptor: buildDescriptor(container)
      }, container);
    } catch (error) {
      debug('error reading reCAPTCHA markup', { error: describeError(error) });
    }
  });

  document.querySelectorAll(
    'iframe[src*="/recaptcha/api2/anchor"], iframe[src*="/recaptcha/enterprise/anchor"]'
  ).forEach(iframe => {
    try {
      if (isCovered(iframe)) return;
      const params = new URL(iframe.src).searchParams;
      const container = iframe.parentElement;
      const isInvisible = params.get('size') === 'invisible';
      const slots = findResponseSlots(null, container);
      push({
        kind: isInvisible ? 'invisible' : 'checkbox',
        widget_id: null,
        sitekey: params.get('k'),
        url: window.location.href,
        action: params.get('sa'),
        s: null,
        callback: null,
        is_enterprise: isEnterprise || iframe.src.includes('/enterprise/'),
        is_invisible: isInvisible,
        is_in_viewport: isInViewport(iframe),
        has_response_slot: slots.length > 0,
        has_response: slots.some(slot => !!slot.value),
        has_active_challenge_overlay: overlayFor(container),
        descriptor: buildDescriptor(container)
      }, container);
    } catch (error) {
      debug('error reading reCAPTCHA anchor frame', { error: describeError(error) });
    }
  });
} catch (error) {
  result.error = describeError(error);
  debug('error finding reCAPTCHAs', { error: result.error });
}
debug('findRecaptchas - result', { count: result.captchas.length, error: result.error });
return result;
"""

_ENTER_BODY = r"""
const result = { solved: [], error: null };
try {
  const clientsById = {};
  clients().forEach(({ widgetId, client }) => { clientsById[widgetId] = client; });

  for (const solution of (arg.solutions || [])) {
    const solved = { id: solution.id, is_solved: false, error: null };
    try {
      if (!solution.text) throw new Error('MissingChallengeData: empty token');
      const hasWidgetId = solution.widget_id !== null && solution.widget_id !== undefined;
      const client = hasWidgetId ? clientsById[String(solution.widget_id)] : null;
      const params = client ? clientParams(client) : null;
      let container = resolveDescriptor(solution.selector);
      if (!container && params) container = pickContainer(params.elements);

      let slots = findResponseSlots(hasWidgetId ? solution.widget_id : null, container);
      if (!slots.length && !container && !hasWidgetId) {
        const lone = document.querySelectorAll('textarea[name="g-recaptcha-response"]');
        if (lone.length === 1) slots = [lone[0]];
      }
      if (!slots.length) {
        if (!container) {
          throw new Error('ElementNotFound: reCAPTCHA widget ' + (solution.selector || solution.widget_id));
        }
        const slot = document.createElement('textarea');
        slot.name = 'g-recaptcha-response';
        slot.id = hasWidgetId ? responseSlotId(solution.widget_id) : 'g-recaptcha-response';
        slot.style.display = 'none';
        container.appendChild(slot);
        slots = [slot];
      }
      slots.forEach(slot => {
        slot.value = solution.text;
        slot.innerHTML = solution.text;
      });

      let callback = params ? params.callbackFn : null;
      if (!callback && solution.callback && typeof window[solution.callback] === 'function') {
        callback = window[solution.callback];
      }
      if (callback) {
        try {
          callback(solution.text);
        } catch (error) {
          debug('reCAPTCHA callback failed', { id: solution.id, error: describeError(error) });
        }
      }
      markElement(container, true);
      solved.is_solved = true;
    } catch (error) {
      solved.error = describeError(error);
      debug('error entering reCAPTCHA solution', { id: solution.id, error: solved.error });
    }
    result.solved.push(solved);
  }
} catch (error) {
  result.error = describeError(error);
}
return result;
"""


class RecaptchaHandler(VendorHandler):
    """reCAPTCHA v2 checkbox / invisible and v3 score widgets"""

    name = 'recaptcha'
    vendor_tags = (VendorTag.WIDGET_CHECKBOX, VendorTag.WIDGET_SCORE)

    find_script = page_function(_CLIENT_HELPERS + _FIND_BODY)
    enter_script = page_function(_CLIENT_HELPERS + _ENTER_BODY)

    def parse_challenge(self, item: Dict[str, Any], frame_url: str) -> ChallengeRecord:
        is_score = item.get('kind') == 'score'
        widget_id = item.get('widget_id')
        payload = WidgetPayload(
            site_key=item.get('sitekey') or '',
            page_url=item.get('url') or frame_url,
            action=item.get('action'),
            extra_site_param=item.get('s'),
            is_enterprise=bool(item.get('is_enterprise')),
            is_invisible=bool(item.get('is_invisible')),
            has_response_slot=bool(item.get('has_response_slot')),
            has_active_challenge_overlay=bool(item.get('has_active_challenge_overlay')),
            has_response=bool(item.get('has_response')),
            widget_id=str(widget_id) if widget_id is not None else None,
            callback=item.get('callback'),
        )
        return ChallengeRecord(
            vendor_tag=VendorTag.WIDGET_SCORE if is_score else VendorTag.WIDGET_CHECKBOX,
            id=new_challenge_id('recaptcha'),
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
