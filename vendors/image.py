"""
Generic image captcha handler

Any <img> whose src, alt, id or class mentions "captcha" is treated as a text
challenge. The related input field and submit control are found again at
injection time; the descriptors recorded during detection are only a fallback.
"""

import logging
from typing import Any, Dict

from core.descriptor import selector_of
from core.models import ChallengeRecord, ImagePayload, Solution, VendorTag
from vendors.base import VendorHandler, new_challenge_id, page_function

logger = logging.getLogger(__name__)

_HELPERS = r"""
const CAPTCHA_MARKER = /captcha/i;
const TEXT_INPUTS = 'input[type="text"], input:not([type]), input[type="search"], input[type="tel"]';

const classNameOf = (element) =>
  typeof element.className === 'string' ? element.className : (element.getAttribute('class') || '');

const isCaptchaImage = (img) =>
  CAPTCHA_MARKER.test(img.getAttribute('src') || '') ||
  CAPTCHA_MARKER.test(img.getAttribute('alt') || '') ||
  CAPTCHA_MARKER.test(img.id || '') ||
  CAPTCHA_MARKER.test(classNameOf(img));

const isCaptchaInput = (input) =>
  input.type !== 'hidden' && (
    CAPTCHA_MARKER.test(input.name || '') ||
    CAPTCHA_MARKER.test(input.id || '') ||
    CAPTCHA_MARKER.test(classNameOf(input)) ||
    CAPTCHA_MARKER.test(input.getAttribute('placeholder') || '')
  );

const textInputs = (root) =>
  root ? Array.from(root.querySelectorAll(TEXT_INPUTS)).filter(i => !i.disabled && isVisible(i)) : [];

const isSameOrigin = (url) => {
  try {
    return new URL(url, window.location.href).origin === window.location.origin;
  } catch (error) {
    return false;
  }
};

const centre = (element) => {
  const rect = element.getBoundingClientRect();
  return { x: rect.left + rect.width / 2, y: rect.top + rect.height / 2 };
};

const findRelatedInput = (img) => {
  const form = img.closest('form');
  if (form) {
    const flagged = Array.from(form.querySelectorAll('input')).find(isCaptchaInput);
    if (flagged) return flagged;
    const visible = textInputs(form)[0];
    if (visible) return visible;
  }

  let ancestor = img.parentElement;
  for (let depth = 0; ancestor && depth < opts.ancestor_search_depth; depth++) {
    const found = textInputs(ancestor)[0];
    if (found) return found;
    if (ancestor.tagName === 'TR') {
      for (const row of [ancestor.nextElementSibling, ancestor.previousElementSibling]) {
        const inRow = textInputs(row)[0];
        if (inRow) return inRow;
      }
    }
    if (ancestor === document.body) break;
    ancestor = ancestor.parentElement;
  }

  const parent = img.parentElement;
  const siblings = [img.nextElementSibling, img.previousElementSibling];
  if (parent) siblings.push(parent.nextElementSibling, parent.previousElementSibling);
  for (const sibling of siblings) {
    if (!sibling) continue;
    if (sibling.matches && sibling.matches(TEXT_INPUTS) && isVisible(sibling)) return sibling;
    const found = textInputs(sibling)[0];
    if (found) return found;
  }

  const origin = centre(img);
  let nearest = null;
  let nearestDistance = Infinity;
  textInputs(document).forEach(input => {
    const point = centre(input);
    const distance = Math.hypot(point.x - origin.x, point.y - origin.y);
    if (distance < nearestDistance) {
      nearest = input;
      nearestDistance = distance;
    }
  });
  return nearestDistance <= opts.max_input_distance ? nearest : null;
};

const findSubmit = (img, input) => {
  const form = img.closest('form') || (input ? input.closest('form') : null);
  if (form) {
    const submit = form.querySelector('input[type="submit"], button[type="submit"]');
    if (submit) return submit;
    const button = form.querySelector('button, input[type="button"]');
    if (button) return button;
  }
  let container = (input || img).parentElement;
  for (let depth = 0; container && depth < opts.ancestor_search_depth; depth++) {
    const button = container.querySelector('button, input[type="submit"]');
    if (button) return button;
    container = container.parentElement;
  }
  return null;
};

const snapshot = (img, url) => {
  if (url.startsWith('data:image/')) return { data: url, error: null };
  if (!isSameOrigin(url)) return { data: null, error: 'cross-origin image' };
  if (!img.complete || !img.naturalWidth) return { data: null, error: 'image not loaded' };
  try {
    const canvas = document.createElement('canvas');
    canvas.width = img.naturalWidth;
    canvas.height = img.naturalHeight;
    canvas.getContext('2d').drawImage(img, 0, 0);
    return { data: canvas.toDataURL('image/png'), error: null };
  } catch (error) {
    return { data: null, error: 'tainted canvas: ' + describeError(error) };
  }
};
"""

_FIND_BODY = r"""
const result = { captchas: [], error: null };
try {
  const marked = [];
  document.querySelectorAll('img[src]').forEach(img => {
    try {
      if (isCaptchaImage(img)) marked.push(img);
    } catch (error) {
      debug('error inspecting image', { error: describeError(error) });
    }
  });
  const inForms = marked.filter(img => !!img.closest('form'));
  const images = inForms.length ? inForms : marked;

  const seen = new Set();
  for (const img of images) {
    try {
      const url = absoluteUrl(img.getAttribute('src'));
      if (seen.has(url)) {
        debug('duplicate captcha image skipped', { url });
        continue;
      }
      seen.add(url);
      const input = findRelatedInput(img);
      const submit = findSubmit(img, input);
      const shot = snapshot(img, url);
      markElement(img, false);
      result.captchas.push({
        image_url: url,
        image_snapshot: shot.data,
        snapshot_error: shot.error,
        is_in_viewport: isInViewport(img),
        descriptor: buildDescriptor(img),
        input_descriptor: buildDescriptor(input),
        submit_descriptor: buildDescriptor(submit)
      });
    } catch (error) {
      debug('error processing captcha image', { error: describeError(error) });
    }
  }
} catch (error) {
  result.error = describeError(error);
  debug('error finding image captchas', { error: result.error });
}
debug('findImageCaptchas - result', { count: result.captchas.length, error: result.error });
return result;
"""

_ENTER_BODY = r"""
const stripQuery = (url) => String(url || '').split('#')[0].split('?')[0];
const fileName = (url) => stripQuery(url).split('/').pop();

const locateImage = (solution) => {
  const target = solution.image_url;
  if (target) {
    const images = Array.from(document.querySelectorAll('img[src]')).map(img => ({
      img, raw: img.getAttribute('src'), abs: absoluteUrl(img.getAttribute('src'))
    }));
    let match = images.find(c => c.abs === target || c.raw === target);
    if (match) return match.img;

    const name = fileName(target);
    const bare = stripQuery(target);
    if (name) {
      match = images.find(c => fileName(c.abs) === name && (
        bare.endsWith(stripQuery(c.raw)) || stripQuery(c.abs).endsWith(bare)
      ));
      if (!match) match = images.find(c => fileName(c.abs) === name);
      if (match) return match.img;
    }

    if (bare) {
      match = images.find(c => {
        const own = stripQuery(c.abs);
        return own && (own.includes(bare) || bare.includes(own));
      });
      if (match) return match.img;
    }
  }
  return resolveDescriptor(solution.selector);
};

const result = { solved: [], error: null };
try {
  for (const solution of (arg.solutions || [])) {
    const solved = { id: solution.id, is_solved: false, error: null };
    try {
      if (!solution.text) throw new Error('MissingChallengeData: empty answer');
      const img = locateImage(solution);
      if (!img) throw new Error('ElementNotFound: captcha image ' + (solution.image_url || solution.selector));

      const input = findRelatedInput(img) || resolveDescriptor(solution.input_selector);
      if (!input) throw new Error('ElementNotFound: captcha input field');
      input.focus && input.focus();
      input.value = solution.text;
      input.dispatchEvent(new Event('input', { bubbles: true }));
      input.dispatchEvent(new Event('change', { bubbles: true }));

      const submit = findSubmit(img, input) || resolveDescriptor(solution.submit_selector);
      if (submit) {
        setTimeout(() => {
          try {
            submit.click();
          } catch (error) {
            debug('submit click failed', { id: solution.id, error: describeError(error) });
          }
        }, opts.submit_delay_ms);
      } else {
        debug('no submit control found', { id: solution.id });
      }

      markElement(img, true);
      solved.is_solved = true;
    } catch (error) {
      solved.error = describeError(error);
      debug('error entering image solution', { id: solution.id, error: solved.error });
    }
    result.solved.push(solved);
  }
} catch (error) {
  result.error = describeError(error);
}
return result;
"""


class ImageHandler(VendorHandler):
    """Text-entry image captchas"""

    name = 'image'
    vendor_tags = (VendorTag.IMAGE,)

    find_script = page_function(_HELPERS + _FIND_BODY)
    enter_script = page_function(_HELPERS + _ENTER_BODY)

    def parse_challenge(self, item: Dict[str, Any], frame_url: str) -> ChallengeRecord:
        payload = ImagePayload(
            image_url=item['image_url'],
            image_snapshot=item.get('image_snapshot'),
            snapshot_error=item.get('snapshot_error'),
        )
        return ChallengeRecord(
            vendor_tag=VendorTag.IMAGE,
            id=new_challenge_id('image'),
            frame_url=frame_url,
            is_in_viewport=bool(item.get('is_in_viewport', True)),
            payload=payload,
            descriptor=self.descriptor(item),
            input_descriptor=self.descriptor(item, 'input_descriptor'),
            submit_descriptor=self.descriptor(item, 'submit_descriptor'),
        )

    def injection_arg(self, solution: Solution) -> Dict[str, Any]:
        arg = super().injection_arg(solution)
        challenge = solution.challenge
        image = challenge.image if challenge else None
        arg['image_url'] = image.image_url if image else None
        arg['input_selector'] = selector_of(challenge.input_descriptor) if challenge else None
        arg['submit_selector'] = selector_of(challenge.submit_descriptor) if challenge else None
        return arg
