"""
Vendor handler interface and the shared in-page script prelude

A handler knows how to detect one family of challenges inside a frame and how
to enter solutions for that family. Both halves are executed as independent
page scripts through Frame.evaluate; only plain JSON values cross the boundary.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, List, NamedTuple, Optional, Tuple

from playwright.async_api import Error as PlaywrightError, Frame

from core.descriptor import DESCRIPTOR_JS, ElementDescriptor, selector_of
from core.errors import format_error
from core.models import (
    ChallengeRecord,
    SolveOptions,
    Solution,
    SolvedRecord,
    VendorTag,
    utcnow,
)

logger = logging.getLogger(__name__)

# Helpers available to every page script. `arg` is the evaluate() argument.
PAGE_PRELUDE = r"""
const opts = (arg && arg.opts) || {};

const debug = (message, data) => {
  try {
    if (opts.debug_sink_name && window[opts.debug_sink_name]) {
      window[opts.debug_sink_name](message, data === undefined ? null : JSON.parse(JSON.stringify(data)));
    }
  } catch (error) {
    /* debug sink unavailable */
  }
};

const isInViewport = (element) => {
  try {
    const rect = element.getBoundingClientRect();
    return (
      rect.top >= 0 &&
      rect.left >= 0 &&
      rect.bottom <= (window.innerHeight || document.documentElement.clientHeight) &&
      rect.right <= (window.innerWidth || document.documentElement.clientWidth)
    );
  } catch (error) {
    return false;
  }
};

const isVisible = (element) => {
  if (!element || element.nodeType !== 1) return false;
  const style = window.getComputedStyle(element);
  if (style.display === 'none' || style.visibility === 'hidden' || style.opacity === '0') return false;
  const rect = element.getBoundingClientRect();
  return rect.width > 0 && rect.height > 0;
};

const markElement = (element, solved) => {
  try {
    if (!opts.visual_feedback || !element || !element.style) return;
    element.style.border = solved ? '3px solid #0d84e3' : '3px solid #ff0000';
  } catch (error) {
    debug('visual feedback failed', { error: String(error) });
  }
};

const describeError = (error) => (error && error.message ? error.message : String(error));

const absoluteUrl = (url) => {
  try {
    return new URL(url, window.location.href).href;
  } catch (error) {
    return url;
  }
};
""" + DESCRIPTOR_JS


def page_function(body: str) -> str:
    """Wrap a script body into a function expression for Frame.evaluate"""
    return "(arg) => {\n" + PAGE_PRELUDE + "\n" + body + "\n}"


def new_challenge_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


class Detection(NamedTuple):
    challenges: List[ChallengeRecord]
    error: Optional[str] = None


class VendorHandler(ABC):
    """Detects and enters solutions for one challenge vendor"""

    name: str = 'vendor'
    vendor_tags: Tuple[VendorTag, ...] = ()

    @property
    @abstractmethod
    def find_script(self) -> str:
        """Page function returning {captchas: [...], error}"""

    @property
    @abstractmethod
    def enter_script(self) -> str:
        """Page function taking {solutions: [...]} and returning {solved: [...], error}"""

    @abstractmethod
    def parse_challenge(self, item: Dict[str, Any], frame_url: str) -> ChallengeRecord:
        """Turn one raw in-page record into a ChallengeRecord"""

    def handles(self, vendor_tag: VendorTag) -> bool:
        return vendor_tag in self.vendor_tags

    def injection_arg(self, solution: Solution) -> Dict[str, Any]:
        """Serializable data the enter script needs for one solution"""
        challenge = solution.challenge
        return {
            'id': solution.id,
            'text': solution.text,
            'selector': selector_of(challenge.descriptor) if challenge else None,
        }

    async def detect(self, frame: Frame, options: SolveOptions) -> Detection:
        raw = await frame.evaluate(self.find_script, {'opts': options.to_script_opts()})
        raw = raw or {}
        challenges = []
        for item in raw.get('captchas') or []:
            try:
                challenges.append(self.parse_challenge(item, frame.url))
            except (KeyError, TypeError, ValueError) as e:
                logger.debug(f"[{self.name}] Skipping malformed record: {e}")
        if raw.get('error'):
            logger.warning(f"[{self.name}] Detection error in {frame.url}: {raw['error']}")
        return Detection(challenges, raw.get('error'))

    async def inject(self, frame: Frame, solutions: List[Solution],
                     options: SolveOptions) -> List[SolvedRecord]:
        if not solutions:
            return []
        arg = {
            'opts': options.to_script_opts(),
            'solutions': [self.injection_arg(s) for s in solutions],
        }
        try:
            raw = await frame.evaluate(self.enter_script, arg) or {}
        except PlaywrightError as e:
            logger.error(f"[{self.name}] Enter script failed in {frame.url}: {e}")
            return [SolvedRecord.failed(s, format_error(e)) for s in solutions]

        by_id = {r.get('id'): r for r in raw.get('solved') or []}
        records = []
        for solution in solutions:
            result = by_id.get(solution.id)
            if result is None:
                records.append(SolvedRecord.failed(
                    solution, raw.get('error') or 'ElementNotFound: no result returned by page'))
                continue
            is_solved = bool(result.get('is_solved'))
            records.append(SolvedRecord(
                id=solution.id,
                vendor_tag=solution.vendor_tag,
                is_solved=is_solved,
                solved_at=utcnow() if is_solved else None,
                error=result.get('error'),
            ))
        return records

    @staticmethod
    def descriptor(item: Dict[str, Any], key: str = 'descriptor') -> Optional[ElementDescriptor]:
        return ElementDescriptor.from_dict(item.get(key))
