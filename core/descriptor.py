"""
Element Descriptor Codec

Detection and injection run as two separate page scripts, so a live element
handle never survives from one to the other. Elements that must be found again
are described by a short structural path rooted at a stable anchor:

    #captcha-form > div.row:nth-of-type(2) > img
    input[name="captcha_code"]
    body > form > img.captcha

The JavaScript half (DESCRIPTOR_JS) builds the description inside the page and
re-resolves selectors in a later execution. The Python half keeps the
description as a value and renders it back into a selector.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

MAX_DESCRIPTOR_DEPTH = 3

ANCHOR_ID = 'id'
ANCHOR_NAME = 'name'
ANCHOR_BODY = 'body'
ANCHOR_NONE = 'none'

_SIMPLE_IDENT = re.compile(r'^-?[_a-zA-Z][_a-zA-Z0-9-]*$')


def _quote(value: str) -> str:
    """Quote a CSS attribute value"""
    return '"' + value.replace('\\', '\\\\').replace('"', '\\"') + '"'


@dataclass(frozen=True)
class PathSegment:
    tag: str
    first_class: Optional[str] = None
    nth_of_type: Optional[int] = None

    @property
    def selector(self) -> str:
        out = self.tag
        if self.first_class and _SIMPLE_IDENT.match(self.first_class):
            out += f".{self.first_class}"
        if self.nth_of_type:
            out += f":nth-of-type({self.nth_of_type})"
        return out


@dataclass(frozen=True)
class ElementDescriptor:
    """Serializable, reconstructable location of a page element"""
    anchor_kind: str = ANCHOR_NONE
    anchor_tag: Optional[str] = None
    anchor_value: Optional[str] = None
    segments: Tuple[PathSegment, ...] = field(default_factory=tuple)

    @property
    def anchor_selector(self) -> str:
        if self.anchor_kind == ANCHOR_ID and self.anchor_value:
            if _SIMPLE_IDENT.match(self.anchor_value):
                return f"#{self.anchor_value}"
            return f"[id={_quote(self.anchor_value)}]"
        if self.anchor_kind == ANCHOR_NAME and self.anchor_value:
            return f"{self.anchor_tag or ''}[name={_quote(self.anchor_value)}]"
        if self.anchor_kind == ANCHOR_BODY:
            return 'body'
        return ''

    @property
    def selector(self) -> str:
        parts = [self.anchor_selector] if self.anchor_selector else []
        parts.extend(segment.selector for segment in self.segments)
        return ' > '.join(parts)

    @property
    def is_empty(self) -> bool:
        return not self.selector

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["ElementDescriptor"]:
        """Parse the dict produced by the in-page builder"""
        if not data:
            return None
        segments = tuple(
            PathSegment(
                tag=str(s.get('tag') or '*'),
                first_class=s.get('cls'),
                nth_of_type=int(s['nth']) if s.get('nth') else None,
            )
            for s in data.get('segments') or []
        )[:MAX_DESCRIPTOR_DEPTH]
        descriptor = cls(
            anchor_kind=data.get('anchor_kind') or ANCHOR_NONE,
            anchor_tag=data.get('anchor_tag'),
            anchor_value=data.get('anchor_value'),
            segments=segments,
        )
        return None if descriptor.is_empty else descriptor

    def to_dict(self) -> Dict[str, Any]:
        return {
            'anchor_kind': self.anchor_kind,
            'anchor_tag': self.anchor_tag,
            'anchor_value': self.anchor_value,
            'segments': [
                {'tag': s.tag, 'cls': s.first_class, 'nth': s.nth_of_type}
                for s in self.segments
            ],
            'selector': self.selector,
        }

    def __str__(self) -> str:
        return self.selector


def selector_of(descriptor: Optional[ElementDescriptor]) -> Optional[str]:
    return descriptor.selector if descriptor else None


# In-page half. Relies on `debug` from the shared page prelude.
DESCRIPTOR_JS = r"""
const MAX_DESCRIPTOR_DEPTH = %(depth)d;
const SIMPLE_IDENT = /^-?[_a-zA-Z][_a-zA-Z0-9-]*$/;
const NAMED_CONTROLS = ['input', 'select', 'textarea', 'button'];

const buildDescriptor = (element) => {
  if (!element || element.nodeType !== 1) return null;
  const tag = element.tagName.toLowerCase();
  if (element.id) {
    return { anchor_kind: 'id', anchor_tag: tag, anchor_value: element.id, segments: [] };
  }
  const name = element.getAttribute('name');
  if (name && NAMED_CONTROLS.includes(tag)) {
    return { anchor_kind: 'name', anchor_tag: tag, anchor_value: name, segments: [] };
  }
  const segments = [];
  let anchor = { anchor_kind: 'none', anchor_tag: null, anchor_value: null };
  let current = element;
  while (current && current.nodeType === 1) {
    if (current === document.body || current === document.documentElement) {
      anchor = { anchor_kind: 'body', anchor_tag: 'body', anchor_value: null };
      break;
    }
    if (current !== element && current.id) {
      anchor = { anchor_kind: 'id', anchor_tag: current.tagName.toLowerCase(), anchor_value: current.id };
      break;
    }
    if (segments.length >= MAX_DESCRIPTOR_DEPTH) break;
    const first = current.classList.length ? current.classList[0] : null;
    let nth = null;
    const parent = current.parentElement;
    if (parent) {
      const sameTag = Array.from(parent.children).filter(c => c.tagName === current.tagName);
      if (sameTag.length > 1) nth = sameTag.indexOf(current) + 1;
    }
    segments.unshift({
      tag: current.tagName.toLowerCase(),
      cls: first && SIMPLE_IDENT.test(first) ? first : null,
      nth
    });
    current = parent;
  }
  return Object.assign({}, anchor, { segments });
};

const resolveDescriptor = (selector) => {
  if (!selector) return null;
  try {
    return document.querySelector(selector);
  } catch (error) {
    debug('descriptor did not resolve', { selector, error: String(error) });
    return null;
  }
};
""" % {'depth': MAX_DESCRIPTOR_DEPTH}
