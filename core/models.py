"""
Data model shared by detectors, injectors, providers and the orchestrator

Every record is created fresh for one find/solve/enter cycle and is never
mutated afterwards: a ChallengeRecord is consumed to produce a Solution and a
Solution is consumed to produce a SolvedRecord.
"""

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Union

from core.descriptor import ElementDescriptor


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VendorTag(str, Enum):
    """Challenge vendor / flavour"""
    WIDGET_CHECKBOX = "widget-checkbox"  # reCAPTCHA checkbox or invisible
    WIDGET_SCORE = "widget-score"  # reCAPTCHA v3 / score based
    WIDGET_ALT = "widget-alt"  # hCaptcha
    IMAGE = "image"

    @property
    def is_widget(self) -> bool:
        return self is not VendorTag.IMAGE


class FilterReason(str, Enum):
    VIEWPORT_ONLY = "viewport-only"
    SCORE_BASED_DISABLED = "score-based-disabled"
    INACTIVE_CHALLENGE_DISABLED = "inactive-challenge-disabled"
    IMAGE_DISABLED = "image-disabled"


@dataclass(frozen=True)
class SolveOptions:
    """Flags controlling detection, filtering and injection"""
    visual_feedback: bool = True
    solve_in_viewport_only: bool = False
    solve_score_based: bool = False
    solve_inactive_challenges: bool = False
    solve_image_captchas: bool = False
    debug_sink_name: Optional[str] = None
    submit_delay_ms: int = 500
    max_input_distance: int = 300
    ancestor_search_depth: int = 5

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "SolveOptions":
        """Build options from a dict, ignoring unknown keys"""
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in values.items() if k in known})

    def to_script_opts(self) -> Dict[str, Any]:
        """Plain dict handed to in-page scripts"""
        return asdict(self)


@dataclass(frozen=True)
class WidgetPayload:
    """Data needed to solve a checkbox / score / alternate-vendor widget"""
    site_key: str
    page_url: str
    action: Optional[str] = None
    extra_site_param: Optional[str] = None
    is_enterprise: bool = False
    is_invisible: bool = False
    has_response_slot: bool = False
    has_active_challenge_overlay: bool = False
    has_response: bool = False
    widget_id: Optional[str] = None
    callback: Optional[str] = None


@dataclass(frozen=True)
class ImagePayload:
    """Data needed to solve a generic image captcha"""
    image_url: str
    image_snapshot: Optional[str] = None
    snapshot_error: Optional[str] = None


Payload = Union[WidgetPayload, ImagePayload]


@dataclass(frozen=True)
class ChallengeRecord:
    """One detected challenge on one frame"""
    vendor_tag: VendorTag
    id: str
    frame_url: str
    is_in_viewport: bool
    payload: Payload
    descriptor: Optional[ElementDescriptor] = None
    input_descriptor: Optional[ElementDescriptor] = None
    submit_descriptor: Optional[ElementDescriptor] = None
    # Frame the challenge was detected in; set by the orchestrator, never serialized
    frame: Any = field(default=None, repr=False, compare=False)

    @property
    def widget(self) -> Optional[WidgetPayload]:
        return self.payload if isinstance(self.payload, WidgetPayload) else None

    @property
    def image(self) -> Optional[ImagePayload]:
        return self.payload if isinstance(self.payload, ImagePayload) else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'vendor_tag': self.vendor_tag.value,
            'id': self.id,
            'frame_url': self.frame_url,
            'is_in_viewport': self.is_in_viewport,
            'payload': asdict(self.payload),
            'descriptor': self.descriptor.to_dict() if self.descriptor else None,
            'input_descriptor': self.input_descriptor.to_dict() if self.input_descriptor else None,
            'submit_descriptor': self.submit_descriptor.to_dict() if self.submit_descriptor else None,
        }


@dataclass(frozen=True)
class FilterDecision:
    challenge_id: str
    reason: FilterReason
    challenge: Optional[ChallengeRecord] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {'challenge_id': self.challenge_id, 'reason': self.reason.value}


@dataclass(frozen=True)
class Solution:
    """Provider answer for one challenge"""
    id: str
    vendor_tag: VendorTag
    provider_id: str
    requested_at: datetime
    text: Optional[str] = None
    provider_captcha_id: Optional[str] = None
    responded_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    error: Optional[str] = None
    challenge: Optional[ChallengeRecord] = field(default=None, repr=False, compare=False)

    @property
    def has_solution(self) -> bool:
        return bool(self.text) and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'vendor_tag': self.vendor_tag.value,
            'provider_id': self.provider_id,
            'text': self.text,
            'provider_captcha_id': self.provider_captcha_id,
            'requested_at': self.requested_at.isoformat(),
            'responded_at': self.responded_at.isoformat() if self.responded_at else None,
            'duration_seconds': self.duration_seconds,
            'error': self.error,
        }


@dataclass(frozen=True)
class SolvedRecord:
    """Outcome of writing a solution back into the page"""
    id: str
    vendor_tag: VendorTag
    is_solved: bool = False
    solved_at: Optional[datetime] = None
    error: Optional[str] = None

    @classmethod
    def failed(cls, solution: Solution, error: str) -> "SolvedRecord":
        return cls(id=solution.id, vendor_tag=solution.vendor_tag, is_solved=False, error=error)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'vendor_tag': self.vendor_tag.value,
            'is_solved': self.is_solved,
            'solved_at': self.solved_at.isoformat() if self.solved_at else None,
            'error': self.error,
        }


@dataclass
class FindResult:
    challenges: List[ChallengeRecord] = field(default_factory=list)
    filtered: List[FilterDecision] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'challenges': [c.to_dict() for c in self.challenges],
            'filtered': [f.to_dict() for f in self.filtered],
            'error': self.error,
        }


@dataclass
class SolveResult:
    solutions: List[Solution] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'solutions': [s.to_dict() for s in self.solutions], 'error': self.error}


@dataclass
class EnterResult:
    solved: List[SolvedRecord] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'solved': [s.to_dict() for s in self.solved], 'error': self.error}


@dataclass
class RunResult:
    challenges: List[ChallengeRecord] = field(default_factory=list)
    filtered: List[FilterDecision] = field(default_factory=list)
    solutions: List[Solution] = field(default_factory=list)
    solved: List[SolvedRecord] = field(default_factory=list)
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'challenges': [c.to_dict() for c in self.challenges],
            'filtered': [f.to_dict() for f in self.filtered],
            'solutions': [s.to_dict() for s in self.solutions],
            'solved': [s.to_dict() for s in self.solved],
            'error': self.error,
        }
