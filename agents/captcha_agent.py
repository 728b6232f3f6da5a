"""
Captcha Agent: finds, solves and enters captchas across all frames of a page
"""

import asyncio
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

from playwright.async_api import Error as PlaywrightError, Frame, Page

from core.errors import format_error
from core.models import (
    ChallengeRecord,
    EnterResult,
    FilterDecision,
    FilterReason,
    FindResult,
    RunResult,
    SolveOptions,
    SolveResult,
    Solution,
    SolvedRecord,
    VendorTag,
    utcnow,
)
from providers.base import BaseProvider
from vendors.base import VendorHandler
from vendors.hcaptcha import HcaptchaHandler
from vendors.image import ImageHandler
from vendors.recaptcha import RecaptchaHandler

logger = logging.getLogger(__name__)

Target = Union[Page, Frame]

# Frames served by the vendors themselves hold no challenge data of their own
VENDOR_FRAME_MARKERS = (
    'google.com/recaptcha',
    'gstatic.com/recaptcha',
    'recaptcha.net',
    'hcaptcha.com',
)

CANCELLED = 'cancelled'


def default_handlers() -> List[VendorHandler]:
    return [RecaptchaHandler(), HcaptchaHandler(), ImageHandler()]


def is_vendor_frame(url: str) -> bool:
    url = (url or '').lower()
    return any(marker in url for marker in VENDOR_FRAME_MARKERS)


def first_error(*errors: Optional[str]) -> Optional[str]:
    return next((e for e in errors if e), None)


class CaptchaAgent:
    """Agent running detection, solving and injection for one page"""

    def __init__(self, provider: BaseProvider, handlers: Optional[Sequence[VendorHandler]] = None,
                 options: Optional[SolveOptions] = None):
        self.provider = provider
        self.handlers = list(handlers) if handlers is not None else default_handlers()
        self.options = options or SolveOptions()

    # Frames

    @staticmethod
    def _frames(target: Target) -> List[Frame]:
        if isinstance(target, Frame):
            return [target]
        return list(target.frames)

    @staticmethod
    def _main_frame(target: Target) -> Frame:
        return target if isinstance(target, Frame) else target.main_frame

    def _scannable(self, frame: Frame) -> bool:
        if frame.is_detached():
            logger.debug(f"[FIND] Skipping detached frame {frame.url}")
            return False
        if is_vendor_frame(frame.url):
            return False
        return True

    def _handler_for(self, vendor_tag: VendorTag) -> Optional[VendorHandler]:
        return next((h for h in self.handlers if h.handles(vendor_tag)), None)

    # Find

    async def find(self, target: Target) -> FindResult:
        """Detect challenges in every frame and apply the filtering policy"""
        result = FindResult()
        detected: List[ChallengeRecord] = []
        try:
            for frame in self._frames(target):
                if not self._scannable(frame):
                    continue
                for handler in self.handlers:
                    try:
                        detection = await handler.detect(frame, self.options)
                    except PlaywrightError as e:
                        logger.warning(f"[FIND] {handler.name} detection failed in {frame.url}: {e}")
                        continue
                    except Exception as e:
                        logger.error(f"[FIND] {handler.name} detection crashed in {frame.url}: {e}")
                        result.error = first_error(result.error, f"PassLevelError: {format_error(e)}")
                        continue
                    detected.extend(replace(c, frame=frame) for c in detection.challenges)
                    if detection.error:
                        result.error = first_error(result.error, f"PassLevelError: {detection.error}")
        except Exception as e:
            logger.error(f"[FIND] Detection pass failed: {e}")
            result.error = first_error(result.error, f"PassLevelError: {format_error(e)}")

        kept, filtered = self.filter(self._dedupe(detected))
        result.challenges = kept
        result.filtered = filtered
        logger.info(f"[FIND] {len(kept)} challenge(s) to solve, {len(filtered)} filtered")
        return result

    @staticmethod
    def _dedupe(challenges: List[ChallengeRecord]) -> List[ChallengeRecord]:
        seen = set()
        unique = []
        for challenge in challenges:
            image = challenge.image
            if image is not None:
                if image.image_url in seen:
                    logger.debug(f"[FIND] Duplicate captcha image dropped: {image.image_url}")
                    continue
                seen.add(image.image_url)
            unique.append(challenge)
        return unique

    def filter(self, challenges: List[ChallengeRecord]) -> Tuple[List[ChallengeRecord], List[FilterDecision]]:
        kept, filtered = [], []
        for challenge in challenges:
            reason = self.filter_reason(challenge)
            if reason is None:
                kept.append(challenge)
            else:
                logger.debug(f"[FIND] Filtered {challenge.id}: {reason.value}")
                filtered.append(FilterDecision(challenge.id, reason, challenge))
        return kept, filtered

    def filter_reason(self, challenge: ChallengeRecord) -> Optional[FilterReason]:
        """First filter that drops the challenge, or None to keep it"""
        options = self.options
        if options.solve_in_viewport_only and not challenge.is_in_viewport:
            return FilterReason.VIEWPORT_ONLY
        if challenge.vendor_tag is VendorTag.WIDGET_SCORE and not options.solve_score_based:
            return FilterReason.SCORE_BASED_DISABLED
        widget = challenge.widget
        if widget is not None and not options.solve_inactive_challenges:
            if widget.has_response:
                return FilterReason.INACTIVE_CHALLENGE_DISABLED
            if (challenge.vendor_tag is not VendorTag.WIDGET_SCORE
                    and widget.is_invisible and not widget.has_active_challenge_overlay):
                return FilterReason.INACTIVE_CHALLENGE_DISABLED
        if challenge.vendor_tag is VendorTag.IMAGE and not options.solve_image_captchas:
            return FilterReason.IMAGE_DISABLED
        return None

    # Solve

    async def solve(self, challenges: Sequence[ChallengeRecord],
                    cancel: Optional[asyncio.Event] = None) -> SolveResult:
        """Ask the provider for all challenges at once; one Solution per challenge, in order"""
        if not challenges:
            return SolveResult()

        tasks = [asyncio.ensure_future(self.provider.solve_challenge(c)) for c in challenges]
        joined = asyncio.gather(*tasks, return_exceptions=True)
        if cancel is None:
            await joined
        else:
            stop = asyncio.ensure_future(cancel.wait())
            try:
                await asyncio.wait({joined, stop}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                stop.cancel()
            if not joined.done():
                logger.warning("[SOLVE] Cancelled, abandoning unfinished solutions")
                for task in tasks:
                    task.cancel()
            await joined

        solutions = []
        for challenge, task in zip(challenges, tasks):
            if task.cancelled():
                solutions.append(self._failed_solution(challenge, CANCELLED))
            elif task.exception() is not None:
                solutions.append(self._failed_solution(challenge, format_error(task.exception())))
            else:
                solutions.append(task.result())

        solved = sum(1 for s in solutions if s.has_solution)
        logger.info(f"[SOLVE] {solved}/{len(solutions)} solution(s) received")
        return SolveResult(solutions=solutions, error=first_error(*(s.error for s in solutions)))

    def _failed_solution(self, challenge: ChallengeRecord, error: str) -> Solution:
        return Solution(
            id=challenge.id,
            vendor_tag=challenge.vendor_tag,
            provider_id=self.provider.provider_id,
            requested_at=utcnow(),
            error=error,
            challenge=challenge,
        )

    # Enter

    async def enter(self, target: Target, solutions: Sequence[Solution]) -> EnterResult:
        """Write solutions back into the frames they were detected in"""
        records: Dict[str, SolvedRecord] = {}
        groups: Dict[Tuple[Frame, VendorHandler], List[Solution]] = {}
        error = None

        try:
            frames = self._frames(target)
            main_frame = self._main_frame(target)
            for solution in solutions:
                if not solution.has_solution:
                    records[solution.id] = SolvedRecord.failed(solution, solution.error or 'no solution')
                    continue
                handler = self._handler_for(solution.vendor_tag)
                if handler is None:
                    records[solution.id] = SolvedRecord.failed(
                        solution, f"no handler for {solution.vendor_tag.value}")
                    continue
                frame = self._frame_for(solution, frames, main_frame)
                groups.setdefault((frame, handler), []).append(solution)

            keys = list(groups)
            outcomes = await asyncio.gather(
                *(handler.inject(frame, groups[(frame, handler)], self.options) for frame, handler in keys),
                return_exceptions=True,
            )
            for key, outcome in zip(keys, outcomes):
                if isinstance(outcome, BaseException):
                    logger.error(f"[ENTER] {key[1].name} failed in {key[0].url}: {outcome}")
                    for solution in groups[key]:
                        records[solution.id] = SolvedRecord.failed(solution, format_error(outcome))
                    continue
                for record in outcome:
                    records[record.id] = record
        except Exception as e:
            logger.error(f"[ENTER] Injection pass failed: {e}")
            error = f"PassLevelError: {format_error(e)}"

        solved = []
        for solution in solutions:
            record = records.get(solution.id)
            if record is None:
                record = SolvedRecord.failed(solution, error or 'not entered')
            solved.append(record)

        count = sum(1 for r in solved if r.is_solved)
        logger.info(f"[ENTER] {count}/{len(solved)} solution(s) entered")
        return EnterResult(solved=solved, error=first_error(error, *(r.error for r in solved)))

    def _frame_for(self, solution: Solution, frames: List[Frame], main_frame: Frame) -> Frame:
        challenge = solution.challenge
        origin = challenge.frame if challenge else None
        if origin is not None:
            if not origin.is_detached():
                return origin
            logger.warning(f"[ENTER] Frame of {solution.id} is gone, using the main frame")
            return main_frame

        # Records built outside find() carry no frame; match on URL
        frame_url = challenge.frame_url if challenge else None
        for frame in frames:
            if frame.url == frame_url and not frame.is_detached():
                return frame
        return main_frame

    # Run

    async def run(self, target: Target, cancel: Optional[asyncio.Event] = None) -> RunResult:
        """find -> solve -> enter"""
        result = RunResult()
        try:
            found = await self.find(target)
            result.challenges = found.challenges
            result.filtered = found.filtered
            result.error = found.error
            if not found.challenges:
                return result

            solved = await self.solve(found.challenges, cancel)
            result.solutions = solved.solutions
            result.error = first_error(result.error, solved.error)

            if cancel is not None and cancel.is_set():
                result.solved = [SolvedRecord.failed(s, CANCELLED) for s in solved.solutions]
                result.error = first_error(result.error, CANCELLED)
                return result

            entered = await self.enter(target, solved.solutions)
            result.solved = entered.solved
            result.error = first_error(result.error, entered.error)
        except Exception as e:
            logger.error(f"[X] Captcha run failed: {e}")
            result.error = first_error(result.error, f"PassLevelError: {format_error(e)}")
        return result
