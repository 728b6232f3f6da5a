"""
Browser Controller with captcha solving
- Chromium lifecycle (launch, context, page, cleanup)
- Navigation with retry/backoff
- In-page debug messages forwarded to logging
- Solving cancelled when the page navigates away or closes
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Sequence

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Frame,
    Page,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from agents.captcha_agent import CaptchaAgent
from core.errors import CaptchaSolveError
from core.models import (
    ChallengeRecord,
    EnterResult,
    FindResult,
    RunResult,
    SolveOptions,
    SolveResult,
    Solution,
)
from providers.base import BaseProvider

logger = logging.getLogger(__name__)
page_logger = logging.getLogger('vendors.page')

DEFAULT_DEBUG_SINK = 'captchaDebug'


class BrowserController:
    """Browser management and captcha solving for a single page"""

    def __init__(self, provider: BaseProvider, headless: bool = True,
                 options: Optional[SolveOptions] = None, proxy_server: Optional[str] = None,
                 viewport: Optional[Dict[str, int]] = None, navigation_timeout: int = 30000):
        """
        Initialize browser controller

        Args:
            provider: Solving backend used by solve_captchas
            headless: Run in headless mode
            options: Default solve options
            proxy_server: Browser proxy server URL (e.g., http://proxy:8080)
            viewport: Page viewport size
            navigation_timeout: Initial navigation timeout in ms
        """
        self.provider = provider
        self.headless = headless
        self.options = options or SolveOptions(debug_sink_name=DEFAULT_DEBUG_SINK)
        self.proxy_server = proxy_server
        self.viewport = viewport or {'width': 1280, 'height': 720}
        self.navigation_timeout = navigation_timeout

        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._playwright = None

        self._debug_sinks = set()
        self._cancel: Optional[asyncio.Event] = None

    async def __aenter__(self):
        if not await self.initialize():
            raise RuntimeError("Browser initialization failed")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cleanup()

    async def initialize(self) -> bool:
        """Launch Chromium and open a page"""
        try:
            logger.info("Initializing browser controller...")
            self._playwright = await async_playwright().start()
            self.browser = await self._playwright.chromium.launch(headless=self.headless)

            context_args: Dict[str, Any] = {'viewport': self.viewport}
            if self.proxy_server:
                context_args['proxy'] = {'server': self.proxy_server}
            self.context = await self.browser.new_context(**context_args)
            self.page = await self.context.new_page()
            self.attach(self.page)

            if self.options.debug_sink_name:
                await self._bind_debug_sink(self.options.debug_sink_name)

            logger.info("Browser initialized successfully")
            return True

        except PlaywrightError as e:
            logger.error(f"[X] Browser initialization failed: {e}")
            await self.cleanup()
            return False

    def attach(self, page: Page):
        """Use an existing page (e.g. one created by the caller)"""
        self.page = page
        page.on('framenavigated', self._on_frame_navigated)
        page.on('close', self._on_page_close)

    async def navigate(self, url: str, wait_until: str = 'load', timeout: Optional[int] = None,
                       max_retries: int = 3) -> bool:
        """Navigate with retry/backoff.

        Args:
            url: URL to navigate to
            wait_until: Playwright wait strategy
            timeout: initial timeout in ms
            max_retries: number of retry attempts on timeout
        """
        current_timeout = timeout or self.navigation_timeout
        for attempt in range(1, max_retries + 1):
            try:
                logger.debug(f"Navigating to {url} (attempt {attempt}/{max_retries}, timeout={current_timeout})")
                await self.page.goto(url, wait_until=wait_until, timeout=current_timeout)
                logger.info(f"[OK] Navigated to {url}")
                return True
            except PlaywrightTimeoutError:
                logger.warning(f"[TIME] Navigation timeout for {url} on attempt {attempt}")
                current_timeout = int(current_timeout * 1.8)
                await asyncio.sleep(1)
            except PlaywrightError as e:
                logger.error(f"[X] Navigation failed: {e}")
                return False

        logger.error(f"[X] Navigation failed after {max_retries} attempts: {url}")
        return False

    # Debug sink / cancellation

    async def _bind_debug_sink(self, name: str):
        if name in self._debug_sinks or self.page is None:
            return
        try:
            await self.page.expose_function(name, self._on_page_debug)
            self._debug_sinks.add(name)
        except PlaywrightError as e:
            logger.debug(f"Debug sink {name} not bound: {e}")

    @staticmethod
    def _on_page_debug(message: str, data: Any = None):
        if data is None:
            page_logger.debug(message)
        else:
            page_logger.debug(f"{message} {json.dumps(data, default=str)}")

    def _on_frame_navigated(self, frame: Frame):
        if self._cancel is not None and self.page is not None and frame == self.page.main_frame:
            logger.info(f"[!] Main frame navigated to {frame.url}, cancelling captcha solving")
            self._cancel.set()

    def _on_page_close(self, page: Page):
        if self._cancel is not None:
            logger.info("[!] Page closed, cancelling captcha solving")
            self._cancel.set()

    # Captcha operations

    def _agent(self, options: Optional[SolveOptions]) -> CaptchaAgent:
        return CaptchaAgent(self.provider, options=options or self.options)

    async def find_captchas(self, options: Optional[SolveOptions] = None) -> FindResult:
        options = options or self.options
        if options.debug_sink_name:
            await self._bind_debug_sink(options.debug_sink_name)
        return await self._agent(options).find(self.page)

    async def get_solutions(self, challenges: Sequence[ChallengeRecord],
                            options: Optional[SolveOptions] = None) -> SolveResult:
        self._cancel = asyncio.Event()
        try:
            return await self._agent(options).solve(challenges, self._cancel)
        finally:
            self._cancel = None

    async def enter_solutions(self, solutions: Sequence[Solution],
                              options: Optional[SolveOptions] = None) -> EnterResult:
        return await self._agent(options).enter(self.page, solutions)

    async def solve_captchas(self, options: Optional[SolveOptions] = None,
                             throw_on_error: bool = False) -> RunResult:
        """
        Find, solve and enter every captcha on the current page

        Raises:
            CaptchaSolveError: throw_on_error is set and the run reported an error
        """
        options = options or self.options
        if self.page is None:
            result = RunResult(error="PassLevelError: browser not initialized")
        else:
            if options.debug_sink_name:
                await self._bind_debug_sink(options.debug_sink_name)
            self._cancel = asyncio.Event()
            try:
                result = await self._agent(options).run(self.page, cancel=self._cancel)
            finally:
                self._cancel = None

        solved = sum(1 for record in result.solved if record.is_solved)
        logger.info(
            f"[CAPTCHA] found={len(result.challenges)} filtered={len(result.filtered)} "
            f"solutions={len(result.solutions)} solved={solved}"
        )
        if result.error:
            logger.warning(f"[CAPTCHA] {result.error}")
            if throw_on_error:
                raise CaptchaSolveError(result.error, result)
        return result

    async def cleanup(self):
        """Clean up resources with proper error handling"""
        if self.page:
            try:
                await self.page.close()
            except (asyncio.CancelledError, PlaywrightError) as e:
                logger.debug(f"Page close note: {type(e).__name__}")

        if self.context:
            try:
                await self.context.close()
            except (asyncio.CancelledError, PlaywrightError) as e:
                logger.debug(f"Context close note: {type(e).__name__}")

        if self.browser:
            try:
                await self.browser.close()
            except (asyncio.CancelledError, PlaywrightError) as e:
                logger.debug(f"Browser close note: {type(e).__name__}")

        if self._playwright:
            try:
                await self._playwright.stop()
            except (asyncio.CancelledError, PlaywrightError) as e:
                logger.debug(f"Playwright stop note: {type(e).__name__}")

        await self.provider.close()
        self.page = self.context = self.browser = self._playwright = None
        logger.info("Browser cleanup completed")
