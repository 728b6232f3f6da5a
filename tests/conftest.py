"""Shared fixtures."""

import pytest
from playwright.async_api import Error as PlaywrightError, async_playwright


@pytest.fixture
async def page():
    """A blank Chromium page; tests using it are skipped when Chromium is unavailable."""
    async with async_playwright() as playwright:
        try:
            browser = await playwright.chromium.launch()
        except PlaywrightError as e:
            pytest.skip(f"Chromium unavailable: {e}")
        page = await browser.new_page(viewport={'width': 1280, 'height': 720})
        try:
            yield page
        finally:
            await browser.close()
