"""
Page Captcha Solver
Command line entry point: open a URL, solve every captcha on it, print a report

Usage:
    python main.py https://example.com/login --solve-images --json
"""

import argparse
import asyncio
import json
import logging
import sys

from automation.browser_controller import DEFAULT_DEBUG_SINK, BrowserController
from core.models import RunResult
from providers.registry import provider_from_config
from utils.config import Config, load_env
from utils.logger import setup_logging

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Find, solve and enter captchas on a web page")
    parser.add_argument('url', help="page to open")
    parser.add_argument('--provider', help="solving backend: 2captcha or harvester")
    parser.add_argument('--solve-images', action='store_true', help="solve generic image captchas")
    parser.add_argument('--score-based', action='store_true', help="solve score based (v3) widgets")
    parser.add_argument('--inactive', action='store_true', help="solve invisible or already answered widgets")
    parser.add_argument('--viewport-only', action='store_true', help="only solve captchas inside the viewport")
    parser.add_argument('--no-feedback', action='store_true', help="do not draw borders on captchas")
    parser.add_argument('--headless', dest='headless', action='store_true', default=None)
    parser.add_argument('--headed', dest='headless', action='store_false')
    parser.add_argument('--proxy', help="proxy server handed to the solving backend")
    parser.add_argument('--json', action='store_true', help="print the result as JSON")
    parser.add_argument('--env-file', help="path to a .env file")
    return parser


def apply_args(config: Config, args: argparse.Namespace) -> Config:
    """Command line flags override the environment"""
    if args.provider:
        config.CAPTCHA_PROVIDER = args.provider
    if args.headless is not None:
        config.HEADLESS = args.headless
    if args.proxy:
        config.proxy = dict(config.proxy, server=args.proxy)
    if args.solve_images:
        config.solving['solve_image_captchas'] = True
    if args.score_based:
        config.solving['solve_score_based'] = True
    if args.inactive:
        config.solving['solve_inactive_challenges'] = True
    if args.viewport_only:
        config.solving['solve_in_viewport_only'] = True
    if args.no_feedback:
        config.solving['visual_feedback'] = False
    if not config.solving.get('debug_sink_name'):
        config.solving['debug_sink_name'] = DEFAULT_DEBUG_SINK
    return config


def print_report(result: RunResult):
    print(f"Challenges: {len(result.challenges)}  Filtered: {len(result.filtered)}")
    for decision in result.filtered:
        print(f"  [SKIP] {decision.challenge_id}: {decision.reason.value}")
    for solution in result.solutions:
        status = 'OK' if solution.has_solution else 'X'
        print(f"  [{status}] {solution.id} ({solution.vendor_tag.value}) {solution.error or ''}".rstrip())
    for record in result.solved:
        status = 'OK' if record.is_solved else 'X'
        print(f"  [{status}] entered {record.id} {record.error or ''}".rstrip())
    if result.error:
        print(f"Error: {result.error}")


async def run(args: argparse.Namespace) -> int:
    config = apply_args(Config(), args)
    try:
        provider = provider_from_config(config)
    except ValueError as e:
        logger.error(f"[X] {e}")
        return 2

    controller = BrowserController(
        provider,
        headless=config.HEADLESS,
        options=config.solve_options,
        viewport=config.browser['viewport'],
        navigation_timeout=config.browser['navigation_timeout'],
    )
    if not await controller.initialize():
        return 1
    try:
        if not await controller.navigate(args.url):
            return 1
        result = await controller.solve_captchas()
    finally:
        await controller.cleanup()

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print_report(result)
    return 0 if not result.error else 1


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    load_env(args.env_file)
    config = Config()
    setup_logging(level=config.LOG_LEVEL, log_file=config.LOG_FILE)
    return asyncio.run(run(args))


if __name__ == '__main__':
    sys.exit(main())
