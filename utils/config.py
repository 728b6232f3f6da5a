"""
Configuration loaded from the environment (.env is read by the entry point)
"""

import os
from typing import Mapping, Optional

from dotenv import load_dotenv

from core.models import SolveOptions
from providers.base import ProviderOptions
from providers.proxy import ProxyConfig, ambient_proxy

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def env_bool(value: Optional[str], default: bool) -> bool:
    if value is None or value.strip() == '':
        return default
    return value.strip().lower() in TRUE_VALUES


def env_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value not in (None, '') else default
    except ValueError:
        return default


def env_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value not in (None, '') else default
    except ValueError:
        return default


def load_env(path: Optional[str] = None) -> bool:
    """Load a .env file into os.environ without overriding existing values"""
    return load_dotenv(dotenv_path=path, override=False)


class Config:
    """Application configuration"""

    def __init__(self, env: Optional[Mapping[str, str]] = None):
        env = os.environ if env is None else env

        # Provider
        self.CAPTCHA_PROVIDER = env.get('CAPTCHA_PROVIDER', '2captcha')
        self.TWOCAPTCHA_TOKEN = env.get('TWOCAPTCHA_TOKEN') or env.get('CAPTCHA_API_KEY')
        self.HARVESTER_URL = env.get('HARVESTER_URL', 'http://localhost:8000')
        self.CAPTCHA_POLLING_INTERVAL = env_float(env.get('CAPTCHA_POLLING_INTERVAL'), 2.0)
        self.CAPTCHA_SOLVE_TIMEOUT = env_float(env.get('CAPTCHA_SOLVE_TIMEOUT'), 180.0)

        # Browser
        self.HEADLESS = env_bool(env.get('HEADLESS'), True)

        # Logging
        self.LOG_LEVEL = env.get('LOG_LEVEL', 'INFO')
        self.LOG_FILE = env.get('LOG_FILE') or None

        self.browser = {
            'headless': self.HEADLESS,
            'navigation_timeout': env_int(env.get('NAVIGATION_TIMEOUT'), 30000),
            'viewport': {
                'width': env_int(env.get('VIEWPORT_WIDTH'), 1280),
                'height': env_int(env.get('VIEWPORT_HEIGHT'), 720),
            },
        }

        self.proxy = {
            'server': env.get('CAPTCHA_PROXY_SERVER') or None,
            'username': env.get('CAPTCHA_PROXY_USERNAME') or None,
            'password': env.get('CAPTCHA_PROXY_PASSWORD') or None,
        }
        # Resolved once here; explicit proxy settings still take precedence
        self.ambient_proxy = ambient_proxy(env)

        self.provider = {
            'use_enterprise_flag': env_bool(env.get('CAPTCHA_USE_ENTERPRISE_FLAG'), False),
            'use_action_value': env_bool(env.get('CAPTCHA_USE_ACTION_VALUE'), True),
        }

        defaults = SolveOptions()
        self.solving = {
            'visual_feedback': env_bool(env.get('SOLVE_VISUAL_FEEDBACK'), defaults.visual_feedback),
            'solve_in_viewport_only': env_bool(env.get('SOLVE_IN_VIEWPORT_ONLY'), defaults.solve_in_viewport_only),
            'solve_score_based': env_bool(env.get('SOLVE_SCORE_BASED'), defaults.solve_score_based),
            'solve_inactive_challenges': env_bool(env.get('SOLVE_INACTIVE_CHALLENGES'),
                                                  defaults.solve_inactive_challenges),
            'solve_image_captchas': env_bool(env.get('SOLVE_IMAGE_CAPTCHAS'), defaults.solve_image_captchas),
            'debug_sink_name': env.get('SOLVE_DEBUG_SINK') or defaults.debug_sink_name,
            'submit_delay_ms': env_int(env.get('SOLVE_SUBMIT_DELAY_MS'), defaults.submit_delay_ms),
        }

    @property
    def solve_options(self) -> SolveOptions:
        return SolveOptions.from_mapping(self.solving)

    @property
    def provider_options(self) -> ProviderOptions:
        return ProviderOptions(
            use_enterprise_flag=self.provider['use_enterprise_flag'],
            use_action_value=self.provider['use_action_value'],
            polling_interval=self.CAPTCHA_POLLING_INTERVAL,
            timeout=self.CAPTCHA_SOLVE_TIMEOUT,
            proxy=ProxyConfig.from_value(self.proxy),
            ambient_proxy=self.ambient_proxy,
        )
