"""
Webhook Brain

Delivery engine for application webhooks: matches incoming events against
registered subscriptions, fans them out into delivery descriptors and carries
each delivery through at-least-once HTTP dispatch with bounded retry.
"""

__version__ = "0.1.0"
__author__ = "Webhook Brain Team"
__license__ = "MIT"

from .config.settings import Config, load_config
from .server import WebhookBrainServer
from .utils import HealthChecker

__all__ = [
    "WebhookBrainServer",
    "Config",
    "load_config",
    "HealthChecker",
    "__version__",
    "__author__",
    "__license__",
]
