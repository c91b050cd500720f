"""Built-in rule action handlers"""

from .algolia_action import AlgoliaAction, AlgoliaActionHandler, AlgoliaJob, IndexKey
from .webhook_action import WebhookAction, WebhookActionHandler, WebhookJob

__all__ = [
    "AlgoliaAction",
    "AlgoliaActionHandler",
    "AlgoliaJob",
    "IndexKey",
    "WebhookAction",
    "WebhookActionHandler",
    "WebhookJob",
]
