"""Models package."""

from .account import Account
from .credit_transaction import CreditTransaction
from .generation import Generation
from .generation_job import GenerationJob
from .webhook_event import WebhookEvent
