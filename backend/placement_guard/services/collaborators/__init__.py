"""
External Collaborators

Contracts (typing.Protocol) for the slow network services the engine
depends on, plus their default HTTP/SDK implementations.
"""
from .mail import MailClient, HttpMailClient, DeliveryStatus
from .classifier import TextClassifier, OpenAIResponseClassifier
from .billing import BillingClient, HttpBillingClient, Payer

__all__ = [
    "MailClient", "HttpMailClient", "DeliveryStatus",
    "TextClassifier", "OpenAIResponseClassifier",
    "BillingClient", "HttpBillingClient", "Payer",
]
