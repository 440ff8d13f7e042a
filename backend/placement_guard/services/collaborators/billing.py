"""
Billing Collaborator

Contract: issue(amount, payer, memo) -> invoice number.
Any failure (network, timeout, non-2xx, missing invoice number) is raised
as TransientCollaboratorError so the caller can leave its state untouched.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

import httpx

from ...config import BILLING_API_KEY, BILLING_API_URL, BILLING_TIMEOUT_SECONDS
from ..errors import TransientCollaboratorError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Payer:
    """Who the invoice is addressed to."""
    employer_id: str
    name: str
    email: Optional[str]


class BillingClient(Protocol):
    def issue(self, amount: Decimal, payer: Payer, memo: str) -> str:
        ...


class HttpBillingClient:
    """Creates and delivers invoices through the platform billing service."""

    def __init__(
        self,
        base_url: str = BILLING_API_URL,
        api_key: Optional[str] = BILLING_API_KEY,
        timeout: float = BILLING_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = client or httpx.Client(base_url=base_url, timeout=timeout, headers=headers)

    def issue(self, amount: Decimal, payer: Payer, memo: str) -> str:
        payload = {
            "amount": str(amount),
            "payer": {"employer_id": payer.employer_id, "name": payer.name, "email": payer.email},
            "memo": memo,
        }
        try:
            response = self.client.post("/invoices", json=payload)
            response.raise_for_status()
            invoice_number = response.json().get("invoice_number")
        except (httpx.HTTPError, ValueError) as e:
            raise TransientCollaboratorError("billing", str(e)) from e

        if not invoice_number:
            raise TransientCollaboratorError("billing", "response did not include an invoice number")

        logger.info(f"Billing issued invoice {invoice_number} to {payer.name} for {amount}")
        return str(invoice_number)

    def close(self):
        self.client.close()
