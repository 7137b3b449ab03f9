"""
Interface to the bank/QR automation service that backs fiat payments.

The automation itself runs elsewhere; the facilitator only asks it for a
payment option and for confirmation of a transfer reference.
"""

from decimal import Decimal
from typing import Optional, Protocol

from src.payments.models import FiatAcceptOption


class FiatGateway(Protocol):

    async def quote(
        self,
        order_id: str,
        amount: Decimal,
        description: str,
    ) -> Optional[FiatAcceptOption]:
        """Fiat accept option for a 402 response, or None when the channel is down"""
        ...

    async def verify(self, order_id: str, details: str) -> bool:
        """Whether a bank transfer matching ``details`` was received for the order"""
        ...
