"""Akbank virtual POS.

Direct sale, cancel and refund over the JSON API. Akbank's 3-D flow is not
offered by this integration, so 3-D requests are refused before any call.
"""

from typing import Mapping

from ..models import NormalizedResult, PaymentRequest, TransactionContext
from .base import CallContext
from .vpos import VirtualPosSession

API_SANDBOX_URL = "https://apipre.akbank.com/api/v1/payment/virtualpos/transaction/process"
API_PRODUCTION_URL = "https://api.akbank.com/api/v1/payment/virtualpos/transaction/process"


class AkbankSession(VirtualPosSession):
    """Akbank provider session."""

    name = "akbank"
    sandbox_url = API_SANDBOX_URL
    production_url = API_PRODUCTION_URL

    async def create_3d_payment(self, ctx: CallContext, request: PaymentRequest) -> NormalizedResult:
        raise self.not_supported("3D payments")

    async def complete_3d_payment(
        self,
        ctx: CallContext,
        state: TransactionContext,
        data: Mapping[str, str],
    ) -> NormalizedResult:
        raise self.not_supported("3D completion")
