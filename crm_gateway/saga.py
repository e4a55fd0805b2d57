# Copyright 2026 UCP Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Checkout saga: turns a cart into an activated CRM order.

The critical steps run strictly in order and the first failure aborts the
checkout. Order activation is the commit point; the steps after it are
best-effort and can only enrich the result.
"""

import logging
import math
import random
import string
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from .errors import ConfigurationError, MalformedRequest, ResolutionError, WriteError
from .models import CheckoutRequest, CheckoutResult
from .record_client import RecordClient, soql_quote

logger = logging.getLogger(__name__)

CARRIERS = ("UPS", "FedEx", "USPS")
DELIVERY_DAYS = 5
POINTS_RATE = 0.10
INITIAL_SHIPPING_STATUS = "Processing"
DEFAULT_PAYMENT_METHOD = "Test Card"


@dataclass
class ShippingDetails:
    """Demo shipping metadata stamped on a new order."""

    carrier: str
    tracking_number: str
    effective_date: str
    estimated_delivery: str
    status: str = INITIAL_SHIPPING_STATUS

    @classmethod
    def synthesize(cls, today: date, rng: random.Random) -> "ShippingDetails":
        suffix = "".join(rng.choice(string.ascii_uppercase + string.digits) for _ in range(9))
        return cls(
            carrier=rng.choice(CARRIERS),
            tracking_number=f"1Z{suffix}",
            effective_date=today.isoformat(),
            estimated_delivery=(today + timedelta(days=DELIVERY_DAYS)).isoformat(),
        )


@dataclass
class CheckoutContext:
    """State threaded through the saga steps."""

    request: CheckoutRequest
    token: str
    account_id: Optional[str] = None
    pricebook_id: Optional[str] = None
    shipping: Optional[ShippingDetails] = None
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    activated: bool = False
    pricebook_entries: Dict[str, str] = field(default_factory=dict)
    order_item_ids: List[str] = field(default_factory=list)
    points_earned: int = 0

    def result(self) -> CheckoutResult:
        return CheckoutResult(
            order_id=self.order_id,
            order_number=self.order_number,
            tracking_number=self.shipping.tracking_number,
            carrier=self.shipping.carrier,
            estimated_delivery=self.shipping.estimated_delivery,
            shipping_status=self.shipping.status,
            points_earned=self.points_earned,
        )


Step = Callable[[CheckoutContext], Awaitable[None]]


class SagaRunner:
    """Runs critical steps in order, then a best-effort tail.

    A critical step failure propagates after the optional compensation hook
    runs. Best-effort step failures are logged and dropped.
    """

    def __init__(
        self,
        steps: Sequence[Step],
        best_effort: Sequence[Step] = (),
        compensate: Optional[Step] = None,
    ):
        self.steps = list(steps)
        self.best_effort = list(best_effort)
        self.compensate = compensate

    async def run(self, ctx: CheckoutContext) -> CheckoutContext:
        for step in self.steps:
            try:
                await step(ctx)
            except Exception:
                logger.error(f"Checkout step {step.__name__} failed (order={ctx.order_id})")
                if self.compensate is not None:
                    await self._compensate(ctx)
                raise

        for step in self.best_effort:
            try:
                await step(ctx)
            except Exception as e:
                logger.warning(f"Skipped {step.__name__} for order {ctx.order_id}: {e}")
        return ctx

    async def _compensate(self, ctx: CheckoutContext) -> None:
        try:
            await self.compensate(ctx)
        except Exception as e:
            logger.error(f"Compensation for order {ctx.order_id} failed: {e}")


class CheckoutSaga:
    """Creates account-linked orders, order items and loyalty credits."""

    def __init__(
        self,
        records: RecordClient,
        compensate: bool = False,
        cancelled_status: str = "Cancelled",
        rng: Optional[random.Random] = None,
        today: Callable[[], date] = date.today,
    ):
        self.records = records
        self.cancelled_status = cancelled_status
        self._rng = rng or random.Random()
        self._today = today
        self.runner = SagaRunner(
            steps=[
                self.resolve_account,
                self.resolve_pricebook,
                self.create_order,
                self.add_line_items,
                self.activate_order,
            ],
            best_effort=[self.accrue_loyalty, self.fetch_order_number],
            compensate=self.cancel_order if compensate else None,
        )

    async def checkout(self, token: str, request: CheckoutRequest) -> CheckoutResult:
        """Place an order for ``request``.

        Raises:
            ResolutionError, ConfigurationError, WriteError: before activation.
        """
        ctx = CheckoutContext(request=request, token=token)
        await self.runner.run(ctx)
        logger.info(
            f"Checkout complete: order {ctx.order_id} ({ctx.order_number}), "
            f"{len(ctx.order_item_ids)} items, {ctx.points_earned} points"
        )
        return ctx.result()

    # ── Critical steps ─────────────────────────────────────────────────

    async def resolve_account(self, ctx: CheckoutContext) -> None:
        account_id = ctx.request.account_id
        if not account_id and ctx.request.contact_id:
            response = await self.records.query(
                ctx.token,
                "SELECT AccountId FROM Contact "
                f"WHERE Id = '{soql_quote(ctx.request.contact_id)}' LIMIT 1",
            )
            account_id = response.first_record().get("AccountId")
        if not account_id:
            raise ResolutionError("Could not resolve AccountId")
        ctx.account_id = account_id

    async def resolve_pricebook(self, ctx: CheckoutContext) -> None:
        response = await self.records.query(
            ctx.token, "SELECT Id FROM Pricebook2 WHERE IsStandard = true LIMIT 1"
        )
        pricebook_id = response.first_record().get("Id")
        if not pricebook_id:
            raise ConfigurationError("Standard Price Book not found")
        ctx.pricebook_id = pricebook_id

    async def create_order(self, ctx: CheckoutContext) -> None:
        ctx.shipping = ShippingDetails.synthesize(self._today(), self._rng)
        response = await self.records.create(
            ctx.token,
            "Order",
            {
                "AccountId": ctx.account_id,
                "Pricebook2Id": ctx.pricebook_id,
                "Status": "Draft",
                "EffectiveDate": ctx.shipping.effective_date,
                "Payment_Method__c": ctx.request.payment_method or DEFAULT_PAYMENT_METHOD,
                "Shipping_Status__c": ctx.shipping.status,
                "Tracking_Number__c": ctx.shipping.tracking_number,
                "Carrier__c": ctx.shipping.carrier,
                "Estimated_Delivery__c": ctx.shipping.estimated_delivery,
            },
        )
        if not response.record_id:
            raise WriteError("Failed to create Order", details=response.payload())
        ctx.order_id = response.record_id
        logger.info(f"Created Order {ctx.order_id}")

    async def add_line_items(self, ctx: CheckoutContext) -> None:
        # Sequential on purpose: entries created for one line are reused by
        # later lines for the same product.
        for item in ctx.request.items:
            entry_id = await self._pricebook_entry(ctx, item.product_id, item.unit_price)
            response = await self.records.create(
                ctx.token,
                "OrderItem",
                {
                    "OrderId": ctx.order_id,
                    "PricebookEntryId": entry_id,
                    "Quantity": item.quantity,
                    "UnitPrice": item.unit_price,
                },
            )
            if not response.record_id:
                raise WriteError(
                    f"Failed to create OrderItem for product {item.product_id}",
                    details=response.payload(),
                )
            ctx.order_item_ids.append(response.record_id)

    async def _pricebook_entry(self, ctx: CheckoutContext, product_id: str, unit_price: float) -> str:
        if product_id in ctx.pricebook_entries:
            return ctx.pricebook_entries[product_id]

        response = await self.records.query(
            ctx.token,
            "SELECT Id FROM PricebookEntry "
            f"WHERE Product2Id = '{soql_quote(product_id)}' "
            f"AND Pricebook2Id = '{soql_quote(ctx.pricebook_id)}' AND IsActive = true LIMIT 1",
        )
        entry_id = response.first_record().get("Id")
        if not entry_id:
            created = await self.records.create(
                ctx.token,
                "PricebookEntry",
                {
                    "Pricebook2Id": ctx.pricebook_id,
                    "Product2Id": product_id,
                    "UnitPrice": unit_price,
                    "IsActive": True,
                },
            )
            entry_id = created.record_id
            if not entry_id:
                raise WriteError(
                    f"Failed to create PricebookEntry for product {product_id}",
                    details=created.payload(),
                )
            logger.info(f"Created PricebookEntry {entry_id} for product {product_id}")
        ctx.pricebook_entries[product_id] = entry_id
        return entry_id

    async def activate_order(self, ctx: CheckoutContext) -> None:
        response = await self.records.update(ctx.token, "Order", ctx.order_id, {"Status": "Activated"})
        if not response.ok:
            raise WriteError("Failed to activate Order", details=response.payload())
        ctx.activated = True
        logger.info(f"Activated Order {ctx.order_id}")

    async def cancel_order(self, ctx: CheckoutContext) -> None:
        """Compensation: mark a never-activated order as cancelled."""
        if not ctx.order_id or ctx.activated:
            return
        response = await self.records.update(
            ctx.token, "Order", ctx.order_id, {"Status": self.cancelled_status}
        )
        if not response.ok:
            raise WriteError("Failed to cancel Order", details=response.payload())
        logger.info(f"Order {ctx.order_id} marked {self.cancelled_status}")

    # ── Best-effort steps ──────────────────────────────────────────────

    async def accrue_loyalty(self, ctx: CheckoutContext) -> None:
        points = math.floor(ctx.request.order_total * POINTS_RATE)
        if points < 1:
            return

        member = (
            await self.records.query(
                ctx.token,
                "SELECT Id, ProgramId FROM LoyaltyProgramMember WHERE ContactId IN "
                f"(SELECT Id FROM Contact WHERE AccountId = '{soql_quote(ctx.account_id)}') "
                "AND MemberStatus = 'Active' LIMIT 1",
            )
        ).first_record()
        if not member.get("Id"):
            logger.info(f"No active loyalty member for account {ctx.account_id}")
            return

        currency_id = (
            await self.records.query(
                ctx.token,
                "SELECT Id FROM LoyaltyProgramCurrency "
                f"WHERE LoyaltyProgramId = '{soql_quote(member.get('ProgramId') or '')}' "
                "AND IsActive = true LIMIT 1",
            )
        ).first_record().get("Id")
        if not currency_id:
            logger.info(f"No active loyalty currency for program {member.get('ProgramId')}")
            return

        ledger = await self.records.create(
            ctx.token,
            "LoyaltyLedger",
            {
                "LoyaltyProgramMemberId": member["Id"],
                "LoyaltyProgramCurrencyId": currency_id,
                "Points": points,
                "EventType": "Credit",
                "ActivityDate": datetime.now(timezone.utc).isoformat(),
            },
        )
        if not ledger.record_id:
            raise WriteError("Failed to write LoyaltyLedger credit", details=ledger.payload())
        ctx.points_earned = points
        logger.info(f"Accrued {points} loyalty points for order {ctx.order_id} via {ledger.record_id}")

    async def fetch_order_number(self, ctx: CheckoutContext) -> None:
        response = await self.records.query(
            ctx.token,
            f"SELECT OrderNumber FROM Order WHERE Id = '{soql_quote(ctx.order_id)}' LIMIT 1",
        )
        ctx.order_number = response.first_record().get("OrderNumber")

    # ── Demo helpers ───────────────────────────────────────────────────

    async def simulate_shipment(self, token: str, order_id: str, new_status: str) -> Dict[str, object]:
        """Advance an order's shipping status for demos."""
        if not order_id or not new_status:
            raise MalformedRequest("Missing orderId or newStatus")
        today = self._today().isoformat()
        fields: Dict[str, object] = {"Shipping_Status__c": new_status}
        if new_status == "Shipped":
            fields["Shipped_Date__c"] = today
        if new_status == "Delivered":
            fields["Delivered_Date__c"] = today
        response = await self.records.update(token, "Order", order_id, fields)
        if not response.ok:
            raise WriteError("Failed to update shipping status", details=response.payload())
        return {"success": True, "orderId": order_id, "newStatus": new_status}
