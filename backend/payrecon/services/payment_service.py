"""
Payment Service

Reconciliation engine between the gateway and the transaction store.

Responsibilities:
- Business validation before any gateway call
- Owner authorization before every mutating operation
- Mapping gateway status codes to TransactionStatus
- Enforcing the status transition table at a single choke point
- Read-repair of pending transactions (polling and webhooks)
"""
import asyncio
import logging
import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar, Union

from ..config import Settings, settings as default_settings
from ..db.models import utcnow
from ..exceptions import (
    GatewayTimeoutError,
    InternalError,
    InvalidStateError,
    NotFound,
    PaymentError,
    ProviderError,
    Unauthorized,
    ValidationError,
)
from ..models.gateway import REFUND_STATUS_FULL, REFUND_STATUS_PARTIAL
from ..models.transactions import (
    TWO_PLACES,
    CreatePaymentRequest,
    MerchantProfile,
    NewTransaction,
    PaymentCreationResult,
    PaymentStats,
    Transaction,
    TransactionDetails,
    TransactionPage,
    TransactionStatus,
    WebhookResult,
    can_transition,
)
from .gateway_client import GatewayClient
from .qr_service import render_qr_data_url
from .transaction_store import TransactionStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")

# Gateway numeric codes: 0 unpaid, 1 paid, 3 refunded, 4 partially refunded
NUMERIC_STATUS_MAP: Dict[int, TransactionStatus] = {
    0: TransactionStatus.PENDING,
    1: TransactionStatus.COMPLETED,
    3: TransactionStatus.REFUNDED,
    4: TransactionStatus.PARTIALLY_REFUNDED,
}

STRING_STATUS_MAP: Dict[str, TransactionStatus] = {
    "pending": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "completed": TransactionStatus.COMPLETED,
    "success": TransactionStatus.COMPLETED,
    "approved": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "declined": TransactionStatus.FAILED,
    "error": TransactionStatus.FAILED,
    "timeout": TransactionStatus.FAILED,
    "expired": TransactionStatus.FAILED,
    "cancelled": TransactionStatus.CANCELLED,
    "canceled": TransactionStatus.CANCELLED,
    "refunded": TransactionStatus.REFUNDED,
    "partially_refunded": TransactionStatus.PARTIALLY_REFUNDED,
}


def map_gateway_status(gateway_status: Union[int, float, str, None]) -> TransactionStatus:
    """
    Map a gateway status to TransactionStatus.

    Numeric strings ("1") and integral floats (1.0) are treated as numbers.
    Anything unrecognized maps to FAILED.
    """
    if isinstance(gateway_status, bool):
        return TransactionStatus.FAILED

    if isinstance(gateway_status, float) and gateway_status.is_integer():
        gateway_status = int(gateway_status)

    if isinstance(gateway_status, str) and gateway_status.strip().lstrip("-").isdigit():
        gateway_status = int(gateway_status.strip())

    if isinstance(gateway_status, int):
        return NUMERIC_STATUS_MAP.get(gateway_status, TransactionStatus.FAILED)

    normalized = str(gateway_status).strip().lower()
    return STRING_STATUS_MAP.get(normalized, TransactionStatus.FAILED)


class PaymentService:
    """
    Orchestrates payment creation, status lookup, webhooks, refunds and
    cancellation.

    Args:
        gateway: Gateway client
        store: Transaction store
        settings: Business limits and operation timeouts
        qr_renderer: URL -> image data URL
    """

    def __init__(
        self,
        gateway: GatewayClient,
        store: TransactionStore,
        settings: Optional[Settings] = None,
        qr_renderer: Callable[[str], str] = render_qr_data_url
    ):
        self._gateway = gateway
        self._store = store
        self._settings = settings or default_settings
        self._qr_renderer = qr_renderer

    # ========================================================================
    # Payment Creation
    # ========================================================================

    async def create_payment(
        self,
        profile: MerchantProfile,
        request: CreatePaymentRequest,
        api_key_id: Optional[str] = None
    ) -> PaymentCreationResult:
        """
        Create a gateway payment, persist it as pending, and render its QR code.

        Args:
            profile: Merchant profile of the authenticated owner
            request: Payment request
            api_key_id: API credential that issued the request, if any

        Returns:
            PaymentCreationResult with transaction, payment URL and QR data URL

        Raises:
            ValidationError: Amount, currency or installments invalid
            ProviderError / ProviderUnavailable: Gateway failure (nothing persisted)
        """
        return await self._with_timeout(
            self._create_payment(profile, request, api_key_id),
            self._settings.create_payment_timeout_seconds,
            lambda: GatewayTimeoutError("Payment creation timeout")
        )

    async def _create_payment(
        self,
        profile: MerchantProfile,
        request: CreatePaymentRequest,
        api_key_id: Optional[str]
    ) -> PaymentCreationResult:
        amount = self._validate_amount(request.amount)
        currency = self._validate_currency(request.currency or profile.currency)
        self._validate_options(request)

        if currency != profile.currency:
            profile = profile.model_copy(update={"currency": currency})

        gateway_response = await self._gateway.create_payment(
            amount,
            profile,
            request.description,
            request.gateway_options()
        )

        transaction = await self._store.create(NewTransaction(
            owner_id=profile.owner_id,
            gateway_order_id=gateway_response.order_id,
            amount=amount,
            currency=currency,
            payment_url=gateway_response.payment_url,
            description=request.description,
            line_items=request.line_items,
            customer_email=request.customer_email,
            customer_name=request.customer_name,
            customer_phone=request.customer_phone,
            customer_id_number=request.customer_id_number,
            max_installments=request.max_installments,
            fixed_installments=bool(request.fixed_installments),
            expires_at=request.expires_at,
            preauthorize=request.preauthorize,
            custom_field_1=request.custom_field_1,
            custom_field_2=request.custom_field_2,
            success_url=request.success_url,
            cancel_url=request.cancel_url,
            webhook_url=request.webhook_url,
            metadata=request.metadata,
            api_key_id=api_key_id,
        ))

        try:
            qr_code_data_url = self._qr_renderer(gateway_response.payment_url)
        except Exception as e:
            logger.error(f"Error generating QR code for transaction {transaction.id}: {e}")
            raise InternalError(
                "Failed to generate QR code",
                details={"transaction_id": transaction.id}
            ) from e

        logger.info(
            f"Payment created: transaction={transaction.id}, order={gateway_response.order_id}, "
            f"owner={profile.owner_id}"
        )

        return PaymentCreationResult(
            transaction=transaction,
            payment_url=gateway_response.payment_url,
            qr_code_data_url=qr_code_data_url
        )

    # ========================================================================
    # Status and Details
    # ========================================================================

    async def get_payment_status(self, transaction_id: str, owner_id: str) -> Transaction:
        """
        Return the transaction, refreshing pending ones from the gateway.

        Completed and failed transactions are returned without a gateway call.
        Gateway failures fall back to the stored status.
        """
        return await self._with_timeout(
            self._get_payment_status(transaction_id, owner_id),
            self._settings.status_check_timeout_seconds,
            lambda: GatewayTimeoutError("Payment status check timeout")
        )

    async def _get_payment_status(self, transaction_id: str, owner_id: str) -> Transaction:
        transaction = await self._get_owned_transaction(transaction_id, owner_id)

        if transaction.status.is_final:
            logger.debug(f"Transaction {transaction_id} already finalized with status: {transaction.status.value}")
            return transaction

        if transaction.status == TransactionStatus.PENDING:
            return await self._refresh_pending(transaction)

        return transaction

    async def get_transaction_details(self, transaction_id: str, owner_id: str) -> TransactionDetails:
        """
        Local record plus the gateway's raw view of the order.

        The gateway view is replaced by an error marker when unavailable.
        """
        transaction = await self._get_owned_transaction(transaction_id, owner_id)

        gateway_details: Optional[Dict[str, Any]] = None
        if transaction.gateway_order_id:
            try:
                remote = await self._gateway.get_payment_status(transaction.gateway_order_id)
                gateway_details = remote.raw
            except PaymentError as e:
                logger.warning(f"Error getting gateway details for {transaction_id}: {e}")
                gateway_details = {"error": "Unable to fetch payment details from gateway"}

        return TransactionDetails(transaction=transaction, gateway_details=gateway_details)

    async def _refresh_pending(self, transaction: Transaction) -> Transaction:
        """Best-effort read-repair of a pending transaction."""
        if not transaction.gateway_order_id:
            return transaction

        try:
            remote = await self._gateway.get_payment_status(transaction.gateway_order_id)
        except PaymentError as e:
            logger.warning(f"Failed to check gateway status for {transaction.id}, returning local status: {e}")
            return transaction

        new_status = map_gateway_status(remote.status)
        if new_status == transaction.status:
            return transaction

        try:
            return await self._transition(transaction, new_status)
        except InvalidStateError as e:
            logger.warning(f"Ignoring gateway status {remote.status!r} for {transaction.id}: {e.message}")
            current = await self._store.find_by_id(transaction.id)
            return current or transaction

    async def reconcile_pending(self, limit: int = 50) -> int:
        """
        Sweep pending transactions through the read-repair path.

        Returns:
            Number of transactions whose status changed
        """
        pending = await self._store.find_by_status(TransactionStatus.PENDING, limit=limit)

        changed = 0
        for transaction in pending:
            refreshed = await self._refresh_pending(transaction)
            if refreshed.status != transaction.status:
                changed += 1

        logger.info(f"Reconciled {len(pending)} pending transactions, {changed} changed")
        return changed

    # ========================================================================
    # History and Statistics
    # ========================================================================

    async def get_transaction_history(
        self,
        owner_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> TransactionPage:
        """
        Page through an owner's transactions, most recent first.

        limit defaults to history_default_limit and is capped at
        history_max_limit.
        A soft timeout raises GatewayTimeoutError like the other timed
        operations.
        """
        if offset < 0:
            raise ValidationError("Offset must not be negative", {"offset": offset})

        if limit is None or limit <= 0:
            limit = self._settings.history_default_limit
        limit = min(limit, self._settings.history_max_limit)

        return await self._with_timeout(
            self._get_transaction_history(owner_id, limit, offset),
            self._settings.history_timeout_seconds,
            lambda: GatewayTimeoutError("Transaction history timeout")
        )

    async def _get_transaction_history(self, owner_id: str, limit: int, offset: int) -> TransactionPage:
        transactions = await self._store.find_by_owner(owner_id, limit, offset)
        total = await self._store.count_by_owner(owner_id)
        return TransactionPage(transactions=transactions, total=total, limit=limit, offset=offset)

    async def get_transaction_count(self, owner_id: str) -> int:
        return await self._store.count_by_owner(owner_id)

    async def get_payment_stats(self, owner_id: str, days: int = 30) -> PaymentStats:
        if days <= 0:
            raise ValidationError("Days must be a positive number", {"days": days})

        end = utcnow()
        return await self._store.get_stats(owner_id, end - timedelta(days=days), end)

    async def get_recent_transactions(self, owner_id: str, hours: int = 24) -> List[Transaction]:
        """Owner's transactions created in the last `hours`, newest first."""
        if hours <= 0:
            raise ValidationError("Hours must be a positive number", {"hours": hours})

        return await self._store.find_recent_by_owner(owner_id, hours)

    # ========================================================================
    # Webhooks
    # ========================================================================

    async def process_webhook(
        self,
        payload: Mapping[str, Any],
        signature: Optional[str] = None
    ) -> WebhookResult:
        """
        Apply a gateway notification. Never raises.

        Invalid signatures are rejected before any store access.
        """
        try:
            return await asyncio.wait_for(
                self._process_webhook(payload, signature),
                timeout=self._settings.webhook_timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.error("Webhook processing timeout")
            return WebhookResult(success=False, error="Webhook processing timeout")
        except PaymentError as e:
            logger.error(f"Error processing webhook: {e.message}")
            return WebhookResult(success=False, error=e.message)
        except Exception as e:
            logger.exception(f"Unexpected error processing webhook: {e}")
            return WebhookResult(success=False, error="Internal error")

    async def _process_webhook(
        self,
        payload: Mapping[str, Any],
        signature: Optional[str]
    ) -> WebhookResult:
        if not self._gateway.validate_webhook_signature(payload, signature):
            logger.error("Invalid webhook signature")
            return WebhookResult(success=False, error="Invalid signature")

        gateway_transaction_id = payload.get("transaction_id")
        gateway_transaction_id = str(gateway_transaction_id) if gateway_transaction_id else None
        order_id = payload.get("order_id")

        transaction = None
        if gateway_transaction_id:
            transaction = await self._store.find_by_gateway_transaction_id(gateway_transaction_id)

        if transaction is None and order_id:
            transaction = await self._find_by_order_id(str(order_id))

        if transaction is None:
            logger.error(f"Transaction not found for gateway ID: {gateway_transaction_id or order_id}")
            return WebhookResult(success=False, error="Transaction not found")

        new_status = map_gateway_status(payload.get("status"))

        try:
            updated = await self._transition(transaction, new_status, gateway_transaction_id)
        except InvalidStateError as e:
            logger.warning(f"Webhook for {transaction.id} rejected: {e.message}")
            return WebhookResult(success=False, transaction_id=transaction.id, error=e.message)

        return WebhookResult(success=True, transaction_id=updated.id)

    async def _find_by_order_id(self, order_id: str) -> Optional[Transaction]:
        """
        Fallback lookup by our own order id. May legitimately find nothing.
        """
        if self._gateway.parse_order_timestamp(order_id) is None:
            logger.warning(f"Order id {order_id} is not in our format, cannot resolve")
            return None

        try:
            return await self._store.find_by_gateway_order_id(order_id)
        except PaymentError as e:
            logger.warning(f"Lookup by order id {order_id} failed: {e.message}")
            return None

    # ========================================================================
    # Refunds and Cancellation
    # ========================================================================

    async def refund_payment(
        self,
        transaction_id: str,
        owner_id: str,
        amount: Optional[Union[Decimal, float, str]] = None,
        item_amounts: Optional[List[Decimal]] = None
    ) -> Transaction:
        """
        Refund a completed payment, fully by default.

        The gateway is asked for its own view first. If it already reports a
        refund, the local record is synced and no second refund is issued.

        Raises:
            InvalidStateError: Not completed locally, or not settled at the gateway
            ProviderError: Unexpected refund code from the gateway
        """
        transaction = await self._get_owned_transaction(transaction_id, owner_id)

        if transaction.status != TransactionStatus.COMPLETED:
            raise InvalidStateError(
                "Can only refund completed transactions",
                {"transaction_id": transaction_id, "status": transaction.status.value}
            )

        if not transaction.gateway_order_id:
            raise InvalidStateError(
                "Cannot refund transaction without gateway order id",
                {"transaction_id": transaction_id}
            )

        remote = await self._gateway.get_payment_status(transaction.gateway_order_id)
        remote_status = map_gateway_status(remote.status)

        if remote_status in (TransactionStatus.REFUNDED, TransactionStatus.PARTIALLY_REFUNDED):
            logger.info(f"Order {transaction.gateway_order_id} already {remote_status.value} at gateway, syncing")
            return await self._transition(transaction, remote_status)

        if remote_status != TransactionStatus.COMPLETED:
            raise InvalidStateError(
                "Gateway does not report the payment as settled",
                {"transaction_id": transaction_id, "gateway_status": str(remote.status)}
            )

        refund_amount = self._refund_amount(transaction, amount)
        logger.info(f"Processing refund for order {transaction.gateway_order_id}, amount: {refund_amount}")

        outcome = await self._gateway.refund_payment(transaction.gateway_order_id, refund_amount, item_amounts)

        if outcome.status == REFUND_STATUS_FULL:
            new_status = TransactionStatus.REFUNDED
        elif outcome.status == REFUND_STATUS_PARTIAL:
            new_status = TransactionStatus.PARTIALLY_REFUNDED
        else:
            raise ProviderError(
                "Unexpected refund status from gateway",
                gateway_code="UNEXPECTED_REFUND_STATUS",
                details={"transaction_id": transaction_id, "refund_status": outcome.status}
            )

        return await self._transition(transaction, new_status)

    async def cancel_payment(self, transaction_id: str, owner_id: str) -> Transaction:
        """Cancel a pending payment. Local only, no gateway call."""
        transaction = await self._get_owned_transaction(transaction_id, owner_id)

        if transaction.status != TransactionStatus.PENDING:
            raise InvalidStateError(
                "Can only cancel pending transactions",
                {"transaction_id": transaction_id, "status": transaction.status.value}
            )

        if not await self._store.soft_delete(transaction_id):
            raise InvalidStateError("Transaction can no longer be cancelled", {"transaction_id": transaction_id})

        logger.info(f"Transaction {transaction_id} cancelled by owner {owner_id}")
        cancelled = await self._store.find_by_id(transaction_id)
        if cancelled is None:
            raise NotFound("Transaction not found", {"transaction_id": transaction_id})
        return cancelled

    async def update_metadata(
        self,
        transaction_id: str,
        owner_id: str,
        metadata: Optional[Dict[str, Any]]
    ) -> Transaction:
        await self._get_owned_transaction(transaction_id, owner_id)

        updated = await self._store.update_metadata(transaction_id, metadata)
        if updated is None:
            raise NotFound("Transaction not found", {"transaction_id": transaction_id})
        return updated

    # ========================================================================
    # Helpers
    # ========================================================================

    async def _get_owned_transaction(self, transaction_id: str, owner_id: str) -> Transaction:
        transaction = await self._store.find_by_id(transaction_id)

        if transaction is None:
            raise NotFound("Transaction not found", {"transaction_id": transaction_id})

        if transaction.owner_id != owner_id:
            logger.warning(f"Owner {owner_id} denied access to transaction {transaction_id}")
            raise Unauthorized("Unauthorized access to transaction", {"transaction_id": transaction_id})

        return transaction

    async def _transition(
        self,
        transaction: Transaction,
        target: TransactionStatus,
        gateway_transaction_id: Optional[str] = None
    ) -> Transaction:
        """
        Apply a status change if the transition table allows it.

        Re-applying the current status is a no-op apart from backfilling a
        new gateway transaction id.

        The write is a compare-and-set against the status this snapshot was
        read with; if another writer moved the row first, the change is
        refused with InvalidStateError.
        """
        if target == transaction.status:
            if gateway_transaction_id and gateway_transaction_id != transaction.gateway_transaction_id:
                updated = await self._store.update_status(
                    transaction.id, target, gateway_transaction_id, expected_status=target
                )
                return updated or transaction
            return transaction

        if not can_transition(transaction.status, target):
            raise InvalidStateError(
                f"Cannot change transaction status from {transaction.status.value} to {target.value}",
                {"transaction_id": transaction.id, "status": transaction.status.value, "target": target.value}
            )

        updated = await self._store.update_status(
            transaction.id, target, gateway_transaction_id, expected_status=transaction.status
        )
        if updated is None:
            raise NotFound("Transaction not found", {"transaction_id": transaction.id})

        if updated.status != target:
            logger.warning(
                f"Transaction {transaction.id} moved to {updated.status.value} concurrently, "
                f"not applying {target.value}"
            )
            raise InvalidStateError(
                f"Transaction status changed concurrently to {updated.status.value}",
                {"transaction_id": transaction.id, "status": updated.status.value, "target": target.value}
            )

        logger.info(f"Transaction {transaction.id} status updated from {transaction.status.value} to {target.value}")
        return updated

    async def _with_timeout(
        self,
        coro: Awaitable[T],
        timeout: float,
        on_timeout: Callable[[], PaymentError]
    ) -> T:
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError as e:
            error = on_timeout()
            logger.error(error.message)
            raise error from e

    def _validate_amount(self, amount: Any) -> Decimal:
        try:
            amount = Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError("Amount must be a valid number", {"amount": str(amount)})

        if not amount.is_finite():
            raise ValidationError("Amount must be a valid number", {"amount": str(amount)})

        if amount <= 0:
            raise ValidationError("Amount must be a positive number", {"amount": str(amount)})

        if amount > self._settings.max_payment_amount:
            raise ValidationError(
                "Amount exceeds maximum allowed value",
                {"amount": str(amount), "max_amount": str(self._settings.max_payment_amount)}
            )

        if amount != amount.quantize(TWO_PLACES):
            raise ValidationError("Amount cannot have more than 2 decimal places", {"amount": str(amount)})

        return amount.quantize(TWO_PLACES)

    def _validate_currency(self, currency: Optional[str]) -> str:
        currency = (currency or "").strip().upper()
        if not CURRENCY_PATTERN.match(currency):
            raise ValidationError(
                "Currency must be a valid 3-letter ISO code (e.g., ILS, USD)",
                {"currency": currency}
            )
        return currency

    def _validate_options(self, request: CreatePaymentRequest) -> None:
        if request.max_installments is not None and not 1 <= request.max_installments <= 12:
            raise ValidationError(
                "Installments must be between 1 and 12",
                {"max_installments": request.max_installments}
            )

        for item in request.line_items or []:
            if item.price <= 0:
                raise ValidationError("Line item price must be positive", {"item": item.name})

    def _refund_amount(self, transaction: Transaction, amount: Optional[Union[Decimal, float, str]]) -> Decimal:
        """Default to the full amount; clamp to it."""
        if amount is None:
            return transaction.amount

        try:
            requested = Decimal(str(amount))
        except (InvalidOperation, TypeError, ValueError):
            raise ValidationError("Refund amount must be a valid number", {"amount": str(amount)})

        if not requested.is_finite() or requested <= 0:
            return transaction.amount

        return min(requested, transaction.amount).quantize(TWO_PLACES)
