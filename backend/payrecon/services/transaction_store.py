"""
Transaction Store

Persists transaction records and performs atomic status writes.

Notes:
- Lookups by internal id, gateway order id and gateway transaction id
- No authorization logic: owner scoping is enforced by the payment service
- Every write stamps updated_at in the same statement
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.models import TransactionModel, utcnow
from ..exceptions import InternalError
from ..models.transactions import (
    LineItem,
    NewTransaction,
    PaymentStats,
    StatusBreakdown,
    Transaction,
    TransactionStatus,
    from_minor_units,
    to_minor_units,
)

logger = logging.getLogger(__name__)


def _to_transaction(row: TransactionModel) -> Transaction:
    line_items = None
    if row.line_items:
        line_items = [LineItem(**item) for item in row.line_items]

    return Transaction(
        id=row.id,
        owner_id=row.user_id,
        gateway_order_id=row.gateway_order_id,
        gateway_transaction_id=row.gateway_transaction_id,
        amount=from_minor_units(row.amount_minor),
        currency=row.currency,
        payment_url=row.payment_url,
        status=TransactionStatus(row.status),
        description=row.description,
        line_items=line_items,
        customer_email=row.customer_email,
        customer_name=row.customer_name,
        customer_phone=row.customer_phone,
        customer_id_number=row.customer_id_number,
        max_installments=row.max_installments,
        fixed_installments=bool(row.fixed_installments),
        expires_at=row.expires_at,
        preauthorize=bool(row.preauthorize),
        custom_field_1=row.custom_field_1,
        custom_field_2=row.custom_field_2,
        success_url=row.success_url,
        cancel_url=row.cancel_url,
        webhook_url=row.webhook_url,
        metadata=row.metadata_,
        api_key_id=row.api_key_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


class TransactionStore:
    """
    Async SQLAlchemy repository for transactions.

    Each call runs in its own session, so the store is safe to share across
    concurrent requests.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ========================================================================
    # Creation
    # ========================================================================

    async def create(self, data: NewTransaction) -> Transaction:
        """
        Persist a new pending transaction.

        Args:
            data: Validated transaction data

        Returns:
            Created Transaction with generated id and timestamps

        Raises:
            InternalError: If the row could not be written
        """
        transaction_id = str(uuid.uuid4())
        now = utcnow()

        row = TransactionModel(
            id=transaction_id,
            user_id=data.owner_id,
            gateway_order_id=data.gateway_order_id,
            amount_minor=to_minor_units(data.amount),
            currency=data.currency,
            payment_url=data.payment_url,
            status=TransactionStatus.PENDING.value,
            description=data.description,
            line_items=[item.model_dump(mode="json") for item in data.line_items] if data.line_items else None,
            customer_email=data.customer_email,
            customer_name=data.customer_name,
            customer_phone=data.customer_phone,
            customer_id_number=data.customer_id_number,
            max_installments=data.max_installments,
            fixed_installments=data.fixed_installments,
            expires_at=data.expires_at,
            preauthorize=data.preauthorize,
            custom_field_1=data.custom_field_1,
            custom_field_2=data.custom_field_2,
            success_url=data.success_url,
            cancel_url=data.cancel_url,
            webhook_url=data.webhook_url,
            metadata_=data.metadata,
            api_key_id=data.api_key_id,
            created_at=now,
            updated_at=now,
        )

        try:
            async with self._session_factory() as session:
                session.add(row)
                await session.commit()
                await session.refresh(row)
        except SQLAlchemyError as e:
            logger.error(f"Error creating transaction for order {data.gateway_order_id}: {e}")
            raise InternalError("Failed to create transaction") from e

        logger.info(
            f"Created transaction: {transaction_id}, order={data.gateway_order_id}, "
            f"amount={data.amount} {data.currency}"
        )
        return _to_transaction(row)

    # ========================================================================
    # Retrieval
    # ========================================================================

    async def _find_one(self, *criteria) -> Optional[Transaction]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(TransactionModel).where(*criteria))
                row = result.scalar_one_or_none()
        except SQLAlchemyError as e:
            logger.error(f"Error finding transaction: {e}")
            raise InternalError("Failed to find transaction") from e

        return _to_transaction(row) if row else None

    async def _find_many(self, statement) -> List[Transaction]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                rows = result.scalars().all()
        except SQLAlchemyError as e:
            logger.error(f"Error finding transactions: {e}")
            raise InternalError("Failed to find transactions") from e

        return [_to_transaction(row) for row in rows]

    async def find_by_id(self, transaction_id: str) -> Optional[Transaction]:
        return await self._find_one(TransactionModel.id == transaction_id)

    async def find_by_gateway_order_id(self, order_id: str) -> Optional[Transaction]:
        return await self._find_one(TransactionModel.gateway_order_id == order_id)

    async def find_by_gateway_transaction_id(self, gateway_transaction_id: str) -> Optional[Transaction]:
        return await self._find_one(TransactionModel.gateway_transaction_id == gateway_transaction_id)

    async def find_by_owner(
        self,
        owner_id: str,
        limit: int = 50,
        offset: int = 0
    ) -> List[Transaction]:
        """
        Get transactions for an owner.

        Returns:
            List of transactions (most recent first)
        """
        return await self._find_many(
            select(TransactionModel)
            .where(TransactionModel.user_id == owner_id)
            .order_by(TransactionModel.created_at.desc())
            .limit(limit)
            .offset(offset)
        )

    async def find_by_status(
        self,
        status: TransactionStatus,
        limit: int = 50,
        offset: int = 0
    ) -> List[Transaction]:
        """Oldest first, so sweeps reach long-pending transactions before new ones."""
        return await self._find_many(
            select(TransactionModel)
            .where(TransactionModel.status == status.value)
            .order_by(TransactionModel.created_at.asc())
            .limit(limit)
            .offset(offset)
        )

    async def find_by_owner_in_date_range(
        self,
        owner_id: str,
        start: datetime,
        end: datetime
    ) -> List[Transaction]:
        return await self._find_many(
            select(TransactionModel)
            .where(
                TransactionModel.user_id == owner_id,
                TransactionModel.created_at >= start,
                TransactionModel.created_at <= end,
            )
            .order_by(TransactionModel.created_at.desc())
        )

    async def find_recent_by_owner(self, owner_id: str, hours: int) -> List[Transaction]:
        end = utcnow()
        return await self.find_by_owner_in_date_range(owner_id, end - timedelta(hours=hours), end)

    async def count_by_owner(self, owner_id: str) -> int:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(func.count()).select_from(TransactionModel).where(TransactionModel.user_id == owner_id)
                )
                return int(result.scalar_one())
        except SQLAlchemyError as e:
            logger.error(f"Error counting transactions for {owner_id}: {e}")
            raise InternalError("Failed to count transactions") from e

    async def get_stats(
        self,
        owner_id: str,
        start: datetime,
        end: datetime
    ) -> PaymentStats:
        """
        Counts and sums grouped by status within a date range.

        Args:
            owner_id: Owner identifier
            start: Inclusive lower bound on created_at
            end: Inclusive upper bound on created_at
        """
        statement = (
            select(
                TransactionModel.status,
                func.count(TransactionModel.id),
                func.coalesce(func.sum(TransactionModel.amount_minor), 0),
            )
            .where(
                TransactionModel.user_id == owner_id,
                TransactionModel.created_at >= start,
                TransactionModel.created_at <= end,
            )
            .group_by(TransactionModel.status)
        )

        try:
            async with self._session_factory() as session:
                rows = (await session.execute(statement)).all()
        except SQLAlchemyError as e:
            logger.error(f"Error computing stats for {owner_id}: {e}")
            raise InternalError("Failed to get transaction statistics") from e

        stats = PaymentStats()
        for status, count, amount_minor in rows:
            status = TransactionStatus(status)
            stats.by_status[status] = StatusBreakdown(count=count, amount=from_minor_units(amount_minor))
            stats.total_transactions += count

        completed = stats.by_status.get(TransactionStatus.COMPLETED, StatusBreakdown())
        stats.completed_transactions = completed.count
        stats.total_amount = completed.amount
        stats.failed_transactions = stats.by_status.get(TransactionStatus.FAILED, StatusBreakdown()).count
        stats.pending_transactions = stats.by_status.get(TransactionStatus.PENDING, StatusBreakdown()).count
        return stats

    # ========================================================================
    # Updates
    # ========================================================================

    async def update_status(
        self,
        transaction_id: str,
        status: TransactionStatus,
        gateway_transaction_id: Optional[str] = None,
        expected_status: Optional[TransactionStatus] = None
    ) -> Optional[Transaction]:
        """
        Set status (and backfill the gateway transaction id) in one UPDATE.

        Re-applying the current status without a new gateway id leaves the
        row untouched, so concurrent reconciliations of the same transaction
        converge. With expected_status the write only happens while the row
        still holds that status (compare-and-set); callers compare the
        returned status with the one they asked for.

        Returns:
            Updated Transaction, or None if the id is unknown
        """
        changed = TransactionModel.status != status.value
        values: Dict[str, Any] = {"status": status.value, "updated_at": utcnow()}

        if gateway_transaction_id:
            values["gateway_transaction_id"] = gateway_transaction_id
            changed = or_(
                TransactionModel.status != status.value,
                TransactionModel.gateway_transaction_id.is_(None),
                TransactionModel.gateway_transaction_id != gateway_transaction_id,
            )

        criteria = [TransactionModel.id == transaction_id, changed]
        if expected_status is not None:
            criteria.append(TransactionModel.status == expected_status.value)

        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(TransactionModel)
                    .where(*criteria)
                    .values(**values)
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error updating status of {transaction_id}: {e}")
            raise InternalError("Failed to update transaction status") from e

        if result.rowcount:
            logger.info(f"Transaction {transaction_id} status set to {status.value}")

        return await self.find_by_id(transaction_id)

    async def update_metadata(
        self,
        transaction_id: str,
        metadata: Optional[Dict[str, Any]]
    ) -> Optional[Transaction]:
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(TransactionModel)
                    .where(TransactionModel.id == transaction_id)
                    .values({TransactionModel.metadata_: metadata, TransactionModel.updated_at: utcnow()})
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error updating metadata of {transaction_id}: {e}")
            raise InternalError("Failed to update transaction") from e

        return await self.find_by_id(transaction_id)

    async def soft_delete(self, transaction_id: str) -> bool:
        """
        Mark a pending transaction cancelled.

        Returns:
            True if a row was cancelled
        """
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    update(TransactionModel)
                    .where(
                        TransactionModel.id == transaction_id,
                        TransactionModel.status == TransactionStatus.PENDING.value,
                    )
                    .values(status=TransactionStatus.CANCELLED.value, updated_at=utcnow())
                )
                await session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Error deleting transaction {transaction_id}: {e}")
            raise InternalError("Failed to delete transaction") from e

        return bool(result.rowcount)
