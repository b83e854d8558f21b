"""
Reconciliation Engine - one decision from gateway and ledger state

``reconcile`` is what the verify poll and the stale-transaction sweep call;
``settle`` is the shared "payment is confirmed, apply it" step that the
webhook and admin approval paths reuse. Every store mutation below is a
compare-and-set, so the engine can run any number of times, concurrently,
for the same payment and still grant access and project the payment once.

Amount precedence for the enrollment and the payment record:
ledger ``final_price`` > metadata ``finalPrice`` > metadata ``amount`` >
gateway reported amount > caller amount. The gateway is charged in USD while
the catalogue is priced in LKR, so its own figure is the last resort.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from lms.core.exceptions import ExternalServiceException, InvalidPaymentReferenceError
from lms.core.logging import get_logger, log_async_operation
from lms.db.models.payment import PaymentRecordMethod, PaymentRecordStatus
from lms.db.models.payment_transaction import PaymentMethod, PaymentTransaction, TransactionStatus
from lms.db.models.user import User
from lms.domain.services.admin_notification_service import AdminNotificationService
from lms.domain.services.enrollment_service import EnrollmentService, GrantOutcome
from lms.domain.services.gateway import GatewayMetadata, GatewayPayment, GatewayStatus, PaymentGateway
from lms.domain.services.ledger_service import LedgerService
from lms.domain.services.payment_record_service import PaymentRecordService
from lms.domain.services.pricing_service import PricingService

logger = get_logger(__name__)

STATUS_SUCCEEDED = "succeeded"
STATUS_PROCESSING = "processing"
STATUS_FAILED = "failed"
STATUS_UNKNOWN = "unknown"

MSG_GRANTED = "Payment verified and course access granted"
MSG_ALREADY_ENROLLED = "Already enrolled in this course"
MSG_PROCESSING = "Payment is still being processed"
MSG_NOT_CONFIRMED = "Payment not yet confirmed"
MSG_FAILED = "Payment failed"
MSG_INFO_MISSING = "Payment verified but enrollment info missing. Please contact support."
MSG_USER_MISSING = "Payment verified but user not found. Please contact support."
MSG_ACCESS_SUSPENDED = "Payment verified but course access is suspended. Please contact support."

_IN_FLIGHT = (TransactionStatus.PENDING, TransactionStatus.PROCESSING)


@dataclass
class ReconcileRequest:
    gateway_payment_id: Optional[str] = None
    transaction_ref: Optional[str] = None
    user_id: Optional[str] = None
    course_slug: Optional[str] = None
    amount: Optional[Decimal] = None


@dataclass
class ReconcileResult:
    success: bool
    verified: bool
    status: str
    message: str
    course_slug: Optional[str] = None
    course_name: Optional[str] = None
    enrollment_incomplete: bool = False
    grant: Optional[GrantOutcome] = None


def _first(*values):
    for value in values:
        if value not in (None, ""):
            return value
    return None


class ReconciliationEngine:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGateway] = None,
        notifier=AdminNotificationService,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier
        self.ledger = LedgerService(db)
        self.enrollments = EnrollmentService(db)
        self.records = PaymentRecordService(db)
        self.pricing = PricingService(db)

    async def _fetch_gateway_payment(self, payment_id: str) -> Optional[GatewayPayment]:
        """Best-effort corroboration; any adapter failure falls back to the ledger"""
        if self.gateway is None:
            return None
        try:
            return await self.gateway.fetch_payment_status(payment_id)
        except ExternalServiceException as e:
            logger.warning(
                "Gateway lookup failed, falling back to ledger",
                extra_data={
                    "gateway_payment_id": payment_id,
                    "error_code": e.error_code.value,
                    "error": e.message,
                },
            )
        except Exception as e:
            logger.error(
                "Unexpected gateway error, falling back to ledger",
                extra_data={"gateway_payment_id": payment_id, "error": str(e)},
                exc_info=True,
            )
        return None

    @log_async_operation("payment reconciliation")
    async def reconcile(self, request: ReconcileRequest) -> ReconcileResult:
        """
        Decide whether a payment went through and, if it did, apply it.

        An explicit gateway failure wins over an in-flight ledger entry.

        Raises:
            InvalidPaymentReferenceError: neither a gateway id nor a reference given
        """
        if not request.gateway_payment_id and not request.transaction_ref:
            raise InvalidPaymentReferenceError()

        payment = None
        if request.gateway_payment_id:
            payment = await self._fetch_gateway_payment(request.gateway_payment_id)

        metadata = payment.metadata if payment else None
        transaction_ref = _first(request.transaction_ref, metadata and metadata.transaction_ref)
        transaction = await self.ledger.find(
            reference=transaction_ref,
            gateway_payment_id=request.gateway_payment_id,
        )

        # caller fields first, then gateway metadata, then the ledger snapshot
        user_id = _first(request.user_id, metadata and metadata.user_id, transaction and transaction.user_id)
        course_slug = _first(
            request.course_slug, metadata and metadata.course_slug, transaction and transaction.course_slug
        )
        course_name = _first(metadata and metadata.course_name, transaction and transaction.course_name)

        gateway_status = payment.status if payment else None
        ledger_status = TransactionStatus(transaction.status) if transaction else None

        success = gateway_status == GatewayStatus.COMPLETED or ledger_status == TransactionStatus.COMPLETED
        explicitly_failed = gateway_status == GatewayStatus.FAILED
        processing = not success and not explicitly_failed and (
            gateway_status == GatewayStatus.PROCESSING or ledger_status in _IN_FLIGHT
        )

        log_context = {
            "gateway_payment_id": request.gateway_payment_id,
            "transaction_ref": transaction.reference if transaction else transaction_ref,
            "gateway_status": payment.raw_status if payment else None,
            "ledger_status": ledger_status.value if ledger_status else None,
        }

        if not success:
            if processing:
                logger.info("Payment still processing", extra_data=log_context)
                return ReconcileResult(
                    success=False,
                    verified=False,
                    status=STATUS_PROCESSING,
                    message=MSG_PROCESSING,
                    course_slug=course_slug,
                    course_name=course_name,
                )
            if explicitly_failed:
                logger.info("Payment failed at gateway", extra_data=log_context)
                return ReconcileResult(
                    success=False,
                    verified=False,
                    status=STATUS_FAILED,
                    message=MSG_FAILED,
                    course_slug=course_slug,
                    course_name=course_name,
                )
            status = _first(
                payment and payment.raw_status,
                ledger_status and ledger_status.value,
                STATUS_UNKNOWN,
            )
            logger.info("Payment not confirmed", extra_data={**log_context, "status": status})
            return ReconcileResult(
                success=False,
                verified=False,
                status=status,
                message=MSG_NOT_CONFIRMED,
                course_slug=course_slug,
                course_name=course_name,
            )

        gateway_payment_id = _first(
            request.gateway_payment_id, transaction and transaction.gateway_payment_id
        )
        if transaction is None and gateway_payment_id and user_id and course_slug:
            transaction = await self.ledger_entry_from_metadata(
                gateway_payment_id,
                user_id=user_id,
                course_slug=course_slug,
                course_name=course_name,
                metadata=metadata,
                reported_amount=payment.reported_amount if payment else None,
                reported_currency=payment.currency if payment else None,
                caller_amount=request.amount,
            )
        amount = self.resolve_amount(
            transaction,
            metadata,
            payment.reported_amount if payment else None,
            request.amount,
        )

        result = await self.settle(
            transaction,
            user_id=user_id,
            course_slug=course_slug,
            course_name=course_name,
            amount=amount,
            gateway_payment_id=gateway_payment_id,
        )
        await self.db.commit()
        return result

    @staticmethod
    def resolve_amount(
        transaction: Optional[PaymentTransaction],
        metadata: Optional[GatewayMetadata],
        reported_amount: Optional[Decimal],
        caller_amount: Optional[Decimal] = None,
    ) -> Optional[Decimal]:
        """Price a confirmed payment settles at, whichever path confirmed it"""
        if transaction is not None:
            return Decimal(transaction.final_price)
        return _first(
            metadata and metadata.final_price,
            metadata and metadata.amount,
            reported_amount,
            caller_amount,
        )

    async def ledger_entry_from_metadata(
        self,
        gateway_payment_id: str,
        *,
        user_id: Optional[str],
        course_slug: Optional[str],
        course_name: Optional[str],
        metadata: Optional[GatewayMetadata],
        reported_amount: Optional[Decimal],
        reported_currency: Optional[str],
        caller_amount: Optional[Decimal] = None,
    ) -> PaymentTransaction:
        """``WH-<payment id>`` ledger entry for a confirmed payment we never saw start"""
        metadata = metadata or GatewayMetadata()
        reference = f"WH-{gateway_payment_id}"
        from_metadata = metadata.final_price is not None or metadata.amount is not None
        price = self.resolve_amount(None, metadata, reported_amount, caller_amount) or Decimal("0.00")
        currency = (metadata.currency if from_metadata else reported_currency) or "LKR"
        try:
            async with self.db.begin_nested():
                transaction = await self.ledger.create_transaction(
                    reference=reference,
                    user_id=user_id,
                    course_slug=course_slug,
                    course_name=course_name,
                    original_price=price,
                    final_price=price,
                    discount_code=metadata.discount_code,
                    currency=currency[:3],
                    payment_method=PaymentMethod.CARD,
                    status=TransactionStatus.PENDING,
                    gateway_payment_id=gateway_payment_id,
                )
        except IntegrityError:
            # created by a concurrent poll or webhook for the same payment
            return await self.ledger.get_by_reference(reference)

        logger.info(
            "Ledger entry created for an untracked payment",
            extra_data={"reference": reference, "price": str(price), "currency": currency},
        )
        return transaction

    async def settle(
        self,
        transaction: Optional[PaymentTransaction],
        *,
        user_id: Optional[str],
        course_slug: Optional[str],
        course_name: Optional[str],
        amount: Optional[Decimal],
        gateway_payment_id: Optional[str] = None,
        record_method: PaymentRecordMethod = PaymentRecordMethod.ONLINE,
    ) -> ReconcileResult:
        """
        Apply a confirmed payment: grant access, complete the transaction and
        project the payment record. Flushes only; the caller commits.
        """
        reference = transaction.reference if transaction else None

        if not user_id or not course_slug:
            await self._report_incomplete(
                "missing user or course identifiers",
                gateway_payment_id, reference, user_id, course_slug, amount,
            )
            return ReconcileResult(
                success=True,
                verified=True,
                status=STATUS_SUCCEEDED,
                message=MSG_INFO_MISSING,
                course_slug=course_slug,
                course_name=course_name,
                enrollment_incomplete=True,
            )

        user_exists = await self.db.scalar(select(User.id).where(User.id == user_id))
        if user_exists is None:
            await self._report_incomplete(
                "user not found", gateway_payment_id, reference, user_id, course_slug, amount,
            )
            return ReconcileResult(
                success=True,
                verified=True,
                status=STATUS_SUCCEEDED,
                message=MSG_USER_MISSING,
                course_slug=course_slug,
                course_name=course_name,
                enrollment_incomplete=True,
            )

        outcome = await self.enrollments.grant_paid_access(
            user_id=user_id,
            course_slug=course_slug,
            course_name=course_name,
            amount=amount,
            payment_id=_first(gateway_payment_id, reference),
        )

        if transaction is not None:
            first_completion = await self.ledger.mark_completed(transaction, gateway_payment_id)
            if first_completion and transaction.discount_code:
                await self.pricing.increment_usage(transaction.course_slug or course_slug, transaction.discount_code)

        record_key = _first(gateway_payment_id, reference)
        if record_key and amount is not None:
            try:
                await self.records.record_once(
                    transaction_id=record_key,
                    user_id=user_id,
                    course_slug=course_slug,
                    amount=amount,
                    method=record_method,
                    payment_id=gateway_payment_id,
                    status=PaymentRecordStatus.COMPLETED,
                )
            except Exception as e:
                logger.error(
                    "Failed to project payment record",
                    extra_data={"transaction_id": record_key, "user_id": user_id, "error": str(e)},
                    exc_info=True,
                )

        logger.info(
            "Payment settled",
            extra_data={
                "user_id": user_id,
                "course_slug": course_slug,
                "transaction_ref": reference,
                "gateway_payment_id": gateway_payment_id,
                "amount": str(amount) if amount is not None else None,
                "outcome": outcome.value,
            },
        )
        if outcome is GrantOutcome.SUSPENDED:
            await self._report_incomplete(
                "paid enrollment is suspended", gateway_payment_id, reference, user_id, course_slug, amount,
            )
            return ReconcileResult(
                success=True,
                verified=True,
                status=STATUS_SUCCEEDED,
                message=MSG_ACCESS_SUSPENDED,
                course_slug=course_slug,
                course_name=course_name,
                enrollment_incomplete=True,
                grant=outcome,
            )
        return ReconcileResult(
            success=True,
            verified=True,
            status=STATUS_SUCCEEDED,
            message=MSG_GRANTED if outcome.changed else MSG_ALREADY_ENROLLED,
            course_slug=course_slug,
            course_name=course_name,
            grant=outcome,
        )

    async def _report_incomplete(
        self,
        reason: str,
        gateway_payment_id: Optional[str],
        transaction_ref: Optional[str],
        user_id: Optional[str],
        course_slug: Optional[str],
        amount: Optional[Decimal],
    ) -> None:
        await self.notifier.notify_enrollment_incomplete(
            reason=reason,
            gateway_payment_id=gateway_payment_id,
            transaction_ref=transaction_ref,
            user_id=user_id,
            course_slug=course_slug,
            amount=amount,
        )
