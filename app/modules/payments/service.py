"""
Motor de asignación de pagos

- Pago a una factura: el monto se aplica hasta el saldo de la factura; el
  excedente queda como no asignado en el pago.
- Pago masivo de un cliente: FIFO sobre sus facturas pagables (vencimiento
  más antiguo primero, sin vencimiento al final, luego fecha de factura y
  orden de creación). Cada factura se confirma en su propia transacción; un
  fallo en una factura no deshace las anteriores.
"""

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID

from fastapi import HTTPException, status
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.common.exceptions import ValidationError, InvalidStateError, NotFoundError
from app.common.mixins import utcnow
from app.common.money import ZERO, quantize
from app.common.retry import run_with_retry
from app.core.config import settings
from app.modules.bills.models import Bill, BillStatus, ApprovalStatus, PAYABLE_STATUSES
from app.modules.bills.service import BillService, assert_transition, settle_status
from app.modules.business.sequences import SequenceService
from app.modules.business.service import BusinessService
from app.modules.customers.service import CustomerService
from app.modules.history.service import HistoryRecorder
from app.modules.notifications.service import NotificationService
from app.modules.payments.models import Payment, PaymentAllocation, PaymentStatus
from app.modules.payments.schemas import (
    SinglePaymentCreate, BulkPaymentCreate, PaymentList, BillAllocationOutcome
)
from app.modules.permissions.constants import Resource, Action
from app.modules.permissions.service import PermissionService

logger = logging.getLogger(__name__)


@dataclass
class BulkAllocation:
    payment: Payment
    allocations: List[PaymentAllocation] = field(default_factory=list)
    outcomes: List[BillAllocationOutcome] = field(default_factory=list)


def ensure_payable(bill: Bill) -> None:
    """InvalidStateError si la factura no puede recibir pagos"""
    if bill.is_payable:
        return
    if bill.status not in PAYABLE_STATUSES:
        raise InvalidStateError(
            f"La factura {bill.bill_number} no acepta pagos en estado {bill.status.value}"
        )
    if bill.balance_amount <= 0:
        raise InvalidStateError(f"La factura {bill.bill_number} no tiene saldo pendiente")
    raise InvalidStateError(
        f"La factura {bill.bill_number} requiere aprobación antes de recibir pagos"
    )


class PaymentAllocationService:
    """Servicio para registrar pagos y asignarlos a facturas"""

    def __init__(
        self,
        db: Session,
        permissions: Optional[PermissionService] = None,
        notifier: Optional[NotificationService] = None
    ):
        self.db = db
        self.permissions = permissions or PermissionService(db)
        self.notifier = notifier or NotificationService()
        self.history = HistoryRecorder(db)
        self.bills = BillService(db, self.permissions, self.notifier)

    # ----- helpers -----

    @staticmethod
    def _validate_amount(amount: Decimal) -> Decimal:
        amount = quantize(amount)
        if amount <= 0:
            raise ValidationError("El monto del pago debe ser mayor a cero", field="amount")
        return amount

    def _find_by_idempotency_key(self, business_id: UUID, key: Optional[str]) -> Optional[Payment]:
        if not key:
            return None
        return self.db.query(Payment).filter(
            Payment.business_id == business_id,
            Payment.idempotency_key == key
        ).first()

    @staticmethod
    def _replay_single(existing: Payment) -> Tuple[Payment, PaymentAllocation]:
        if not existing.allocations:
            raise InvalidStateError(f"El pago {existing.payment_number} no tiene asignaciones")
        return existing, existing.allocations[0]

    @staticmethod
    def _replay_bulk(existing: Payment) -> BulkAllocation:
        return BulkAllocation(
            payment=existing,
            allocations=list(existing.allocations),
            outcomes=[
                BillAllocationOutcome(bill_id=a.bill_id, status="allocated", allocated_amount=a.allocated_amount)
                for a in existing.allocations
            ],
        )

    def _new_payment(self, business_id: UUID, actor_id: UUID, data, amount: Decimal,
                     customer_id: Optional[UUID], payment_status: PaymentStatus) -> Payment:
        business = BusinessService(self.db, self.permissions).get_business(business_id)
        payment_date = data.payment_date or date.today()
        number = SequenceService(self.db).next_payment_number(
            business_id, business.payment_prefix or settings.DEFAULT_PAYMENT_PREFIX, on=payment_date
        )
        payment = Payment(
            business_id=business_id,
            payment_number=number,
            customer_id=customer_id,
            amount=amount,
            allocated_amount=ZERO,
            unallocated_amount=amount,
            method=data.method,
            status=payment_status,
            payment_date=payment_date,
            reference_number=data.reference_number,
            transaction_id=data.transaction_id,
            notes=data.notes,
            created_by=actor_id,
            idempotency_key=data.idempotency_key,
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    def _apply_to_bill(self, payment: Payment, bill: Bill, amount: Decimal,
                       order: int, actor_id: UUID) -> PaymentAllocation:
        """
        Aplica hasta ``amount`` al saldo de la factura ya bloqueada.
        Actualiza factura, pago e historial dentro de la transacción actual.
        """
        balance_before = quantize(bill.balance_amount)
        allocated = min(amount, balance_before)
        balance_after = balance_before - allocated

        allocation = PaymentAllocation(
            business_id=bill.business_id,
            payment_id=payment.id,
            bill_id=bill.id,
            allocated_amount=allocated,
            bill_balance_before=balance_before,
            bill_balance_after=balance_after,
            allocation_order=order,
            created_by=actor_id,
        )
        self.db.add(allocation)

        old_status = bill.status
        old_paid = quantize(bill.paid_amount)
        bill.paid_amount = old_paid + allocated
        bill.balance_amount = balance_after
        new_status = settle_status(bill)
        if new_status != old_status:
            assert_transition(bill, new_status)
            bill.status = new_status

        payment.allocated_amount = quantize(payment.allocated_amount) + allocated
        payment.unallocated_amount = quantize(payment.amount) - payment.allocated_amount

        self.history.record_bill_change(
            bill, "PAYMENT_ALLOCATED", actor_id,
            old_status=old_status, new_status=new_status,
            changes={
                "paid_amount": {"old": str(old_paid), "new": str(bill.paid_amount)},
                "balance_amount": {"old": str(balance_before), "new": str(balance_after)},
            },
            notes=f"Pago {payment.payment_number}: {allocated}"
        )
        return allocation

    def _notify_payment(self, bill: Bill, payment: Payment, allocated: Decimal) -> None:
        self.notifier.notify(
            type="PAYMENT_RECEIVED",
            recipient_id=bill.created_by,
            business_id=bill.business_id,
            title=f"Pago recibido para {bill.bill_number}",
            message=f"Se aplicaron {allocated} del pago {payment.payment_number}; saldo {bill.balance_amount}",
            entity_type="BILL",
            entity_id=bill.id,
        )

    # ----- pago a una factura -----

    def allocate_single_payment(
        self, business_id: UUID, actor_id: UUID, data: SinglePaymentCreate
    ) -> Tuple[Payment, PaymentAllocation]:
        """
        Registrar un pago contra una factura

        Se asigna ``min(monto, saldo)``; el resto queda en ``unallocated_amount``.
        Si la factura no es pagable no se escribe nada.
        """
        self.permissions.require(actor_id, business_id, Resource.PAYMENTS, Action.CREATE)
        amount = self._validate_amount(data.amount)

        existing = self._find_by_idempotency_key(business_id, data.idempotency_key)
        if existing:
            return self._replay_single(existing)

        def unit() -> Tuple[Payment, PaymentAllocation]:
            bill = self.bills.lock_bill(business_id, data.bill_id)
            ensure_payable(bill)

            payment = self._new_payment(
                business_id, actor_id, data, amount, bill.customer_id, PaymentStatus.COMPLETED
            )
            allocation = self._apply_to_bill(payment, bill, amount, 1, actor_id)
            self.history.record(
                business_id=business_id,
                entity_type="PAYMENT",
                entity_id=payment.id,
                action="CREATED",
                actor_id=actor_id,
                new_value={
                    "payment_number": payment.payment_number,
                    "amount": payment.amount,
                    "allocated_amount": payment.allocated_amount,
                    "unallocated_amount": payment.unallocated_amount,
                    "method": payment.method,
                    "bill_id": bill.id,
                },
            )
            self.db.commit()
            self.db.refresh(payment)
            self.db.refresh(allocation)
            return payment, allocation

        try:
            payment, allocation = run_with_retry(self.db, unit, "allocate_single_payment")
        except IntegrityError:
            # Otra solicitud con la misma clave ganó la carrera
            self.db.rollback()
            existing = self._find_by_idempotency_key(business_id, data.idempotency_key)
            if existing:
                logger.info(f"Payment replayed for key {data.idempotency_key}: {existing.payment_number}")
                return self._replay_single(existing)
            logger.error(f"Integrity error allocating payment to bill {data.bill_id}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error registrando pago"
            )
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Unexpected error allocating payment to bill {data.bill_id}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error registrando pago"
            )

        logger.info(
            f"Payment {payment.payment_number} allocated {allocation.allocated_amount} "
            f"to bill {data.bill_id} (unallocated {payment.unallocated_amount})"
        )
        bill = self.bills.get_bill(business_id, data.bill_id)
        self._notify_payment(bill, payment, allocation.allocated_amount)
        return payment, allocation

    # ----- pago masivo FIFO -----

    def _fifo_candidates(self, business_id: UUID, customer_id: UUID) -> List[UUID]:
        rows = self.db.query(Bill.id).filter(
            Bill.business_id == business_id,
            Bill.customer_id == customer_id,
            Bill.deleted_at.is_(None),
            Bill.status.in_(PAYABLE_STATUSES),
            Bill.balance_amount > 0,
            or_(Bill.requires_approval == False, Bill.approval_status == ApprovalStatus.APPROVED)
        ).order_by(
            Bill.due_date.is_(None),
            Bill.due_date.asc(),
            Bill.bill_date.asc(),
            Bill.sequence_number.asc()
        ).all()
        return [row[0] for row in rows]

    def allocate_bulk_payment(self, business_id: UUID, actor_id: UUID, data: BulkPaymentCreate) -> BulkAllocation:
        """
        Registrar un pago del cliente y repartirlo FIFO sobre sus facturas

        El pago se crea en PROCESSING y pasa a COMPLETED al terminar el
        recorrido. El excedente queda como no asignado.
        """
        self.permissions.require(actor_id, business_id, Resource.PAYMENTS, Action.CREATE)
        amount = self._validate_amount(data.amount)
        CustomerService(self.db).require_customer(data.customer_id, business_id)

        existing = self._find_by_idempotency_key(business_id, data.idempotency_key)
        if existing:
            return self._replay_bulk(existing)

        def open_payment() -> Payment:
            payment = self._new_payment(
                business_id, actor_id, data, amount, data.customer_id, PaymentStatus.PROCESSING
            )
            self.history.record(
                business_id=business_id,
                entity_type="PAYMENT",
                entity_id=payment.id,
                action="CREATED",
                actor_id=actor_id,
                new_value={
                    "payment_number": payment.payment_number,
                    "amount": payment.amount,
                    "method": payment.method,
                    "customer_id": data.customer_id,
                },
            )
            self.db.commit()
            return payment

        try:
            payment = run_with_retry(self.db, open_payment, "allocate_bulk_payment")
        except IntegrityError:
            self.db.rollback()
            existing = self._find_by_idempotency_key(business_id, data.idempotency_key)
            if existing:
                logger.info(f"Bulk payment replayed for key {data.idempotency_key}: {existing.payment_number}")
                return self._replay_bulk(existing)
            logger.error(f"Integrity error opening bulk payment for customer {data.customer_id}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error registrando pago"
            )
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Unexpected error opening bulk payment for customer {data.customer_id}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error registrando pago"
            )

        payment_id = payment.id
        result = BulkAllocation(payment=payment)
        remaining = amount
        order = 0

        for bill_id in self._fifo_candidates(business_id, data.customer_id):
            if remaining <= 0:
                break

            def unit(bill_id=bill_id, next_order=order + 1, budget=remaining) -> PaymentAllocation:
                bill = self.bills.lock_bill(business_id, bill_id)
                ensure_payable(bill)
                locked_payment = self.db.get(Payment, payment_id, populate_existing=True)
                allocation = self._apply_to_bill(locked_payment, bill, budget, next_order, actor_id)
                self.db.commit()
                return allocation

            try:
                allocation = run_with_retry(self.db, unit, "allocate_bulk_payment")
            except HTTPException as exc:
                self.db.rollback()
                outcome_status = "skipped" if isinstance(exc, InvalidStateError) else "failed"
                message = exc.detail.get("message") if isinstance(exc.detail, dict) else str(exc.detail)
                logger.warning(f"Bulk payment {payment.payment_number}: bill {bill_id} {outcome_status}: {message}")
                result.outcomes.append(BillAllocationOutcome(bill_id=bill_id, status=outcome_status, error=message))
                continue
            except Exception:
                self.db.rollback()
                logger.error(f"Bulk payment {payment.payment_number}: bill {bill_id} failed", exc_info=True)
                result.outcomes.append(BillAllocationOutcome(bill_id=bill_id, status="failed", error="Error interno"))
                continue

            order += 1
            remaining -= quantize(allocation.allocated_amount)
            result.allocations.append(allocation)
            bill = self.bills.get_bill(business_id, bill_id)
            result.outcomes.append(BillAllocationOutcome(
                bill_id=bill_id,
                bill_number=bill.bill_number,
                status="allocated",
                allocated_amount=allocation.allocated_amount,
            ))
            self._notify_payment(bill, payment, allocation.allocated_amount)

        payment = self.db.get(Payment, payment_id, populate_existing=True)
        payment.status = PaymentStatus.COMPLETED
        self.history.record(
            business_id=business_id,
            entity_type="PAYMENT",
            entity_id=payment.id,
            action="ALLOCATED",
            actor_id=actor_id,
            new_value={
                "allocated_amount": payment.allocated_amount,
                "unallocated_amount": payment.unallocated_amount,
                "bills": [str(a.bill_id) for a in result.allocations],
            },
        )
        self.db.commit()
        self.db.refresh(payment)
        result.payment = payment

        logger.info(
            f"Bulk payment {payment.payment_number}: {len(result.allocations)} bills, "
            f"allocated {payment.allocated_amount}, unallocated {payment.unallocated_amount}"
        )
        return result

    # ----- consultas -----

    def get_payment(self, business_id: UUID, payment_id: UUID) -> Payment:
        payment = self.db.query(Payment).filter(
            Payment.id == payment_id,
            Payment.business_id == business_id
        ).first()
        if not payment:
            raise NotFoundError("Pago no encontrado")
        return payment

    def list_payments(
        self,
        business_id: UUID,
        limit: int = 100,
        offset: int = 0,
        customer_id: Optional[UUID] = None,
        payment_status: Optional[PaymentStatus] = None,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None
    ) -> PaymentList:
        """Listar pagos con filtros"""
        query = self.db.query(Payment).filter(Payment.business_id == business_id)

        if customer_id:
            query = query.filter(Payment.customer_id == customer_id)
        if payment_status:
            query = query.filter(Payment.status == payment_status)
        if start_date:
            query = query.filter(Payment.payment_date >= start_date)
        if end_date:
            query = query.filter(Payment.payment_date <= end_date)

        total = query.count()
        payments = query.order_by(Payment.created_at.desc(), Payment.payment_number.desc()).offset(offset).limit(limit).all()

        return PaymentList(items=payments, total=total, limit=limit, offset=offset)

    def list_bill_allocations(self, business_id: UUID, bill_id: UUID) -> List[PaymentAllocation]:
        self.bills.get_bill(business_id, bill_id, include_deleted=True)
        return self.db.query(PaymentAllocation).filter(
            PaymentAllocation.business_id == business_id,
            PaymentAllocation.bill_id == bill_id
        ).order_by(PaymentAllocation.allocation_date.asc()).all()

    def verify_payment(self, business_id: UUID, actor_id: UUID, payment_id: UUID, notes: Optional[str] = None) -> Payment:
        """Marca el pago como verificado; no toca montos ni asignaciones"""
        self.permissions.require(actor_id, business_id, Resource.PAYMENTS, Action.UPDATE)
        try:
            payment = self.get_payment(business_id, payment_id)
            if payment.verified_at is not None:
                raise InvalidStateError(f"El pago {payment.payment_number} ya fue verificado")

            payment.verified_by = actor_id
            payment.verified_at = utcnow()
            self.history.record(
                business_id=business_id,
                entity_type="PAYMENT",
                entity_id=payment.id,
                action="VERIFIED",
                actor_id=actor_id,
                new_value={"verified_by": actor_id, "verified_at": payment.verified_at},
                notes=notes,
            )
            self.db.commit()
            self.db.refresh(payment)
            logger.info(f"Payment {payment.payment_number} verified by {actor_id}")
            return payment
        except HTTPException:
            self.db.rollback()
            raise
        except Exception:
            self.db.rollback()
            logger.error(f"Unexpected error verifying payment {payment_id}", exc_info=True)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Error verificando pago"
            )
